"""Instrument drivers and abstractions."""

from .base import PotentiostatInterface, UploadResult
from .simulation import SimulationPotentiostat
from .squidstat import Squidstat

__all__ = ["PotentiostatInterface", "UploadResult", "SimulationPotentiostat", "Squidstat"]
