import time

import pytest

from squidctl.data import ExperimentDefinition, ExperimentRepository
from squidctl.instrument import SimulationPotentiostat
from squidctl.services import DeviceManager, ExperimentCoordinator, RetryPolicy


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "slow: marks test as slow running test")


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll `predicate` until it is truthy or `timeout` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def ocp_definition():
    """Five open circuit samples followed by three chronoamperometry samples."""
    return ExperimentDefinition.model_validate({
        "name": "OCP then CA",
        "steps": [
            {"kind": "open_circuit", "duration_s": 0.5, "sampling_interval_s": 0.1},
            {"kind": "constant_potential", "voltage": 0.4, "duration_s": 0.3, "sampling_interval_s": 0.1},
        ],
    })


@pytest.fixture
def long_definition():
    """An open circuit step long enough to stop, pause or time out."""
    return ExperimentDefinition.model_validate({
        "name": "Long OCP",
        "steps": [{"kind": "open_circuit", "duration_s": 60.0, "sampling_interval_s": 0.01}],
    })


@pytest.fixture
def devices():
    manager = DeviceManager(simulation_options={"time_scale": 0, "seed": 7})
    manager.connect("sim", instrument_type="simulation")
    manager.connect("sim2", instrument_type="simulation")
    slow = SimulationPotentiostat(channels=2, time_scale=1.0, seed=3)
    slow.connect()
    manager.add("slow", slow)
    yield manager
    manager.disconnect_all()


@pytest.fixture
def repository(tmp_path):
    return ExperimentRepository(tmp_path)


@pytest.fixture
def coordinator(devices, repository):
    coordinator = ExperimentCoordinator(
        devices,
        repository,
        retry_policy=RetryPolicy(max_attempts=3, backoff_s=0.0),
        sleep=lambda _: None,
    )
    yield coordinator
    coordinator.shutdown(timeout=5)
