"""Tests for settings loading."""

import logging

import pytest

from squidctl.config import Settings, apply_settings, configure_logging, load_settings, settings
from squidctl.services import DeviceManager, RetryPolicy


@pytest.fixture(autouse=True)
def isolated_output(monkeypatch, tmp_path):
    monkeypatch.setenv("SQUIDCTL_STORAGE__OUTPUT_DIR", str(tmp_path / "env-output"))


@pytest.fixture(autouse=True)
def restore_settings():
    saved = settings.model_copy(deep=True)
    yield
    apply_settings(saved)


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.simulation_mode is True
        assert settings.device.channel == 0
        assert settings.retry.max_attempts == before
        assert settings.broker.enabled is False

    def test_output_dir_is_created(self, tmp_path):
        settings = Settings()
        assert settings.storage.output_dir == tmp_path / "env-output"
        assert settings.storage.output_dir.is_dir()

    def test_nested_environment_variables(self, monkeypatch):
        monkeypatch.setenv("SQUIDCTL_DEVICE__COM_PORT", "COM9")
        monkeypatch.setenv("SQUIDCTL_BROKER__PORT", "6000")
        settings = Settings()
        assert settings.device.com_port == "COM9"
        assert settings.broker.port == 6000


class TestLoadSettings:
    def test_yaml_block(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "simulation_mode: false\n"
            "device:\n"
            "  com_port: COM3\n"
            "  channel: 1\n"
            "  timeout_s: 600\n"
            "storage:\n"
            f"  output_dir: {tmp_path / 'runs'}\n"
            "broker:\n"
            "  enabled: true\n"
            "  host: 0.0.0.0\n"
            "  port: 5560\n"
        )

        settings = load_settings(path)

        assert settings.simulation_mode is False
        assert settings.device.com_port == "COM3"
        assert settings.device.channel == 1
        assert settings.device.timeout_s == 600
        assert settings.broker.enabled is True
        assert settings.broker.port == 5560
        assert (tmp_path / "runs").is_dir()
        assert settings.retry.max_attempts == before

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_settings(path).device.timeout_s == 3600.0

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("device:\n  channel: -1\n")
        with pytest.raises(ValueError):
            load_settings(path)

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- COM3\n")
        with pytest.raises(ValueError):
            load_settings(path)

    def test_loaded_values_reach_services(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "simulation_mode: false\n"
            "device:\n"
            "  channels: 4\n"
            "retry:\n"
            "  max_attempts: 1\n"
        )

        loaded = load_settings(path)

        assert loaded is settings
        assert settings.simulation_mode is False
        assert settings.device.channels == 4
        assert RetryPolicy.from_settings().max_attempts == 1
        # auto now resolves to a real instrument, which needs a port
        with pytest.raises(ValueError, match="COM port"):
            DeviceManager().connect("bench")

    def test_detached_load(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("retry:\n  max_attempts: 7\n")

        before = settings.retry.max_attempts
        loaded = load_settings(path, apply=False)

        assert loaded is not settings
        assert loaded.retry.max_attempts == 7
        assert settings.retry.max_attempts == before


def test_configure_logging_installs_one_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("warning")
        configure_logging("debug")
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
