from __future__ import annotations

import logging
from pathlib import Path

import pytest
import structlog

from pv_upgrader.backoff import BackoffConfig
from pv_upgrader.config import AppConfig, ensure_directories
from pv_upgrader.logging_config import setup_logging
from pv_upgrader.upgrade import UpgradeSettings


@pytest.fixture
def restore_logging():
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)
    structlog.reset_defaults()


def test_app_config_backoff_returns_configured_backoff() -> None:
    config = AppConfig(backoff_initial_interval=0.5, backoff_max_interval=2.0)

    assert config.backoff() == BackoffConfig(
        initial_interval=0.5,
        randomization_factor=0.1,
        multiplier=1.414,
        max_interval=2.0,
    )


def test_upgrade_settings_from_app_config_copies_driver_and_wait_times() -> None:
    config = AppConfig(
        csi_driver="csi.example.io",
        legacy_provisioner="example.io/legacy",
        pv_delete_wait_seconds=5.0,
        pvc_phase_wait_seconds=6.0,
        pod_delete_wait_seconds=7.0,
    )

    settings = UpgradeSettings.from_app_config(config)

    assert settings == UpgradeSettings(
        csi_driver="csi.example.io",
        legacy_provisioner="example.io/legacy",
        pv_delete_wait_seconds=5.0,
        pvc_phase_wait_seconds=6.0,
        pod_delete_wait_seconds=7.0,
    )


def test_ensure_directories_creates_metadata_parent(tmp_path: Path) -> None:
    config = AppConfig(metadata_db_path=tmp_path / "state" / "upgrades.db")

    ensure_directories(config)

    assert (tmp_path / "state").is_dir()


def test_setup_logging_with_debug_level_installs_single_stdout_handler(restore_logging) -> None:
    setup_logging("debug")

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG
    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)


def test_setup_logging_with_unknown_level_falls_back_to_info(restore_logging) -> None:
    setup_logging("chatty")

    assert logging.getLogger().level == logging.INFO
