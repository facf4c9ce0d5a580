from __future__ import annotations

from pathlib import Path

import pytest

from selfheal.config.loader import ConfigLoader
from selfheal.logging.artifacts import ArtifactManager
from selfheal.logging.audit import HealingAuditLogger


@pytest.fixture(scope="session", autouse=True)
def reset_artifacts_for_test_run():
    artifacts_root = Path(__file__).resolve().parents[1] / "artifacts"
    manager = ArtifactManager(artifacts_root)
    manager.reset()
    return manager


@pytest.fixture()
def suite_config():
    config_path = Path(__file__).resolve().parents[1] / "config" / "test_suite.json"
    return ConfigLoader.load(config_path, environ={})


@pytest.fixture()
def artifact_manager(tmp_path):
    return ArtifactManager(tmp_path / "artifacts")


@pytest.fixture()
def audit_logger(tmp_path):
    return HealingAuditLogger(tmp_path / "artifacts")
