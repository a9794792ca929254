"""Tests de configuración y huellas."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from storyboard_sync.config import ENV_VARS, SyncSettings, load_settings
from storyboard_sync.domain import editing
from storyboard_sync.domain.models import GenerationStatus
from storyboard_sync.utils.fingerprint import document_fingerprint

from fakes import make_clip, make_document


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_when_file_missing(tmp_path):
    settings = load_settings(tmp_path / "missing.yaml")
    assert settings == SyncSettings()
    assert settings.poll_interval == 6.0
    assert settings.min_artifact_size == 100


def test_yaml_then_env_then_overrides(tmp_path, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text("sync:\n  poll_interval: 3\n  verify_max_retries: 7\n  request_timeout: 10\n")
    monkeypatch.setenv("STORYBOARD_POLL_INTERVAL", "1.5")

    settings = load_settings(config, overrides={"request_timeout": 4})

    assert settings.verify_max_retries == 7
    assert settings.poll_interval == 1.5
    assert settings.request_timeout == 4


def test_invalid_values_fail_at_load(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("sync:\n  poll_interval: -1\n")
    with pytest.raises(ValidationError):
        load_settings(config)


def test_fingerprint_ignores_transient_fields():
    document = make_document(clips=[make_clip(0)])
    touched = document.model_copy(update={
        "updated_at": datetime.now(timezone.utc),
        "generation_status": GenerationStatus(in_progress=True),
    })
    assert document_fingerprint(document) == document_fingerprint(touched)

    renamed = editing.rename(document, "Other")
    assert document_fingerprint(document) != document_fingerprint(renamed)
