"""Tests for the one-time admin SDK bootstrap."""
from __future__ import annotations

import firebase_admin
import pytest

from subsync import app_context
from subsync.app.billing.config import AdminContextConfig, CredentialSource


class RecordingInitializer:
    def __init__(self):
        self.calls = []
        self.app = object()

    def __call__(self, credential=None, options=None, name=None):
        self.calls.append((credential, options))
        return self.app


def _no_default_app(*args, **kwargs):
    raise ValueError("The default Firebase app does not exist.")


@pytest.fixture
def initializer(monkeypatch):
    recorder = RecordingInitializer()
    monkeypatch.setattr(firebase_admin, "get_app", _no_default_app)
    monkeypatch.setattr(firebase_admin, "initialize_app", recorder)
    app_context.reset_admin_context()
    yield recorder
    app_context.reset_admin_context()


def _config(*sources):
    return AdminContextConfig(credential_sources=tuple(sources), project_id="demo")


def test_unusable_source_falls_through_to_next(initializer):
    config = _config(
        CredentialSource(name="service_account_json", service_account_info={"type": "authorized_user"}),
        CredentialSource(name="application_default", project_id="demo"),
    )

    app = app_context.ensure_admin_context(config)

    assert app is initializer.app
    assert initializer.calls == [(None, {"projectId": "demo"})]
    assert app_context.get_admin_app() is app


def test_missing_credentials_file_is_skipped(initializer, tmp_path):
    config = _config(
        CredentialSource(name="credentials_file", certificate_path=str(tmp_path / "missing.json")),
        CredentialSource(name="application_default"),
    )

    app_context.ensure_admin_context(config)

    assert initializer.calls == [(None, None)]


def test_second_call_reuses_initialized_app(initializer):
    config = _config(CredentialSource(name="application_default"))

    first = app_context.ensure_admin_context(config)
    second = app_context.ensure_admin_context(config)

    assert first is second
    assert len(initializer.calls) == 1


def test_existing_default_app_is_adopted(initializer, monkeypatch):
    existing = object()
    monkeypatch.setattr(firebase_admin, "get_app", lambda *args, **kwargs: existing)

    app = app_context.ensure_admin_context(_config(CredentialSource(name="application_default")))

    assert app is existing
    assert initializer.calls == []


def test_all_sources_unusable_raises(initializer):
    config = _config(
        CredentialSource(name="service_account_json", service_account_info={"type": "authorized_user"}),
    )

    with pytest.raises(RuntimeError) as excinfo:
        app_context.ensure_admin_context(config)

    assert "service_account_json" in str(excinfo.value)
    assert initializer.calls == []


def test_admin_app_requires_initialization(initializer):
    with pytest.raises(RuntimeError):
        app_context.get_admin_app()
