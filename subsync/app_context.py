"""Shared admin SDK context for identity verification and the document store."""
from __future__ import annotations

import logging
import threading
from typing import Any, Optional

import firebase_admin
from firebase_admin import credentials, firestore

from subsync.app.billing.config import AdminContextConfig, CredentialSource

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_app: Optional[firebase_admin.App] = None


def _credential_for(source: CredentialSource) -> Optional[credentials.Base]:
    if source.service_account_info is not None:
        return credentials.Certificate(dict(source.service_account_info))
    if source.certificate_path is not None:
        return credentials.Certificate(source.certificate_path)
    return None


def _initialize(source: CredentialSource) -> firebase_admin.App:
    options = {"projectId": source.project_id} if source.project_id else None
    credential = _credential_for(source)
    return firebase_admin.initialize_app(credential, options)


def ensure_admin_context(config: AdminContextConfig) -> firebase_admin.App:
    """Initialize the admin SDK once, trying credential sources in order."""

    global _app

    with _lock:
        if _app is not None:
            return _app
        try:
            _app = firebase_admin.get_app()
            return _app
        except ValueError:
            pass

        errors = []
        for source in config.credential_sources:
            try:
                _app = _initialize(source)
            except (ValueError, IOError) as exc:
                logger.warning("Admin credential source %s unusable: %s", source.name, exc)
                errors.append(f"{source.name}: {exc}")
                continue
            logger.info("Initialized admin SDK using %s", source.name)
            return _app
        raise RuntimeError(f"Unable to initialize admin SDK ({'; '.join(errors) or 'no credential sources'})")


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_admin_app() -> firebase_admin.App:
    return _require(_app, "admin_app")


def get_firestore_client() -> Any:
    return firestore.client(get_admin_app())


def reset_admin_context() -> None:
    """Forget the cached app handle so the next call initializes again."""

    global _app

    with _lock:
        _app = None
