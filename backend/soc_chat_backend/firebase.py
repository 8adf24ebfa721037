from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
import json
import logging
import os

import firebase_admin
from firebase_admin import credentials, firestore, storage
from google.cloud import firestore as gcloud_firestore

log = logging.getLogger(__name__)

firebase_app: Optional[firebase_admin.App] = None
_firestore_client: Optional[firestore.Client] = None
_database_id: Optional[str] = None
_project_id: Optional[str] = None
_bucket_name: Optional[str] = None

_DEFAULT_DATABASE_IDS = {"", "(default)", "default"}


def _project_from_credentials(credentials_path: Path) -> Optional[str]:
    override = (os.getenv("FIREBASE_PROJECT_ID") or "").strip()
    if override:
        return override
    try:
        with open(credentials_path, "r", encoding="utf-8") as fh:
            return json.load(fh).get("project_id")
    except (OSError, ValueError):
        return None


def init_firebase(
    credentials_path: Path,
    database_id: Optional[str] = None,
    storage_bucket: Optional[str] = None,
) -> firebase_admin.App:
    """Initialise the Firebase app once; later calls only refresh the database/bucket selection."""
    global firebase_app, _firestore_client, _database_id, _project_id, _bucket_name

    if firebase_app is not None:
        if database_id and database_id != _database_id:
            _database_id = database_id
            _firestore_client = None
        if storage_bucket:
            _bucket_name = storage_bucket
        return firebase_app

    project_id = _project_from_credentials(credentials_path)
    if not storage_bucket and project_id:
        storage_bucket = f"{project_id}.appspot.com"

    if firebase_admin._apps:
        firebase_app = firebase_admin.get_app()
    else:
        options: dict[str, Any] = {}
        if project_id:
            options["projectId"] = project_id
        if storage_bucket:
            options["storageBucket"] = storage_bucket
        firebase_app = firebase_admin.initialize_app(
            credentials.Certificate(str(credentials_path)),
            options=options or None,
        )
        log.info("Initialized Firebase app (project: %s)", project_id or "unknown")

    _database_id = database_id
    _project_id = project_id or getattr(firebase_app, "project_id", None)
    _bucket_name = storage_bucket
    log.info(
        "Using Firestore database '%s' and storage bucket '%s'",
        _database_id or "(default)",
        _bucket_name or "(default)",
    )
    return firebase_app


def _require_app() -> firebase_admin.App:
    if firebase_app is None:
        raise RuntimeError("Firebase app has not been initialised. Call init_firebase() first.")
    return firebase_app


def get_firestore_client() -> firestore.Client:
    global _firestore_client

    app = _require_app()
    if _firestore_client is not None:
        return _firestore_client

    if (_database_id or "") in _DEFAULT_DATABASE_IDS:
        _firestore_client = firestore.client(app=app)
        return _firestore_client

    project_id = _project_id or getattr(app, "project_id", None)
    if not project_id:
        raise RuntimeError("Unable to determine Firebase project ID for Firestore client.")

    # firebase_admin.firestore.client() cannot target a named database.
    _firestore_client = gcloud_firestore.Client(
        project=project_id,
        credentials=app.credential.get_credential(),
        database=_database_id,
    )
    log.debug("Created Firestore client for database '%s'", _database_id)
    return _firestore_client


def get_storage_bucket():
    """Return the Cloud Storage bucket holding chat media."""

    return storage.bucket(_bucket_name, app=_require_app())
