from __future__ import annotations

import logging

from flask import Flask
from flask_cors import CORS

from .config import AppConfig, ConfigError, load_config
from .firebase import init_firebase
from .services import Services, build_services, install_services


def create_app(config: AppConfig | None = None, *, services: Services | None = None) -> Flask:
    """Application factory for the chat backend."""
    if config is None:
        try:
            config = load_config()
        except ConfigError as exc:
            raise RuntimeError(f"Configuration error: {exc}") from exc

    app = Flask(__name__)

    app.config.update(
        PORT=config.port,
        FIREBASE_CREDENTIALS_PATH=str(config.firebase_credentials_path),
        FIRESTORE_DATABASE_ID=config.firestore_database_id,
        FIREBASE_STORAGE_BUCKET=config.storage_bucket,
        LOCAL_DATA_DIR=str(config.local_data_dir),
        BACKGROUND_SERVICES_ENABLED=config.background_services_enabled,
        MAX_CONTENT_LENGTH=25 * 1024 * 1024,
        LOG_LEVEL=config.log_level,
    )
    logging.getLogger().setLevel(config.log_level)

    CORS(app,
         resources={r"/*": {
             "origins": [
                 r"^https?://localhost(:[0-9]+)?$",
                 r"^https?://127\.0\.0\.1(:[0-9]+)?$",
             ],
             "methods": ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
             "allow_headers": ["Content-Type", "Authorization"],
             "supports_credentials": True,
             "max_age": 3600,
         }})

    if services is None:
        init_firebase(
            config.firebase_credentials_path,
            database_id=config.firestore_database_id,
            storage_bucket=config.storage_bucket,
        )
        services = build_services(config)
    install_services(services)
    app.extensions["soc_chat"] = services

    # Blueprints resolve their services at request time.
    from .cleanup.routes import cleanup_bp
    from .notifications.routes import notifications_bp
    from .offline.routes import offline_bp
    from .scheduled.routes import scheduled_bp

    app.register_blueprint(offline_bp)
    app.register_blueprint(scheduled_bp)
    app.register_blueprint(cleanup_bp)
    app.register_blueprint(notifications_bp)

    @app.get("/health")
    def health_check() -> dict[str, object]:
        return {"status": "ok", "online": services.offline.is_online}

    return app
