"""
Flask application factory.

Environment Variables:
    SQLALCHEMY_DATABASE_URI: Database URL (default: local SQLite file)
    SECRET_KEY: Flask secret key
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from flask import Flask

from app.chat.vector_stores.embeddings import EmbeddingCache
from app.config import CACHE_STORE_WORKERS
from app.web.db import db

logger = logging.getLogger(__name__)


def create_app(test_config: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv(
        "SQLALCHEMY_DATABASE_URI",
        "sqlite:///douane.db"
    )
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev")
    app.config["QUERY_EXPANSION"] = os.getenv("QUERY_EXPANSION", "false").lower() == "true"
    app.config["JSON_AS_ASCII"] = False

    if test_config:
        app.config.update(test_config)

    db.init_app(app)

    # One embedding cache per application, shared by every request
    app.extensions["embedding_cache"] = EmbeddingCache()
    app.extensions["cache_store_executor"] = ThreadPoolExecutor(
        max_workers=CACHE_STORE_WORKERS, thread_name_prefix="cache-store"
    )

    from app.web.views import chat_views
    app.register_blueprint(chat_views.bp)

    with app.app_context():
        from app.web.db import models  # noqa: F401
        db.create_all()

    logger.info(f"App created (database: {app.config['SQLALCHEMY_DATABASE_URI'].split('://')[0]})")
    return app
