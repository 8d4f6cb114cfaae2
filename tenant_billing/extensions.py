"""
Flask extension instances, bound to the app in ``init_extensions``.
"""

import logging

from flask_mail import Mail
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
migrate = Migrate()
mail = Mail()

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""
    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    migrate.init_app(app, db)
    logger.info("Flask-Migrate initialized")

    mail.init_app(app)
    logger.info("Flask-Mail initialized")

    return app


__all__ = ["db", "migrate", "mail", "init_extensions"]
