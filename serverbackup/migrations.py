"""
Database schema bootstrap.

Creates missing tables without Alembic and seeds the settings row.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from serverbackup import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Create any missing tables and the settings row.

    Safe to call from several Gunicorn workers at once: a worker that loses
    the race to create a table logs it and carries on.
    """
    with app.app_context():
        from serverbackup import models  # noqa: F401  (registers tables)

        inspector = inspect(db.engine)
        existing_tables = set(inspector.get_table_names())
        missing = [name for name in db.metadata.tables if name not in existing_tables]

        if missing:
            logger.info(f"Creating database tables: {', '.join(sorted(missing))}")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except SQLAlchemyError as e:
                # Another worker may have created them first
                db.session.rollback()
                logger.warning(f"Database schema creation reported an error: {e}")

        seed_settings()


def seed_settings():
    from serverbackup.models import AppSettings

    try:
        AppSettings.current()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning(f"Could not seed settings row: {e}")
