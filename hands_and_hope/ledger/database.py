"""Engine and session factory shared by the grant manager, evaluator and logger."""

from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hands_and_hope.ledger.models import Base

logger = logging.getLogger(__name__)

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


class Database:
    """
    Owns the SQLAlchemy engine for caregiver access storage.

    Usage:
        db = Database(settings.database_url_sync)
        db.initialize()  # Create tables

        with db.SessionLocal() as session:
            ...
    """

    def __init__(self, database_url: str) -> None:
        """
        Args:
            database_url: SQLAlchemy connection string (sync driver).
        """
        kwargs: dict = {}
        if database_url.startswith("sqlite"):
            # Connections are shared with the API worker threads
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in _IN_MEMORY_URLS:
                kwargs["poolclass"] = StaticPool
        self.url = database_url
        self.engine = create_engine(database_url, echo=False, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize(self) -> None:
        """Create the grant and activity tables if they do not exist."""
        Base.metadata.create_all(self.engine)
        logger.info("Caregiver access schema ready: %s", self.engine.url.render_as_string())

    def dispose(self) -> None:
        self.engine.dispose()
