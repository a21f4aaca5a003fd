"""Database engine for the job engine using SQLAlchemy with SQLite.

This module provides:
- Database: engine setup (WAL mode, foreign keys) and session factory
- Table creation for jobs, sync runs, mappings, versions and schedules

The stores in jobs.py, versions.py and schedules.py share one Database.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session

from cloudrelay.server.models import Base

if TYPE_CHECKING:
    from sqlalchemy import Engine


class Database:
    """SQLAlchemy database for job engine state.

    Uses SQLite with WAL mode so readers (status API) do not block the
    writers (workers claiming and updating jobs).
    """

    def __init__(self, db_path: Path | str, busy_timeout: float = 30.0) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
            busy_timeout: Seconds a writer waits for the SQLite write lock.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # check_same_thread=False: worker threads share the engine
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
            echo=False,
        )

        @event.listens_for(self._engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, _record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        # Enable WAL mode
        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        # Create tables if they don't exist
        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        """Path of the database file."""
        return self._db_path

    @property
    def engine(self) -> Engine:
        """Underlying SQLAlchemy engine."""
        return self._engine

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def session(self) -> Session:
        """Create a new database session.

        Objects returned to callers are expunged so they can be read after
        the session closes.
        """
        return Session(self._engine, expire_on_commit=False)
