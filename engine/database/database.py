"""
Database connection and session management.
"""
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from engine.config import settings


class DatabaseManager:
    """Manager for database connections and sessions."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None

    def initialize(self):
        """Initialize database engine and session factory."""
        if self.engine is None:
            url = self.database_url or settings.database_url
            if url.startswith("sqlite"):
                # SQLite: one shared connection, usable from the background run tasks
                self.engine = create_engine(
                    url,
                    connect_args={
                        "check_same_thread": False,
                        "timeout": 20,
                    },
                    poolclass=StaticPool,
                    echo=settings.debug,
                )
            else:
                self.engine = create_engine(
                    url,
                    pool_size=settings.database_pool_size,
                    max_overflow=settings.database_max_overflow,
                    echo=settings.debug,
                )

            self.SessionLocal = sessionmaker(
                autocommit=False,
                autoflush=False,
                bind=self.engine
            )

    def create_tables(self):
        """Create all database tables."""
        if self.engine is None:
            self.initialize()

        from .models import Base
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        if self.engine is None:
            self.initialize()
        return self.SessionLocal()  # type: ignore


# Global database manager instance
db_manager = DatabaseManager()


def initialize_database():
    """Initialize database and create tables."""
    db_manager.initialize()
    db_manager.create_tables()
