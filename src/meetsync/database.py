"""Database models and session management for persisted state."""

import asyncio
import threading
from datetime import datetime
from typing import Any, Callable, Dict, TypeVar

from sqlalchemy import create_engine, Column, String, DateTime, Integer, Text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
import pytz

from .config import Settings

Base = declarative_base()

T = TypeVar("T")


class KeyValueDB(Base):
    """Database model backing the key-value storage interface."""

    __tablename__ = 'kv_store'

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))


class MeetingDB(Base):
    """Database model for locally owned meetings."""

    __tablename__ = 'meetings'

    id = Column(String(64), primary_key=True)
    title = Column(String(1024), nullable=False)
    description = Column(Text, nullable=True)
    date = Column(String(10), nullable=True, index=True)
    time = Column(String(32), nullable=True)
    duration = Column(Integer, nullable=True, default=60)

    # Plain string or structured {address, coordinates, type}, stored as JSON
    location = Column(Text, nullable=True)
    participants = Column(Text, nullable=False, default='[]')
    source = Column(String(20), nullable=False, default='local')

    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))


class DatabaseManager:
    """Owns the SQLAlchemy engine and session factory."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        engine_args: Dict[str, Any] = {}
        if settings.database_url.startswith('sqlite'):
            # Sessions are opened from executor threads
            engine_args['connect_args'] = {'check_same_thread': False}
            if ':memory:' in settings.database_url or settings.database_url == 'sqlite://':
                # An in-memory database lives in a single connection shared by all threads
                engine_args['poolclass'] = StaticPool
        self._single_connection = 'poolclass' in engine_args
        self._lock = threading.Lock()
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            **engine_args
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    async def run(self, work: Callable[[Session], T]) -> T:
        """Run blocking session work in the default executor.

        Args:
            work: Called with a fresh session that is closed afterwards

        Returns:
            Whatever ``work`` returns; its exceptions propagate unchanged
        """
        def call() -> T:
            if self._single_connection:
                # Transactions on the shared connection must not interleave
                with self._lock, self.get_session() as session:
                    return work(session)
            with self.get_session() as session:
                return work(session)

        return await asyncio.get_event_loop().run_in_executor(None, call)

    def dispose(self) -> None:
        self.engine.dispose()
