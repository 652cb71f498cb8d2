"""
Result Cache

Two tiers keyed by (content identity, requesting principal):
- an in-process bounded LRU map consulted first
- a durable store (SQLite/any SQLAlchemy async URL) consulted on a memory
  miss, which repopulates the memory tier on hit

Writes go through to both tiers. Durable-tier failures are logged and never
fail a transcription.
"""

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import Column, DateTime, Integer, JSON, String, UniqueConstraint, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .models import CacheEntry, Transcript

logger = logging.getLogger(__name__)

Base = declarative_base()

CacheKey = Tuple[str, str]


class TranscriptionCacheRecord(Base):
    """Durable cache rows, one per (content, principal)."""
    __tablename__ = 'transcription_cache'

    id = Column(Integer, primary_key=True, autoincrement=True)
    content_identity = Column(String(600), nullable=False, index=True)
    requesting_principal = Column(String(255), nullable=False)
    transcript = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('content_identity', 'requesting_principal', name='uq_cache_content_principal'),
    )


class LRUTranscriptCache:
    """Bounded in-process map with least-recently-used eviction."""

    def __init__(self, capacity: int = 256):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    def put(self, key: CacheKey, entry: CacheEntry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted cache entry {evicted}")

    def delete(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def delete_content(self, content_identity: str) -> int:
        keys = [key for key in self._entries if key[0] == content_identity]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries


class TranscriptStore(ABC):
    """Durable keyed get/put store, last write wins."""

    @abstractmethod
    async def get(self, content_identity: str, principal: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        pass

    @abstractmethod
    async def delete(self, content_identity: str, principal: Optional[str] = None) -> int:
        pass

    async def purge_expired(self) -> int:
        return 0

    async def close(self) -> None:
        pass


class SQLTranscriptStore(TranscriptStore):
    """Async SQLAlchemy-backed durable tier with age-based expiry."""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///data/transcription_cache.db",
                 max_age: Optional[timedelta] = timedelta(days=30)):
        self.database_url = database_url
        self.max_age = max_age
        self.engine = None
        self.session_factory = None

    async def initialize(self) -> None:
        """Initialize async database engine, session factory and tables."""
        engine_kwargs: Dict[str, Any] = {"echo": False}

        if self.database_url.startswith('sqlite'):
            db_file = self.database_url.split(':///', 1)[-1]
            if db_file and db_file != ':memory:':
                Path(db_file).parent.mkdir(exist_ok=True, parents=True)
            engine_kwargs["connect_args"] = {"timeout": 30}
        else:
            engine_kwargs.update({
                "pool_size": 2,
                "max_overflow": 3,
                "pool_timeout": 30,
                "pool_recycle": 1800,
                "pool_pre_ping": True,
            })

        self.engine = create_async_engine(self.database_url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def get_session(self):
        """Get an async database session."""
        if not self.session_factory:
            await self.initialize()

        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            else:
                await session.commit()

    def _cutoff(self) -> Optional[datetime]:
        if self.max_age is None:
            return None
        return datetime.utcnow() - self.max_age

    async def get(self, content_identity: str, principal: str) -> Optional[CacheEntry]:
        async with self.get_session() as session:
            result = await session.execute(
                select(TranscriptionCacheRecord).where(
                    TranscriptionCacheRecord.content_identity == content_identity,
                    TranscriptionCacheRecord.requesting_principal == principal,
                )
            )
            record = result.scalars().first()

        if record is None:
            return None
        cutoff = self._cutoff()
        if cutoff is not None and record.created_at < cutoff:
            return None

        return CacheEntry(
            content_identity=record.content_identity,
            requesting_principal=record.requesting_principal,
            transcript=Transcript.from_dict(record.transcript),
            created_at=record.created_at,
        )

    async def put(self, entry: CacheEntry) -> None:
        async with self.get_session() as session:
            result = await session.execute(
                select(TranscriptionCacheRecord).where(
                    TranscriptionCacheRecord.content_identity == entry.content_identity,
                    TranscriptionCacheRecord.requesting_principal == entry.requesting_principal,
                )
            )
            record = result.scalars().first()
            if record is None:
                session.add(TranscriptionCacheRecord(
                    content_identity=entry.content_identity,
                    requesting_principal=entry.requesting_principal,
                    transcript=entry.transcript.to_dict(),
                    created_at=entry.created_at,
                ))
            else:
                record.transcript = entry.transcript.to_dict()
                record.created_at = entry.created_at

    async def delete(self, content_identity: str, principal: Optional[str] = None) -> int:
        stmt = delete(TranscriptionCacheRecord).where(
            TranscriptionCacheRecord.content_identity == content_identity
        )
        if principal is not None:
            stmt = stmt.where(TranscriptionCacheRecord.requesting_principal == principal)
        async with self.get_session() as session:
            result = await session.execute(stmt)
            return result.rowcount or 0

    async def purge_expired(self) -> int:
        """Delete rows older than max_age."""
        cutoff = self._cutoff()
        if cutoff is None:
            return 0
        async with self.get_session() as session:
            result = await session.execute(
                delete(TranscriptionCacheRecord).where(TranscriptionCacheRecord.created_at < cutoff)
            )
            purged = result.rowcount or 0
        if purged:
            logger.info(f"Purged {purged} expired transcription cache rows")
        return purged

    async def count(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(select(func.count(TranscriptionCacheRecord.id)))
            return result.scalar_one()

    async def clear(self) -> int:
        """Delete every row."""
        async with self.get_session() as session:
            result = await session.execute(delete(TranscriptionCacheRecord))
            return result.rowcount or 0

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()


class TwoTierTranscriptCache:
    """Memory LRU in front of a durable TranscriptStore."""

    def __init__(self, memory: Optional[LRUTranscriptCache] = None, store: Optional[TranscriptStore] = None):
        self.memory = memory or LRUTranscriptCache()
        self.store = store
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._stats = {'memory_hits': 0, 'durable_hits': 0, 'misses': 0, 'writes': 0, 'durable_errors': 0}

    async def get(self, content_identity: str, principal: str) -> Optional[Transcript]:
        """Look up a transcript; returns a copy flagged cached=True."""
        key = (content_identity, principal)

        entry = self.memory.get(key)
        if entry is not None:
            self._stats['memory_hits'] += 1
            return self._as_cached(entry.transcript)

        if self.store is not None:
            try:
                entry = await self.store.get(content_identity, principal)
            except Exception as e:
                self._stats['durable_errors'] += 1
                self.logger.error(f"Durable cache lookup failed for {key}: {e}")
                entry = None
            if entry is not None:
                self._stats['durable_hits'] += 1
                self.memory.put(key, entry)
                return self._as_cached(entry.transcript)

        self._stats['misses'] += 1
        return None

    async def put(self, content_identity: str, principal: str, transcript: Transcript) -> None:
        """Write a private copy of transcript through to both tiers."""
        entry = CacheEntry(
            content_identity=content_identity,
            requesting_principal=principal,
            transcript=Transcript.from_dict(transcript.to_dict()),
        )
        self.memory.put((content_identity, principal), entry)
        self._stats['writes'] += 1

        if self.store is not None:
            try:
                await self.store.put(entry)
            except Exception as e:
                self._stats['durable_errors'] += 1
                self.logger.warning(f"Failed to persist cache entry for {content_identity}: {e}")

    async def invalidate(self, content_identity: str, principal: Optional[str] = None) -> None:
        """Drop one principal's entry, or every principal's when principal is None."""
        if principal is None:
            self.memory.delete_content(content_identity)
        else:
            self.memory.delete((content_identity, principal))

        if self.store is not None:
            try:
                await self.store.delete(content_identity, principal)
            except Exception as e:
                self._stats['durable_errors'] += 1
                self.logger.warning(f"Failed to invalidate durable cache for {content_identity}: {e}")

    def clear(self) -> None:
        """Clear the in-process tier."""
        self.memory.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            'memory_size': len(self.memory),
            'memory_capacity': self.memory.capacity,
            'durable_enabled': self.store is not None,
        }

    async def close(self) -> None:
        if self.store is not None:
            await self.store.close()

    @staticmethod
    def _as_cached(transcript: Transcript) -> Transcript:
        cached = Transcript.from_dict(transcript.to_dict())
        cached.cached = True
        return cached
