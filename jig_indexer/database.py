"""Database connection and document persistence."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from jig_indexer.config import settings
from jig_indexer.schema import Base, LedgerDocument, SpendMapDocument, utcnow

logger = structlog.get_logger(__name__)


class LedgerPersistenceError(Exception):
    """The ledger could not be written; indexing must not continue."""
    pass


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str = None):
        self.database_url = database_url or str(settings.database_url)
        # Convert postgresql:// to postgresql+asyncpg:// for async support
        if self.database_url.startswith("postgresql://"):
            self.database_url = self.database_url.replace("postgresql://", "postgresql+asyncpg://")

        self.engine = None
        self.session_factory = None

    async def connect(self):
        """Initialize database connections."""
        engine_options = {"echo": False, "pool_pre_ping": True}
        if self.database_url.startswith("postgresql"):
            engine_options.update(
                pool_size=settings.database_pool_size,
                pool_timeout=settings.database_pool_timeout,
            )
        self.engine = create_async_engine(self.database_url, **engine_options)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def disconnect(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None

    async def create_tables(self):
        """Create all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def load_ledger(self, name: str) -> Optional[Dict[str, Any]]:
        """Load the ledger document stored under ``name``."""
        async with self.session() as session:
            row = await session.get(LedgerDocument, name)
            return dict(row.document) if row else None

    async def save_ledger(self, name: str, document: Dict[str, Any]):
        """Overwrite the ledger document stored under ``name``."""
        nfts = document.get("nfts") or {}
        try:
            async with self.session() as session:
                await session.merge(LedgerDocument(
                    name=name,
                    document=document,
                    nft_count=len(nfts),
                    owned_count=sum(1 for n in nfts.values() if n.get("owner")),
                    updated_at=utcnow(),
                ))
        except SQLAlchemyError as e:
            logger.error("Failed to save ledger", name=name, error=str(e))
            raise LedgerPersistenceError(f"Failed to save ledger {name}: {e}") from e

    async def delete_ledger(self, name: str) -> bool:
        async with self.session() as session:
            row = await session.get(LedgerDocument, name)
            if row is None:
                return False
            await session.delete(row)
            return True

    async def load_spend_map(self, address: str) -> Optional[Dict[str, Any]]:
        """Load the spend map document of an address."""
        async with self.session() as session:
            row = await session.get(SpendMapDocument, address)
            return dict(row.document) if row else None

    async def save_spend_map(self, address: str, document: Dict[str, Any]) -> bool:
        """Store a spend map unless one already exists.

        Returns:
            True if the document was written
        """
        async with self.session() as session:
            if await session.get(SpendMapDocument, address) is not None:
                return False
            session.add(SpendMapDocument(
                address=address,
                document=document,
                tx_count=document.get("tx_count", 0),
                built_at=utcnow(),
            ))
            return True

    async def list_spend_maps(self) -> List[Dict[str, Any]]:
        """Addresses with a stored spend map."""
        async with self.session() as session:
            result = await session.execute(
                select(
                    SpendMapDocument.address,
                    SpendMapDocument.tx_count,
                    SpendMapDocument.built_at,
                ).order_by(SpendMapDocument.address)
            )
            return [
                {"address": address, "tx_count": tx_count, "built_at": built_at}
                for address, tx_count, built_at in result.all()
            ]
