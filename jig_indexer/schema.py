"""Database models for the ledger and spend map store."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerDocument(Base):
    """Whole ledger aggregate, overwritten on every flush."""

    __tablename__ = "ledger_documents"

    name = Column(String(100), primary_key=True)
    document = Column(JSON, nullable=False)
    nft_count = Column(Integer, default=0)
    owned_count = Column(Integer, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class SpendMapDocument(Base):
    """Spend map of one address, written once."""

    __tablename__ = "spend_maps"

    address = Column(String(64), primary_key=True)
    document = Column(JSON, nullable=False)
    tx_count = Column(Integer, default=0)
    built_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
