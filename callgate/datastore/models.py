"""
Database models for the structured cache tier.
Uses SQLAlchemy 2.0+ declarative mapping.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models"""

    pass


class CachedResponseDB(Base):
    """Cached upstream responses"""

    __tablename__ = "cached_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fingerprint: Mapped[str] = mapped_column(
        String(512), unique=True, nullable=False, index=True
    )
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # Tags encoded as "|tag1|tag2|" so a single LIKE matches one tag
    tags: Mapped[str] = mapped_column(Text, default="||", nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    __table_args__ = (Index("idx_endpoint_created", "endpoint", "created_at"),)

    def __repr__(self) -> str:
        return f"<CachedResponse(endpoint={self.endpoint}, expires_at={self.expires_at})>"
