"""
Repository layer - data access for cached responses.
"""

import json
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from callgate.datastore.models import CachedResponseDB


def encode_tags(tags: tuple[str, ...]) -> str:
    return "|" + "|".join(tags) + "|"


def decode_tags(raw: str) -> tuple[str, ...]:
    return tuple(t for t in raw.split("|") if t)


class CachedResponseRepository:
    """Cached upstream response Repository"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, fingerprint: str) -> CachedResponseDB | None:
        result = await self.session.execute(
            select(CachedResponseDB).where(CachedResponseDB.fingerprint == fingerprint)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        fingerprint: str,
        endpoint: str,
        data: Any,
        tags: tuple[str, ...],
        created_at: datetime,
        expires_at: datetime,
    ) -> None:
        """Insert or replace the row for *fingerprint*."""
        payload_json = json.dumps(data, ensure_ascii=False)

        cached = await self.get(fingerprint)
        if cached:
            cached.endpoint = endpoint
            cached.tags = encode_tags(tags)
            cached.payload_json = payload_json
            cached.created_at = created_at
            cached.expires_at = expires_at
            logger.debug(f"Replaced cached response: {fingerprint[:50]}...")
        else:
            self.session.add(
                CachedResponseDB(
                    fingerprint=fingerprint,
                    endpoint=endpoint,
                    tags=encode_tags(tags),
                    payload_json=payload_json,
                    created_at=created_at,
                    expires_at=expires_at,
                )
            )
        await self.session.flush()

    async def query_by_tags(
        self,
        tags: list[str],
        now: datetime,
        since: datetime | None = None,
    ) -> list[CachedResponseDB]:
        """Unexpired rows carrying any of *tags*, newest first."""
        stmt = select(CachedResponseDB).where(CachedResponseDB.expires_at > now)
        if tags:
            stmt = stmt.where(
                or_(*(CachedResponseDB.tags.contains(f"|{tag}|", autoescape=True) for tag in tags))
            )
        if since is not None:
            stmt = stmt.where(CachedResponseDB.created_at >= since)
        stmt = stmt.order_by(CachedResponseDB.created_at.desc())

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, fingerprint: str) -> int:
        result = await self.session.execute(
            delete(CachedResponseDB).where(CachedResponseDB.fingerprint == fingerprint)
        )
        return result.rowcount or 0

    async def _delete_where(self, *criteria) -> list[str]:
        """Delete matching rows and return their fingerprints."""
        stmt = select(CachedResponseDB.fingerprint)
        if criteria:
            stmt = stmt.where(*criteria)
        result = await self.session.execute(stmt)
        fingerprints = list(result.scalars().all())
        if fingerprints:
            await self.session.execute(
                delete(CachedResponseDB).where(
                    CachedResponseDB.fingerprint.in_(fingerprints)
                )
            )
        return fingerprints

    async def delete_by_endpoint(self, endpoint: str) -> list[str]:
        return await self._delete_where(CachedResponseDB.endpoint == endpoint)

    async def delete_expired(self, now: datetime) -> list[str]:
        deleted = await self._delete_where(CachedResponseDB.expires_at <= now)
        if deleted:
            logger.debug(f"Purged {len(deleted)} expired cached responses")
        return deleted

    async def clear(self) -> list[str]:
        return await self._delete_where()

    async def count(self) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(CachedResponseDB)
        )
        return int(result.scalar_one())
