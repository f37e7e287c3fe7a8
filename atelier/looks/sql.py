from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from .models import Look, LookComposition, LookStatus, _utcnow
from .store import LookStore


class SQLLookStore(LookStore):
    """Async SQLModel-backed look store."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def _find_by_source(self, session: AsyncSession, source_key: str) -> Optional[Look]:
        result = await session.execute(select(Look).where(Look.source_key == source_key))
        return result.scalars().first()

    async def create_pending_look(
        self, user_id: str, composition: LookComposition, source_key: Optional[str] = None
    ) -> str:
        async with self.session() as session:
            if source_key:
                existing = await self._find_by_source(session, source_key)
                if existing is not None:
                    return existing.id
            look = Look.from_composition(user_id, composition, source_key)
            session.add(look)
            try:
                await session.commit()
            except IntegrityError:
                # lost a race on source_key
                await session.rollback()
                existing = await self._find_by_source(session, source_key) if source_key else None
                if existing is None:
                    raise
                return existing.id
            return look.id

    async def get_look(self, look_id: str) -> Look | None:
        async with self.session() as session:
            return await session.get(Look, look_id)

    async def list_looks(self, user_id: str) -> list[Look]:
        async with self.session() as session:
            result = await session.execute(
                select(Look).where(Look.user_id == user_id).order_by(Look.created_at)
            )
            return list(result.scalars().all())

    async def _update(
        self,
        look_id: str,
        status: LookStatus,
        image_ref: Optional[str],
        error: Optional[str],
    ) -> None:
        async with self.session() as session:
            look = await session.get(Look, look_id)
            if look is None:
                raise KeyError(f"Look {look_id} not found")
            look.status = status.value
            look.image_ref = image_ref
            look.error_message = error
            look.updated_at = _utcnow()
            session.add(look)
            await session.commit()

    async def set_look_generating(self, look_id: str) -> None:
        await self._update(look_id, LookStatus.GENERATING, None, None)

    async def set_look_ready(self, look_id: str, image_ref: str) -> None:
        await self._update(look_id, LookStatus.READY, image_ref, None)

    async def set_look_failed(self, look_id: str, reason: str) -> None:
        await self._update(look_id, LookStatus.GENERATION_FAILED, None, reason)
