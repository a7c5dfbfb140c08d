import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.exc import InterfaceError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import dialect_insert
from app.models.pending_result import NativeAuthPendingResult
from app.schemas.native_auth import NativeAuthResult

logger = logging.getLogger(__name__)

PENDING_TTL_SECONDS = 10 * 60


MISSING_TABLE_MARKERS = ("undefinedtable", "does not exist", "no such table")
CONNECTION_MARKERS = (
    "connection refused",
    "could not connect",
    "unable to open database",
    "connection is closed",
    "connection was closed",
)


def _is_storage_unavailable(exc: Exception) -> bool:
    """Missing table or unreachable database. Lock waits and deadlocks are not."""
    if isinstance(exc, OSError):
        return True
    if not isinstance(exc, (OperationalError, InterfaceError, ProgrammingError)):
        return False
    if exc.connection_invalidated or isinstance(exc.orig, OSError):
        return True
    text = f"{type(exc.orig).__name__} {exc.orig}".lower()
    if any(marker in text for marker in MISSING_TABLE_MARKERS):
        return True
    return not isinstance(exc, ProgrammingError) and any(marker in text for marker in CONNECTION_MARKERS)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PendingResultStore:
    """
    Single-consumption results keyed by request id, for clients that poll.

    The database table is tried first. If it is missing or unreachable the
    result goes to a process-local map instead, which does not survive a
    restart and is not shared between workers.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        ttl_seconds: int = PENDING_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._memory: dict[str, tuple[NativeAuthResult, float]] = {}
        self._fallback_warned = False

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _use_memory(self, exc: Exception) -> None:
        if not self._fallback_warned:
            self._fallback_warned = True
            logger.warning(
                "Pending result table unavailable, using in-memory store (%s: %s)",
                type(exc).__name__,
                exc,
            )

    async def save(self, request_id: str, result: NativeAuthResult) -> None:
        if self._session_factory is not None:
            try:
                await self._save_durable(request_id, result)
                return
            except Exception as e:
                if not _is_storage_unavailable(e):
                    raise
                self._use_memory(e)
        self._save_memory(request_id, result)

    async def consume(self, request_id: str) -> Optional[NativeAuthResult]:
        """Remove and return the result, or None while it is not ready."""
        result = self._consume_memory(request_id)
        if result is not None or self._session_factory is None:
            return result

        try:
            return await self._consume_durable(request_id)
        except Exception as e:
            if not _is_storage_unavailable(e):
                raise
            self._use_memory(e)
            return None

    async def purge_expired(self) -> int:
        """Drop expired entries from both backends. Returns how many were removed."""
        removed = self._sweep_memory(self._clock())
        if self._session_factory is not None:
            async with self._session_factory() as session:
                removed += await self._sweep_durable(session)
                await session.commit()
        return removed

    def _sweep_memory(self, now: float) -> int:
        expired = [key for key, (_, expires_at) in self._memory.items() if expires_at <= now]
        for key in expired:
            self._memory.pop(key, None)
        return len(expired)

    async def _sweep_durable(self, session: AsyncSession) -> int:
        result = await session.execute(
            delete(NativeAuthPendingResult).where(NativeAuthPendingResult.expires_at <= self._now())
        )
        return result.rowcount or 0

    def _save_memory(self, request_id: str, result: NativeAuthResult) -> None:
        now = self._clock()
        self._sweep_memory(now)
        self._memory[request_id] = (result, now + self.ttl_seconds)

    def _consume_memory(self, request_id: str) -> Optional[NativeAuthResult]:
        entry = self._memory.pop(request_id, None)
        if entry is None:
            return None
        result, expires_at = entry
        if expires_at <= self._clock():
            return None
        return result

    async def _save_durable(self, request_id: str, result: NativeAuthResult) -> None:
        now = self._now()
        expires_at = datetime.fromtimestamp(now.timestamp() + self.ttl_seconds, tz=timezone.utc)
        values = {
            "status": result.status,
            "provider": result.provider,
            "callback_url": result.callback_url,
            "bridge_token": result.bridge_token,
            "message": result.message,
            "expires_at": expires_at,
        }

        async with self._session_factory() as session:
            await self._sweep_durable(session)
            insert = dialect_insert(session)
            stmt = insert(NativeAuthPendingResult).values(request_id=request_id, **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[NativeAuthPendingResult.request_id],
                set_=values,
            )
            await session.execute(stmt)
            await session.commit()

    async def _consume_durable(self, request_id: str) -> Optional[NativeAuthResult]:
        # DELETE ... RETURNING: two concurrent polls cannot both receive the row.
        async with self._session_factory() as session:
            deleted = await session.execute(
                delete(NativeAuthPendingResult)
                .where(NativeAuthPendingResult.request_id == request_id)
                .returning(
                    NativeAuthPendingResult.status,
                    NativeAuthPendingResult.provider,
                    NativeAuthPendingResult.callback_url,
                    NativeAuthPendingResult.bridge_token,
                    NativeAuthPendingResult.message,
                    NativeAuthPendingResult.expires_at,
                )
            )
            row = deleted.one_or_none()
            await session.commit()

        if row is None or _as_utc(row.expires_at) <= self._now():
            return None

        try:
            return NativeAuthResult(
                status=row.status,
                provider=row.provider,
                callback_url=row.callback_url,
                bridge_token=row.bridge_token,
                message=row.message,
            )
        except ValidationError:
            logger.error("Discarding malformed pending result for request %s", request_id)
            return None
