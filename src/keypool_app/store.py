import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keypool_app.db_models import (
    CategoryQuotaRow,
    CategoryUsage,
    GeminiKey,
    KeyUsage,
    ModelConfigRow,
    RotationState,
)
from keypool_library import Mutation, MutationKind, PersistenceBackend

logger = logging.getLogger(__name__)

ROTATION_STATE_ID = 1


def _as_datetime(value: Any) -> datetime:
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(value)
    return _as_utc(value)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops the offset; stored values are always UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlPersistence(PersistenceBackend):
    """
    Writes every engine mutation to the database in its own transaction.

    Writes from one process are serialized so read-modify-write steps (usage
    rows created on the first call of a day, the cursor sequence check) never
    interleave.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self._write_lock = asyncio.Lock()

    async def persist(self, mutation: Mutation) -> None:
        async with self._write_lock:
            async with self._session_maker() as session:
                await self._apply(session, mutation)
                await session.commit()

    async def _apply(self, session: AsyncSession, m: Mutation) -> None:
        payload = m.payload

        if m.kind is MutationKind.CREDENTIAL_ADDED:
            session.add(
                GeminiKey(
                    id=m.credential_id,
                    api_key=payload["secret"],
                    name=payload.get("label") or "",
                    enabled=payload.get("enabled", True),
                    created_at=_as_datetime(payload["created_at"]),
                    daily_quota=payload.get("daily_quota"),
                )
            )
        elif m.kind is MutationKind.CREDENTIAL_REMOVED:
            await session.execute(delete(KeyUsage).where(KeyUsage.key_id == m.credential_id))
            await session.execute(delete(GeminiKey).where(GeminiKey.id == m.credential_id))
        elif m.kind is MutationKind.CREDENTIAL_UPDATED:
            await session.execute(
                update(GeminiKey).where(GeminiKey.id == m.credential_id).values(**payload)
            )
        elif m.kind is MutationKind.USAGE_INCREMENTED:
            await self._store_usage(session, m.credential_id, payload)
        elif m.kind is MutationKind.ERROR_RECORDED:
            await session.execute(
                update(GeminiKey)
                .where(GeminiKey.id == m.credential_id)
                .values(
                    error_status=payload["status"],
                    error_at=_as_datetime(payload["timestamp"]),
                )
            )
        elif m.kind is MutationKind.ERROR_CLEARED:
            await session.execute(
                update(GeminiKey)
                .where(GeminiKey.id == m.credential_id)
                .values(error_status=None, error_at=None)
            )
        elif m.kind is MutationKind.CURSOR_ADVANCED:
            seq = payload.get("seq", 0)
            current = await session.get(RotationState, ROTATION_STATE_ID)
            if current is not None and current.seq > seq:
                return
            await session.merge(
                RotationState(id=ROTATION_STATE_ID, cursor=payload["cursor"], seq=seq)
            )
        elif m.kind is MutationKind.MODEL_CONFIG_SET:
            config = payload["config"]
            await session.merge(
                ModelConfigRow(
                    model_id=payload["model"],
                    category=config["category"],
                    individual_quota=config["individualQuota"],
                    daily_quota=config["dailyQuota"],
                )
            )
        elif m.kind is MutationKind.MODEL_CONFIG_DELETED:
            await session.execute(
                delete(ModelConfigRow).where(ModelConfigRow.model_id == payload["model"])
            )
        elif m.kind is MutationKind.CATEGORY_QUOTAS_SET:
            await session.merge(CategoryQuotaRow(category="Pro", daily_quota=payload["proQuota"]))
            await session.merge(
                CategoryQuotaRow(category="Flash", daily_quota=payload["flashQuota"])
            )

    async def _store_usage(
        self, session: AsyncSession, credential_id: str, payload: dict[str, Any]
    ) -> None:
        # Concurrent increments may be persisted out of order; counts only grow.
        row = await session.scalar(
            select(KeyUsage).where(
                KeyUsage.key_id == credential_id,
                KeyUsage.bucket == payload["bucket"],
                KeyUsage.day == payload["day"],
            )
        )
        if row is None:
            session.add(
                KeyUsage(
                    key_id=credential_id,
                    bucket=payload["bucket"],
                    day=payload["day"],
                    count=payload["count"],
                )
            )
        else:
            row.count = max(row.count, payload["count"])

        agg = await session.scalar(
            select(CategoryUsage).where(
                CategoryUsage.bucket == payload["bucket"],
                CategoryUsage.day == payload["day"],
            )
        )
        if agg is None:
            session.add(
                CategoryUsage(
                    bucket=payload["bucket"],
                    day=payload["day"],
                    count=payload["aggregate"],
                )
            )
        else:
            agg.count = max(agg.count, payload["aggregate"])


async def load_engine_state(
    session_maker: async_sessionmaker[AsyncSession],
) -> dict[str, Any]:
    """Read the stored engine state in the snapshot layout ``KeyPoolEngine.restore`` takes."""
    state: dict[str, Any] = {
        "credentials": {},
        "usage": {},
        "aggregate": {},
        "errors": {},
        "cursor": -1,
        "cursor_seq": 0,
        "models": {},
        "category_quotas": {"proQuota": None, "flashQuota": None},
    }

    async with session_maker() as session:
        keys = await session.scalars(select(GeminiKey).order_by(GeminiKey.created_at.asc()))
        for key in keys:
            state["credentials"][key.id] = {
                "secret": key.api_key,
                "label": key.name,
                "enabled": key.enabled,
                "created_at": _as_utc(key.created_at),
                "daily_quota": key.daily_quota,
            }
            if key.error_status is not None:
                state["errors"][key.id] = {
                    "status": key.error_status,
                    "timestamp": _as_utc(key.error_at or datetime.now(timezone.utc)),
                }

        for row in await session.scalars(select(KeyUsage)):
            days = state["usage"].setdefault(row.key_id, {})
            days.setdefault(row.day, {})[row.bucket] = row.count

        for row in await session.scalars(select(CategoryUsage)):
            state["aggregate"].setdefault(row.day, {})[row.bucket] = row.count

        rotation = await session.get(RotationState, ROTATION_STATE_ID)
        if rotation is not None:
            state["cursor"] = rotation.cursor
            state["cursor_seq"] = rotation.seq

        for row in await session.scalars(select(ModelConfigRow)):
            state["models"][row.model_id] = {
                "category": row.category,
                "individualQuota": row.individual_quota,
                "dailyQuota": row.daily_quota,
            }

        for row in await session.scalars(select(CategoryQuotaRow)):
            if row.category == "Pro":
                state["category_quotas"]["proQuota"] = row.daily_quota
            elif row.category == "Flash":
                state["category_quotas"]["flashQuota"] = row.daily_quota

    logger.info(
        "Loaded %d keys and %d model configs from the database",
        len(state["credentials"]),
        len(state["models"]),
    )
    return state
