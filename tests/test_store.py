import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from keypool_app.db_models import GeminiKey, KeyUsage
from keypool_app.store import SqlPersistence, load_engine_state
from keypool_library import KeyPoolEngine, Mutation, MutationKind, Outcome


@pytest.mark.asyncio
async def test_engine_state_survives_a_restart(session_maker, clock) -> None:
    engine = KeyPoolEngine(persistence=SqlPersistence(session_maker), clock=clock)
    await engine.registry.set_model("gemini-flash", "Flash", individual_quota=4)
    await engine.registry.set_model("tuned-x", "Custom", daily_quota=9)
    await engine.registry.set_category_quotas(flash_quota=50)
    a = await engine.pool.add("secret-a", "a")
    b = await engine.pool.add("secret-b", "b", daily_quota=2)

    for _ in range(2):
        cred = await engine.pool.select_next(model="gemini-flash")
        await engine.pool.report_outcome(cred.id, "gemini-flash", Outcome.success())
    await engine.pool.report_outcome(b.id, None, Outcome.auth_failure(403))

    restored = KeyPoolEngine(clock=clock)
    restored.restore(await load_engine_state(session_maker))

    assert {cred.id for cred in restored.pool.list()} == {a.id, b.id}
    assert restored.pool.get(b.id).daily_quota == 2
    assert restored.quota.usage_count(a.id, "Flash") == 1
    assert restored.quota.usage_count(b.id, "Flash") == 1
    assert restored.quota.aggregate_count("Flash") == 2
    assert restored.errors.get_error(b.id).status == 403
    assert restored.registry.get("tuned-x").daily_quota == 9
    assert restored.registry.category_quotas.flash == 50
    assert restored.pool.cursor.position == 1


@pytest.mark.asyncio
async def test_usage_counts_never_move_backwards(session_maker) -> None:
    store = SqlPersistence(session_maker)
    await store.persist(
        Mutation(
            MutationKind.CREDENTIAL_ADDED,
            credential_id="k1",
            payload={"secret": "s", "label": "", "enabled": True, "created_at": "2026-03-14T12:00:00+00:00"},
        )
    )
    for count in (2, 1):
        await store.persist(
            Mutation(
                MutationKind.USAGE_INCREMENTED,
                credential_id="k1",
                payload={"model": "m", "bucket": "Pro", "day": "2026-03-14", "count": count, "aggregate": count},
            )
        )

    state = await load_engine_state(session_maker)

    assert state["usage"] == {"k1": {"2026-03-14": {"Pro": 2}}}
    assert state["aggregate"] == {"2026-03-14": {"Pro": 2}}


@pytest.mark.asyncio
async def test_removing_a_key_deletes_its_rows(session_maker, clock) -> None:
    engine = KeyPoolEngine(persistence=SqlPersistence(session_maker), clock=clock)
    await engine.registry.set_model("gemini-pro", "Pro")
    cred = await engine.pool.add("secret-a", "a")
    await engine.pool.report_outcome(cred.id, "gemini-pro", Outcome.success())

    await engine.pool.remove(cred.id)

    async with session_maker() as session:
        assert await session.scalar(select(func.count()).select_from(GeminiKey)) == 0
        assert await session.scalar(select(func.count()).select_from(KeyUsage)) == 0


@pytest.mark.asyncio
async def test_model_delete_and_error_clear_are_stored(session_maker, clock) -> None:
    engine = KeyPoolEngine(persistence=SqlPersistence(session_maker), clock=clock)
    await engine.registry.set_model("gemini-pro", "Pro", individual_quota=1)
    cred = await engine.pool.add("secret-a", "a")
    await engine.pool.report_outcome(cred.id, None, Outcome.auth_failure(401))

    await engine.registry.delete_model("gemini-pro")
    await engine.pool.clear_error(cred.id)

    state = await load_engine_state(session_maker)
    assert state["models"] == {}
    assert state["errors"] == {}


@pytest.mark.asyncio
async def test_concurrent_first_successes_are_all_stored(session_maker, clock) -> None:
    engine = KeyPoolEngine(persistence=SqlPersistence(session_maker), clock=clock)
    await engine.registry.set_model("gemini-flash", "Flash")
    a = await engine.pool.add("secret-a", "a")
    b = await engine.pool.add("secret-b", "b")

    await asyncio.gather(
        engine.pool.report_outcome(a.id, "gemini-flash", Outcome.success()),
        engine.pool.report_outcome(b.id, "gemini-flash", Outcome.success()),
        engine.pool.report_outcome(a.id, "gemini-flash", Outcome.success()),
    )

    state = await load_engine_state(session_maker)
    assert state["aggregate"] == {clock.today(): {"Flash": 3}}
    assert state["usage"][a.id] == {clock.today(): {"Flash": 2}}
    assert state["usage"][b.id] == {clock.today(): {"Flash": 1}}


@pytest.mark.asyncio
async def test_late_cursor_writes_do_not_roll_the_cursor_back(session_maker, clock) -> None:
    store = SqlPersistence(session_maker)
    await store.persist(Mutation(MutationKind.CURSOR_ADVANCED, payload={"cursor": 2, "seq": 7}))
    await store.persist(Mutation(MutationKind.CURSOR_ADVANCED, payload={"cursor": 1, "seq": 6}))

    state = await load_engine_state(session_maker)
    assert (state["cursor"], state["cursor_seq"]) == (2, 7)

    engine = KeyPoolEngine(persistence=store, clock=clock)
    engine.restore(state)
    await engine.pool.add("secret-a", "a")
    await engine.pool.select_next()

    state = await load_engine_state(session_maker)
    assert (state["cursor"], state["cursor_seq"]) == (0, 8)


@pytest.mark.asyncio
async def test_restored_timestamps_are_utc_aware(session_maker, clock) -> None:
    engine = KeyPoolEngine(persistence=SqlPersistence(session_maker), clock=clock)
    cred = await engine.pool.add("secret-a", "a")
    await engine.pool.report_outcome(cred.id, None, Outcome.auth_failure(401))

    restored = KeyPoolEngine(clock=clock)
    restored.restore(await load_engine_state(session_maker))

    assert restored.pool.get(cred.id).created_at.tzinfo is not None
    assert restored.pool.get(cred.id).created_at == cred.created_at
    assert restored.errors.get_error(cred.id).timestamp.utcoffset() == timedelta(0)
