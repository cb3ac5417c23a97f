import json
import logging

import pytest

from keypool_library import JsonFilePersistence, KeyPoolEngine, Mutation, MutationKind, Outcome
from keypool_library.persistence import PersistenceBackend, safe_persist


class ExplodingPersistence(PersistenceBackend):
    async def persist(self, mutation: Mutation) -> None:
        raise OSError("disk full")


@pytest.mark.asyncio
async def test_json_snapshot_restores_full_state(tmp_path, clock) -> None:
    path = tmp_path / "state" / "keypool.json"
    engine = await KeyPoolEngine.from_json_file(path, clock=clock)
    await engine.registry.set_model("gemini-flash", "Flash", individual_quota=5)
    await engine.registry.set_category_quotas(pro_quota=10, flash_quota=20)
    a = await engine.pool.add("secret-a", "a", daily_quota=3)
    b = await engine.pool.add("secret-b", "b")
    c = await engine.pool.add("secret-c", "c")

    picked = await engine.pool.select_next(model="gemini-flash")
    await engine.pool.report_outcome(picked.id, "gemini-flash", Outcome.success())
    await engine.pool.report_outcome(b.id, None, Outcome.auth_failure(401))
    await engine.pool.set_enabled(c.id, False)

    restored = await KeyPoolEngine.from_json_file(path, clock=clock)

    assert [cred.id for cred in restored.pool.list()] == [a.id, b.id, c.id]
    assert restored.pool.get(a.id).daily_quota == 3
    assert restored.pool.get(c.id).enabled is False
    assert restored.quota.usage_count(a.id, "Flash") == 1
    assert restored.quota.aggregate_count("Flash") == 1
    assert restored.errors.get_error(b.id).status == 401
    assert restored.registry.get("gemini-flash").individual_quota == 5
    assert restored.registry.category_quotas.to_dict() == {"proQuota": 10, "flashQuota": 20}
    assert restored.pool.cursor.position == 0
    # a is errored-free and enabled, b is excluded, c disabled: rotation wraps to a
    assert (await restored.pool.select_next()).id == a.id


@pytest.mark.asyncio
async def test_removed_credentials_leave_the_snapshot(tmp_path, clock) -> None:
    path = tmp_path / "keypool.json"
    engine = await KeyPoolEngine.from_json_file(path, clock=clock)
    await engine.registry.set_model("gemini-pro", "Pro")
    cred = await engine.pool.add("secret-a", "a")
    await engine.quota.record_usage(cred.id, "gemini-pro")

    await engine.pool.remove(cred.id)

    data = json.loads(path.read_text())
    assert data["credentials"] == {}
    assert cred.id not in data["usage"]
    # Aggregate history outlives the key
    assert data["aggregate"] == {clock.today(): {"Pro": 1}}


@pytest.mark.asyncio
async def test_corrupt_snapshot_starts_fresh(tmp_path, clock) -> None:
    path = tmp_path / "keypool.json"
    path.write_text("{not json")

    engine = await KeyPoolEngine.from_json_file(path, clock=clock)

    assert len(engine.pool) == 0
    assert engine.pool.cursor.position == -1


@pytest.mark.asyncio
async def test_read_only_selection_never_writes_the_cursor(tmp_path, clock) -> None:
    path = tmp_path / "keypool.json"
    backend = JsonFilePersistence(path)
    engine = KeyPoolEngine(persistence=backend, clock=clock)
    engine.restore(await backend.load())
    await engine.pool.add("secret-a", "a")
    before = json.loads(path.read_text())["cursor"]

    await engine.pool.select_next(consuming=False)

    assert json.loads(path.read_text())["cursor"] == before == -1


@pytest.mark.asyncio
async def test_safe_persist_reports_failure(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="keypool_library")

    ok = await safe_persist(
        ExplodingPersistence(), Mutation(MutationKind.CURSOR_ADVANCED, payload={"cursor": 1})
    )

    assert ok is False
    assert "cursor_advanced" in caplog.text
    assert "disk full" in caplog.text


@pytest.mark.asyncio
async def test_snapshot_keeps_the_newest_cursor_write(tmp_path) -> None:
    path = tmp_path / "keypool.json"
    backend = JsonFilePersistence(path)

    await backend.persist(Mutation(MutationKind.CURSOR_ADVANCED, payload={"cursor": 3, "seq": 4}))
    await backend.persist(Mutation(MutationKind.CURSOR_ADVANCED, payload={"cursor": 2, "seq": 3}))

    data = json.loads(path.read_text())
    assert (data["cursor"], data["cursor_seq"]) == (3, 4)
