import asyncio

import pytest

import verify_cron
from blockchain_integrations import ChainError
from database_adapter import StorageError
from verify_cron import (
    LEASE_NAME, ReconciliationInProgress, UnauthorizedError, compute_revocations,
)


def seed(store, codes):
    for user_id, code in codes.items():
        store.upsert_member(user_id, f"user{user_id}", code)


def test_revokes_exactly_invalid_codes(reconciler, chain, store, remover):
    seed(store, {1: "A", 2: "B", 3: "C"})
    chain.valid_codes = {"A", "C"}

    report = asyncio.run(reconciler.run(authorized=True))

    assert report.checked_count == 3
    assert report.revoked_user_ids == [2]
    assert report.removal_failures == []
    assert remover.removed == [2]
    assert [m.user_id for m in store.list_members()] == [1, 3]


def test_single_batched_query_with_all_codes(reconciler, chain, store):
    seed(store, {1: "A", 2: "B", 3: "C", 4: "A"})
    chain.valid_codes = {"A", "B", "C"}

    asyncio.run(reconciler.run(authorized=True))

    assert chain.calls == [("valid_codes", frozenset({"A", "B", "C"}))]


def test_chain_failure_aborts_without_side_effects(reconciler, chain, store, remover):
    seed(store, {1: "A", 2: "B"})
    chain.valid_codes_error = ChainError("connection reset")

    with pytest.raises(ChainError):
        asyncio.run(reconciler.run(authorized=True))

    assert remover.removed == []
    assert len(store.list_members()) == 2
    # lease is released so the next run can proceed
    assert store.acquire_lease(LEASE_NAME, "someone-else", 60)


def test_removal_failure_is_isolated(reconciler, chain, store, remover):
    seed(store, {1: "A", 2: "B", 3: "C"})
    chain.valid_codes = set()
    remover.failing[2] = RuntimeError("Bad Request: user not found")

    report = asyncio.run(reconciler.run(authorized=True))

    assert report.checked_count == 3
    assert report.revoked_user_ids == [1, 3]
    assert report.removal_failures == [(2, "Bad Request: user not found")]
    # failed removal keeps the row for the next run
    assert [m.user_id for m in store.list_members()] == [2]


def test_requires_authorization(reconciler, chain, store, remover):
    seed(store, {1: "A"})
    with pytest.raises(UnauthorizedError):
        asyncio.run(reconciler.run(authorized=False))
    assert chain.calls == []
    assert remover.removed == []


def test_empty_store_skips_chain(reconciler, chain):
    report = asyncio.run(reconciler.run(authorized=True))
    assert report.checked_count == 0
    assert chain.calls == []


def test_reenrollment_is_judged_by_new_code(reconciler, chain, store, clock):
    store.upsert_member(1, "alice", "OLD")
    clock.now += 60
    store.upsert_member(1, "alice", "NEW")
    chain.valid_codes = {"NEW"}

    report = asyncio.run(reconciler.run(authorized=True))

    assert chain.calls == [("valid_codes", frozenset({"NEW"}))]
    assert report.checked_count == 1
    assert report.revoked_user_ids == []


def test_member_reenrolled_mid_run_is_not_removed(reconciler, chain, store, remover, clock):
    seed(store, {1: "OLD", 2: "B"})
    chain.valid_codes = {"NEW"}
    original = chain.query_valid_codes

    async def reenroll_during_query(*args):
        valid = await original(*args)
        clock.now += 60
        store.upsert_member(1, "user1", "NEW")
        return valid

    chain.query_valid_codes = reenroll_during_query

    report = asyncio.run(reconciler.run(authorized=True))

    assert remover.removed == [2]
    assert report.revoked_user_ids == [2]
    assert store.get_member(1).entitlement_code == "NEW"
    assert store.get_member(2) is None


def test_concurrent_run_is_rejected(reconciler, chain, store):
    seed(store, {1: "A"})
    chain.valid_codes = {"A"}
    gate = asyncio.Event()
    original = chain.query_valid_codes

    async def slow_query(*args):
        await gate.wait()
        return await original(*args)

    chain.query_valid_codes = slow_query

    async def scenario():
        first = asyncio.create_task(reconciler.run(authorized=True))
        await asyncio.sleep(0.05)
        with pytest.raises(ReconciliationInProgress):
            await reconciler.run(authorized=True)
        gate.set()
        return await first

    report = asyncio.run(scenario())
    assert report.checked_count == 1


def test_lease_held_by_other_process_rejects_run(reconciler, chain, store, remover):
    seed(store, {1: "A"})
    assert store.acquire_lease(LEASE_NAME, "cron-host", 600)

    with pytest.raises(ReconciliationInProgress):
        asyncio.run(reconciler.run(authorized=True))
    assert chain.calls == []


def test_compute_revocations_keeps_order(store):
    seed(store, {1: "A", 2: "B", 3: "C"})
    records = store.list_members()
    assert [r.user_id for r in compute_revocations(records, {"B"})] == [1, 3]


class FakeBot:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class ChainStub:
    def __init__(self, chain):
        self.chain = chain

    def __getattr__(self, name):
        return getattr(self.chain, name)

    def close(self):
        pass


def test_cron_main_store_open_failure_exits_nonzero(monkeypatch, settings):
    def broken_store(_settings):
        raise StorageError("unable to open database file")

    monkeypatch.setattr(verify_cron, "load_settings", lambda: settings)
    monkeypatch.setattr(verify_cron, "open_store", broken_store)

    assert asyncio.run(verify_cron.main()) == 1


def test_cron_main_storage_failure_during_run_exits_nonzero(monkeypatch, settings, store):
    async def failing_run(self, authorized):
        raise StorageError("disk I/O error")

    monkeypatch.setattr(verify_cron, "load_settings", lambda: settings)
    monkeypatch.setattr(verify_cron, "open_store", lambda _settings: store)
    monkeypatch.setattr(verify_cron, "Bot", lambda token: FakeBot())
    monkeypatch.setattr(verify_cron.Reconciler, "run", failing_run)

    assert asyncio.run(verify_cron.main()) == 1


def test_cron_main_success(monkeypatch, settings, store, chain):
    monkeypatch.setattr(verify_cron, "load_settings", lambda: settings)
    monkeypatch.setattr(verify_cron, "open_store", lambda _settings: store)
    monkeypatch.setattr(verify_cron, "Bot", lambda token: FakeBot())
    monkeypatch.setattr(verify_cron, "SecretChainClient", lambda *args, **kwargs: ChainStub(chain))

    assert asyncio.run(verify_cron.main()) == 0
