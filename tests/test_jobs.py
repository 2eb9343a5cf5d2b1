"""Tests for the job record store.

Every store test runs against both MemoryJobStore and SQLAlchemyJobStore.
"""

import asyncio
from collections.abc import AsyncGenerator
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from kungfu import Error, Ok

from genflow import jobs as J
from genflow.db import create_database
from tests.conftest import FakeClock


@pytest_asyncio.fixture(params=["memory", "sqlalchemy"])
async def store(request, clock: FakeClock, tmp_path: Path) -> AsyncGenerator[J.JobStore, None]:
    if request.param == "memory":
        yield J.MemoryJobStore(clock=clock)
        return

    factory, engine = await create_database(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    yield J.SQLAlchemyJobStore(factory, clock=clock)
    await engine.dispose()


async def create(store: J.JobStore, operation_id: str, project: str = "acme", **kwargs) -> J.JobRecord:
    result = await store.create(
        operation_id,
        J.JobKind.CREATE,
        "owner@example.com",
        project,
        J.CreatePayload(template_id="bistro", langs={"title": "Acme"}),
        **kwargs,
    )
    return result.unwrap()


class TestPayloadCodec:
    """Tests for the versioned payload union."""

    def test_create_payload_round_trips(self):
        payload = J.CreatePayload(template_id="bistro", langs={"t": "x"}, images={"hero": "a.jpg"})

        encoded = J.encode_payload(payload)

        assert encoded["kind"] == "create"
        assert encoded["version"] == J.PAYLOAD_VERSION
        assert J.decode_payload(encoded).unwrap() == payload

    def test_unknown_kind_is_rejected(self):
        result = J.decode_payload({"kind": "delete", "version": 1})

        match result:
            case Error(err):
                assert "unknown payload kind" in err.message
            case Ok(_):
                pytest.fail("expected PayloadError")

    def test_unknown_version_is_rejected(self):
        result = J.decode_payload({"kind": "update", "version": 2, "langs": {}, "images": {}})

        assert isinstance(result, Error)

    def test_create_requires_template(self):
        assert isinstance(J.decode_payload({"kind": "create", "version": 1}), Error)

    def test_non_string_map_values_are_rejected(self):
        result = J.decode_payload({"kind": "update", "version": 1, "langs": {"t": 3}})

        assert isinstance(result, Error)


class TestTransitionsTable:
    def test_illegal_edge_raises(self):
        with pytest.raises(ValueError):
            J.check_edge(J.JobStatus.PENDING, J.JobStatus.COMPLETED)

    def test_terminal_statuses(self):
        assert J.JobStatus.DEPLOYED.is_terminal
        assert not J.JobStatus.PROCESSING.is_terminal
        assert J.JobStatus.PROCESSING.is_active


class TestJobStore:
    """Contract tests shared by both stores."""

    @pytest.mark.asyncio
    async def test_create_starts_pending(self, store: J.JobStore, clock: FakeClock):
        job = await create(store, "op-1")

        assert job.status == J.JobStatus.PENDING
        assert job.attempts == 0
        assert job.expires_at == clock.now + timedelta(days=7)
        assert (await store.get("op-1")).unwrap() == job

    @pytest.mark.asyncio
    async def test_payload_kind_must_match(self, store: J.JobStore):
        with pytest.raises(ValueError):
            await store.create("op-1", J.JobKind.UPDATE, "o@example.com", "acme", J.CreatePayload(template_id="t"))

    @pytest.mark.asyncio
    async def test_second_active_job_for_project_conflicts(self, store: J.JobStore):
        await create(store, "op-1")

        result = await store.create(
            "op-2", J.JobKind.UPDATE, "owner@example.com", "acme", J.UpdatePayload()
        )

        match result:
            case Error(J.ConflictError() as err):
                assert err.project_name == "acme"
                assert err.active_operation_id == "op-1"
            case _:
                pytest.fail("expected ConflictError")

    @pytest.mark.asyncio
    async def test_concurrent_creates_admit_one_active_job(self, store: J.JobStore):
        results = await asyncio.gather(
            *(
                store.create(
                    f"op-{i}", J.JobKind.CREATE, "owner@example.com", "acme", J.CreatePayload(template_id="t")
                )
                for i in range(8)
            )
        )

        winners = [r.unwrap() for r in results if isinstance(r, Ok)]
        losers = [r.error for r in results if isinstance(r, Error)]
        assert len(winners) == 1
        assert len(losers) == 7
        assert all(isinstance(e, J.ConflictError) for e in losers)
        assert {e.active_operation_id for e in losers} == {winners[0].operation_id}

    @pytest.mark.asyncio
    async def test_project_is_free_after_terminal_state(self, store: J.JobStore, clock: FakeClock):
        await create(store, "op-1")
        await store.transition("op-1", J.JobStatus.PENDING, J.JobStatus.FAILED, J.JobPatch(failure_reason="x"))

        clock.advance(seconds=1)
        second = await create(store, "op-2")
        latest = (await store.find_latest_by_project_name("acme")).unwrap()

        assert second.status == J.JobStatus.PENDING
        assert latest.operation_id == "op-2"

    @pytest.mark.asyncio
    async def test_transition_is_compare_and_set(self, store: J.JobStore):
        await create(store, "op-1")

        won = await store.transition("op-1", J.JobStatus.PENDING, J.JobStatus.PROCESSING)
        lost = await store.transition("op-1", J.JobStatus.PENDING, J.JobStatus.PROCESSING)

        assert won.unwrap().status == J.JobStatus.PROCESSING
        match lost:
            case Error(J.StaleStateError() as err):
                assert err.actual == J.JobStatus.PROCESSING
            case _:
                pytest.fail("expected StaleStateError")

    @pytest.mark.asyncio
    async def test_transition_unknown_job(self, store: J.JobStore):
        result = await store.transition("missing", J.JobStatus.PENDING, J.JobStatus.PROCESSING)

        assert isinstance(result, Error)
        assert isinstance(result.error, J.NotFound)

    @pytest.mark.asyncio
    async def test_illegal_transition_raises_before_store(self, store: J.JobStore):
        await create(store, "op-1")

        with pytest.raises(ValueError):
            await store.transition("op-1", J.JobStatus.PENDING, J.JobStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_terminal_fields_only_on_terminal_transition(self, store: J.JobStore, clock: FakeClock):
        await create(store, "op-1")

        with pytest.raises(ValueError):
            await store.transition(
                "op-1", J.JobStatus.PENDING, J.JobStatus.PROCESSING, J.JobPatch(completed_at=clock.now)
            )

    @pytest.mark.asyncio
    async def test_lease_blocks_reacquisition_until_expiry(self, store: J.JobStore, clock: FakeClock):
        await create(store, "op-1")
        lease = J.JobPatch(lease_expires_at=clock.now + timedelta(seconds=10), bump_attempts=True)
        await store.transition("op-1", J.JobStatus.PENDING, J.JobStatus.PROCESSING, lease)

        early = await store.transition(
            "op-1", J.JobStatus.PROCESSING, J.JobStatus.PROCESSING, lease,
            lease_expired_before=clock.now,
        )
        clock.advance(seconds=11)
        late = await store.transition(
            "op-1",
            J.JobStatus.PROCESSING,
            J.JobStatus.PROCESSING,
            J.JobPatch(lease_expires_at=clock.now + timedelta(seconds=10), bump_attempts=True),
            lease_expired_before=clock.now,
        )

        assert isinstance(early, Error)
        assert isinstance(early.error, J.StaleStateError)
        assert "leased" in early.error.message
        job = late.unwrap()
        assert job.attempts == 2
        assert job.lease_expires_at == clock.now + timedelta(seconds=10)

    @pytest.mark.asyncio
    async def test_completion_clears_lease(self, store: J.JobStore, clock: FakeClock):
        await create(store, "op-1")
        await store.transition(
            "op-1", J.JobStatus.PENDING, J.JobStatus.PROCESSING,
            J.JobPatch(lease_expires_at=clock.now + timedelta(seconds=10)),
        )

        done = await store.transition(
            "op-1", J.JobStatus.PROCESSING, J.JobStatus.COMPLETED,
            J.JobPatch(completed_at=clock.now, clear_lease=True),
        )
        deployed = await store.transition(
            "op-1", J.JobStatus.COMPLETED, J.JobStatus.DEPLOYED, J.JobPatch(deployed_at=clock.now)
        )

        assert done.unwrap().lease_expires_at is None
        job = deployed.unwrap()
        assert job.completed_at == clock.now
        assert job.deployed_at == clock.now

    @pytest.mark.asyncio
    async def test_find_by_payment_session(self, store: J.JobStore):
        await create(store, "op-1", payment_session_id="cs_123")

        found = await store.find_by_payment_session("cs_123")
        missing = await store.find_by_payment_session("cs_999")

        assert found.unwrap().operation_id == "op-1"
        assert isinstance(missing, Error)

    @pytest.mark.asyncio
    async def test_list_by_status_oldest_first(self, store: J.JobStore, clock: FakeClock):
        await create(store, "op-1", project="acme")
        clock.advance(seconds=1)
        await create(store, "op-2", project="globex")

        listed = (await store.list_by_status(J.JobStatus.PENDING)).unwrap()

        assert [j.operation_id for j in listed] == ["op-1", "op-2"]

    @pytest.mark.asyncio
    async def test_purge_keeps_live_leases(self, store: J.JobStore, clock: FakeClock):
        await create(store, "abandoned", project="acme")
        await create(store, "running", project="globex")
        await store.transition(
            "running", J.JobStatus.PENDING, J.JobStatus.PROCESSING,
            J.JobPatch(lease_expires_at=clock.now + timedelta(days=9)),
        )

        purged = (await store.purge_expired(clock.advance(days=8))).unwrap()

        assert purged == 1
        assert isinstance(await store.get("abandoned"), Error)
        assert (await store.get("running")).unwrap().status == J.JobStatus.PROCESSING
