"""
Integration tests for the job store and durable queue on SQLite
"""

from datetime import datetime, timedelta
import inspect

import pytest
from sqlalchemy import update

from core.exceptions import InvalidTransitionError, NotFoundError
from ingestion.queue import JobMessage, SqlAlchemyJobQueue
from ingestion.store import JobStore, SqlAlchemyJobStore
from models import JobStatus, JobType, QueueMessage, QueueMessageStatus
from schemas.connectors import LoadOutcome, LoadRecordError
from tests.fakes import TENANT, OTHER_TENANT


async def create_job(store, job_type=JobType.EXTRACTION, tenant_id=TENANT):
    return await store.create_job(
        tenant_id=tenant_id,
        job_type=job_type,
        source_connector_id="src",
        destination_connector_id="dst" if job_type != JobType.EXTRACTION else None,
        entities=["tickets"],
        config={"batchSize": 10},
    )


class TestJobStore:

    def test_implements_job_store_contract(self):
        contract = [
            name for name, member in vars(JobStore).items()
            if inspect.iscoroutinefunction(member)
        ]
        assert "delete_job_batches" in contract
        assert "purge_expired_batches" in contract

        for name in contract:
            implementation = getattr(SqlAlchemyJobStore, name)
            assert inspect.iscoroutinefunction(implementation), name
            assert inspect.signature(implementation) == inspect.signature(getattr(JobStore, name)), name

    @pytest.mark.asyncio
    async def test_create_and_get_job(self, store):
        job = await create_job(store)

        fetched = await store.get_job(job.id, tenant_id=TENANT)
        assert fetched.status == JobStatus.QUEUED
        assert fetched.entities == ["tickets"]
        assert fetched.progress["percentage"] == 0
        assert await store.get_job(job.id, tenant_id=OTHER_TENANT) is None
        assert await store.get_job_status(job.id) == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_transition_sets_timestamps(self, store):
        job = await create_job(store)

        job = await store.transition(job.id, JobStatus.EXTRACTING)
        assert job.started_at is not None
        assert job.completed_at is None

        job = await store.transition(job.id, JobStatus.DATA_READY, progress={"phase": "data_ready"})
        assert job.completed_at is not None
        assert job.progress == {"phase": "data_ready"}

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_status(self, store):
        job = await create_job(store)

        with pytest.raises(InvalidTransitionError):
            await store.transition(job.id, JobStatus.COMPLETED)
        assert await store.get_job_status(job.id) == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_repeated_terminal_transition_is_noop(self, store):
        job = await create_job(store)
        await store.transition(job.id, JobStatus.CANCELLED, error_code="JOB_CANCELLED", error_message="x")

        again = await store.transition(job.id, JobStatus.CANCELLED)
        assert again.status == JobStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            await store.transition(job.id, JobStatus.EXTRACTING)

    @pytest.mark.asyncio
    async def test_transition_unknown_job(self, store):
        with pytest.raises(NotFoundError):
            await store.transition("missing", JobStatus.EXTRACTING)

    @pytest.mark.asyncio
    async def test_list_and_count(self, store):
        first = await create_job(store)
        await create_job(store)
        await create_job(store, tenant_id=OTHER_TENANT)
        await store.transition(first.id, JobStatus.FAILED, error_code="X", error_message="boom")

        jobs = await store.list_jobs(TENANT)
        assert len(jobs) == 2
        failed = await store.list_jobs(TENANT, status=JobStatus.FAILED)
        assert [j.id for j in failed] == [first.id]

        assert await store.count_jobs_by_status(TENANT) == {"QUEUED": 1, "FAILED": 1}
        assert sum((await store.count_jobs_by_status()).values()) == 3

    @pytest.mark.asyncio
    async def test_batches_and_load_results(self, store):
        job = await create_job(store, JobType.MIGRATION)
        batch = await store.create_batch(job, "tickets", 1, "freshservice", [{"id": 1}, {"id": 2}])
        assert batch.record_count == 2
        assert batch.expires_at - batch.extraction_timestamp == timedelta(days=7)

        await store.set_transformed(batch.id, [{"external_id": "1"}, {"external_id": "2"}])
        outcome = LoadOutcome(
            success_count=1, failure_count=1,
            errors=[LoadRecordError(record_index=1, external_id="2", error="bad", field="subject")]
        )
        await store.create_load_result(job.id, batch.id, "freshservice", outcome)

        batches = await store.list_batches(job.id)
        assert batches[0].transformed_records[1]["external_id"] == "2"
        results = await store.list_load_results(job.id)
        assert results[0].errors[0]["field"] == "subject"

        assert await store.delete_load_results(job.id) == 1
        assert await store.list_load_results(job.id) == []

        await store.create_load_result(job.id, batch.id, "freshservice", outcome)
        assert await store.delete_job_batches(job.id) == 1
        assert await store.list_batches(job.id) == []
        assert await store.list_load_results(job.id) == []

    @pytest.mark.asyncio
    async def test_purge_expired_batches(self, store):
        job = await create_job(store)
        await store.create_batch(job, "tickets", 1, "freshservice", [{"id": 1}])

        assert await store.purge_expired_batches() == 0
        assert await store.purge_expired_batches(now=datetime.utcnow() + timedelta(days=8)) == 1
        assert await store.list_batches(job.id) == []

    @pytest.mark.asyncio
    async def test_timeline(self, store):
        job = await create_job(store)
        await store.add_timeline_event(job.id, TENANT, "status_change", "Job queued", {"k": 1})
        await store.add_timeline_event(job.id, TENANT, "error", "Something failed")

        events = await store.list_timeline(job.id)
        assert [e.event_type for e in events] == ["status_change", "error"]
        assert events[0].event_metadata == {"k": 1}

    @pytest.mark.asyncio
    async def test_connectors_scoped_by_tenant(self, store):
        connector = await store.create_connector(TENANT, "freshservice", "fs", {"domain": "d", "api_key": "k"})

        assert connector.connector_type == "FRESHSERVICE"
        assert (await store.get_connector(TENANT, connector.id)).name == "fs"
        assert await store.get_connector(OTHER_TENANT, connector.id) is None
        assert len(await store.list_connectors(TENANT)) == 1


class TestJobQueue:

    @pytest.mark.asyncio
    async def test_claim_complete(self, queue):
        await queue.enqueue("job-1", TENANT, {"job_id": "job-1"})

        message = await queue.claim("worker-a")
        assert message.job_id == "job-1"
        assert message.attempts == 1
        assert message.payload == {"job_id": "job-1"}
        assert await queue.claim("worker-b") is None

        await queue.complete(message)
        assert (await queue.get("job-1")).status == QueueMessageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retriable_failure_backs_off(self, queue, session_maker):
        await queue.enqueue("job-1", TENANT, {}, max_attempts=3)
        message = await queue.claim("worker-a")

        assert await queue.fail(message, "boom", retriable=True)
        row = await queue.get("job-1")
        assert row.status == QueueMessageStatus.WAITING
        assert row.available_at > datetime.utcnow() + timedelta(seconds=1)
        assert await queue.claim("worker-a") is None

        async with session_maker() as session:
            await session.execute(
                update(QueueMessage).values(available_at=datetime.utcnow() - timedelta(seconds=1))
            )
            await session.commit()
        retried = await queue.claim("worker-a")
        assert retried.attempts == 2

    @pytest.mark.asyncio
    async def test_non_retriable_and_exhausted_failures(self, queue, session_maker):
        await queue.enqueue("job-1", TENANT, {}, max_attempts=1)
        message = await queue.claim("worker-a")
        assert message.is_final_attempt
        assert not await queue.fail(message, "boom", retriable=True)
        assert (await queue.get("job-1")).status == QueueMessageStatus.FAILED

        await queue.enqueue("job-2", TENANT, {}, max_attempts=3)
        message = await queue.claim("worker-a")
        assert not await queue.fail(message, "auth", retriable=False)
        assert (await queue.get("job-2")).last_error == "auth"

    @pytest.mark.asyncio
    async def test_expired_lease_is_redelivered(self, queue, session_maker):
        await queue.enqueue("job-1", TENANT, {}, max_attempts=1)
        first = await queue.claim("worker-a")

        async with session_maker() as session:
            await session.execute(
                update(QueueMessage).values(lease_expires_at=datetime.utcnow() - timedelta(seconds=1))
            )
            await session.commit()

        second = await queue.claim("worker-b")
        assert second.attempts == 2
        assert second.lease_owner == "worker-b"
        assert second.is_stalled
        assert not first.is_stalled

    @pytest.mark.asyncio
    async def test_renew_picks_up_cancellation(self, queue):
        await queue.enqueue("job-1", TENANT, {})
        message = await queue.claim("worker-a")
        assert await queue.renew(message) is False

        assert await queue.signal_cancel("job-1")
        assert await queue.renew(message) is True
        assert message.cancelled

        # Cancelled messages are never retried
        assert not await queue.fail(message, "Job cancelled by user", retriable=True)

    @pytest.mark.asyncio
    async def test_signal_cancel_drops_waiting_message(self, queue):
        await queue.enqueue("job-1", TENANT, {})
        assert await queue.signal_cancel("job-1")
        assert await queue.claim("worker-a") is None
        assert not await queue.signal_cancel("missing")

    def test_job_message_attempt_budget(self):
        assert JobMessage("j", TENANT, attempts=3, max_attempts=3).is_final_attempt
        assert not JobMessage("j", TENANT, attempts=3, max_attempts=3).is_stalled
        assert JobMessage("j", TENANT, attempts=4, max_attempts=3).is_stalled

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, session_maker):
        queue = SqlAlchemyJobQueue(session_maker, backoff_seconds=10, lease_seconds=300)
        await queue.enqueue("job-1", TENANT, {}, max_attempts=5)

        delays = []
        for _ in range(3):
            async with session_maker() as session:
                await session.execute(update(QueueMessage).values(available_at=datetime.utcnow()))
                await session.commit()
            message = await queue.claim("worker-a")
            before = datetime.utcnow()
            await queue.fail(message, "boom")
            delays.append(((await queue.get("job-1")).available_at - before).total_seconds())

        assert [round(d) for d in delays] == [10, 20, 40]
