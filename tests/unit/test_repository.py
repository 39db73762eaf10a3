"""
Unit tests for the job repository.

Payload marshalling is tested in isolation; the remaining tests run against
PostgreSQL and are skipped when TEST_DATABASE_URL is unreachable.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from jobqueue.constants import MAX_ERROR_LENGTH, JobStatus
from jobqueue.db.repository import (
    JobRepository,
    decode_payload,
    encode_payload,
    sanitize_error,
)
from jobqueue.exceptions import EmptyPayloadError, PayloadDecodeError, PayloadEncodeError


class TestPayloadMarshalling:
    """Tests for payload encoding and decoding."""

    def test_encode_payload(self):
        """Test a payload is serialised as a JSON object."""
        assert encode_payload({"id": 42}) == '{"id": 42}'

    def test_encode_empty_payload(self):
        """Test an empty payload is rejected before hitting the store."""
        with pytest.raises(EmptyPayloadError):
            encode_payload({})

    def test_encode_unserialisable_payload(self):
        """Test values JSON cannot represent are rejected."""
        with pytest.raises(PayloadEncodeError):
            encode_payload({"at": datetime.now(UTC)})

    def test_encode_rejects_nan(self):
        """Test NaN is not accepted as JSON."""
        with pytest.raises(PayloadEncodeError):
            encode_payload({"score": float("nan")})

    def test_decode_payload(self):
        """Test a stored document decodes to a dict."""
        assert decode_payload(1, '{"id": 42, "tags": ["a"]}') == {"id": 42, "tags": ["a"]}

    @pytest.mark.parametrize("raw", ["{not json", "", "[1, 2]", '"text"', "{}"])
    def test_decode_corrupt_payload(self, raw: str):
        """Test invalid, non-object and empty documents are rejected."""
        with pytest.raises(PayloadDecodeError) as exc_info:
            decode_payload(9, raw)

        assert exc_info.value.job_id == 9

    def test_sanitize_error_truncates(self):
        """Test error text is capped."""
        assert sanitize_error("short") == "short"
        assert len(sanitize_error("x" * 5000)) == MAX_ERROR_LENGTH

    def test_sanitize_error_replaces_unstorable_characters(self):
        """Test NUL bytes and lone surrogates are replaced."""
        cleaned = sanitize_error("page\x00 3: \ud800bad")

        assert "\x00" not in cleaned
        assert "\ud800" not in cleaned
        assert cleaned.startswith("page\ufffd 3: ")
        assert cleaned.endswith("bad")
        cleaned.encode("utf-8")

    def test_decode_deeply_nested_payload(self):
        """Test a document too deep to decode is reported as corrupt."""
        depth = 100_000
        raw = '{"a": ' * depth + "1" + "}" * depth

        with pytest.raises(PayloadDecodeError) as exc_info:
            decode_payload(3, raw)

        assert exc_info.value.job_id == 3


class TestJobRepository:
    """Tests for JobRepository against PostgreSQL."""

    async def test_enqueue(self, repo: JobRepository):
        """Test a new job is pending with no attempts."""
        job = await repo.enqueue("generate", {"id": 42})

        assert job.id is not None
        assert job.type == "generate"
        assert job.payload == {"id": 42}
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.error is None
        assert job.created_at is not None
        assert job.run_after <= datetime.now(UTC) + timedelta(seconds=1)

    async def test_enqueue_ids_increase(self, repo: JobRepository):
        """Test identifiers are monotonically increasing."""
        first = await repo.enqueue("generate", {"id": 1})
        second = await repo.enqueue("generate", {"id": 2})

        assert second.id > first.id

    async def test_enqueue_empty_payload(self, repo: JobRepository):
        """Test an empty payload is rejected."""
        with pytest.raises(EmptyPayloadError):
            await repo.enqueue("generate", {})

        assert (await repo.count_by_status())["pending"] == 0

    async def test_get_job(self, repo: JobRepository):
        """Test getting a job by ID."""
        job = await repo.enqueue("convert", {"document_id": 3})

        retrieved = await repo.get_job(job.id)

        assert retrieved is not None
        assert retrieved.id == job.id
        assert retrieved.payload == {"document_id": 3}

    async def test_get_job_not_found(self, repo: JobRepository):
        """Test getting a non-existent job."""
        assert await repo.get_job(999_999) is None

    async def test_reserve_empty_table(self, repo: JobRepository):
        """Test reservation returns None when there are no jobs."""
        assert await repo.reserve_next_pending() is None

    async def test_reserve_skips_future_jobs(self, repo: JobRepository):
        """Test jobs whose run_after is in the future are not eligible."""
        await repo.enqueue(
            "generate",
            {"id": 1},
            run_after=datetime.now(UTC) + timedelta(hours=1),
        )

        assert await repo.reserve_next_pending() is None

    async def test_reserve_skips_non_pending(self, repo: JobRepository, insert_raw_job):
        """Test running, completed and failed rows are not eligible."""
        for status in (JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED):
            await insert_raw_job('{"id": 1}', status=status, attempts=1)

        assert await repo.reserve_next_pending() is None

    async def test_reserve_marks_running(self, repo: JobRepository):
        """Test reservation moves the job to running and counts the attempt."""
        job = await repo.enqueue("generate", {"id": 42})

        reserved = await repo.reserve_next_pending()

        assert reserved is not None
        assert reserved.id == job.id
        assert reserved.status == JobStatus.RUNNING
        assert reserved.attempts == 1
        assert reserved.payload == {"id": 42}

        stored = await repo.get_job(job.id)
        assert stored.status == JobStatus.RUNNING
        assert stored.attempts == 1

    async def test_reserve_order(self, repo: JobRepository):
        """Test the smallest (run_after, id) pair is reserved first."""
        now = datetime.now(UTC)
        newest = await repo.enqueue("generate", {"n": 1}, run_after=now - timedelta(minutes=1))
        oldest = await repo.enqueue("generate", {"n": 2}, run_after=now - timedelta(minutes=3))
        tie_a = await repo.enqueue("generate", {"n": 3}, run_after=now - timedelta(minutes=2))
        tie_b = await repo.enqueue("generate", {"n": 4}, run_after=now - timedelta(minutes=2))

        order = []
        while (job := await repo.reserve_next_pending()) is not None:
            order.append(job.id)

        assert order == [oldest.id, tie_a.id, tie_b.id, newest.id]

    async def test_reserve_clears_error_and_counts_attempts(
        self, repo: JobRepository, make_due
    ):
        """Test each reservation adds exactly one attempt and clears the error."""
        job = await repo.enqueue("generate", {"id": 42})

        first = await repo.reserve_next_pending()
        await repo.schedule_retry(first, 5, "rate limited")
        assert (await repo.get_job(job.id)).error == "rate limited"

        await make_due(job.id)
        second = await repo.reserve_next_pending()

        assert second.attempts == 2
        assert second.error is None
        assert (await repo.get_job(job.id)).error is None

    async def test_reserve_same_row_once(self, repo: JobRepository):
        """Test sequential reservers do not receive the same row."""
        await repo.enqueue("generate", {"id": 42})

        first = await repo.reserve_next_pending()
        second = await repo.reserve_next_pending()

        assert first is not None
        assert second is None

    async def test_concurrent_reservations_are_exclusive(self, session_factory):
        """Test concurrent reservers never receive the same row."""
        producer = JobRepository(session_factory)
        for i in range(5):
            await producer.enqueue("generate", {"id": i})

        reservers = [JobRepository(session_factory) for _ in range(10)]
        results = await asyncio.gather(
            *(reserver.reserve_next_pending() for reserver in reservers)
        )

        claimed = [job.id for job in results if job is not None]
        assert len(claimed) == len(set(claimed))

        while (job := await producer.reserve_next_pending()) is not None:
            claimed.append(job.id)

        assert len(claimed) == 5
        assert len(set(claimed)) == 5

    async def test_corrupt_payload_raises(self, repo: JobRepository, insert_raw_job):
        """Test malformed JSON is a hard error for the reservation caller."""
        job_id = await insert_raw_job("{not json")

        with pytest.raises(PayloadDecodeError) as exc_info:
            await repo.reserve_next_pending()

        assert exc_info.value.job_id == job_id
        counts = await repo.count_by_status()
        assert counts["running"] == 1
        assert counts["failed"] == 0

    async def test_corrupt_payload_does_not_block_queue(
        self, repo: JobRepository, insert_raw_job
    ):
        """Test the next reservation moves past a corrupt row."""
        await insert_raw_job("[]")
        good = await repo.enqueue("generate", {"id": 42})

        with pytest.raises(PayloadDecodeError):
            await repo.reserve_next_pending()

        reserved = await repo.reserve_next_pending()
        assert reserved.id == good.id

    async def test_mark_completed(self, repo: JobRepository):
        """Test completion sets the status and clears the error."""
        await repo.enqueue("generate", {"id": 42})
        job = await repo.reserve_next_pending()

        await repo.mark_completed(job)

        assert job.status == JobStatus.COMPLETED
        stored = await repo.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.error is None

    async def test_mark_completed_idempotent(self, repo: JobRepository):
        """Test completing twice leaves the job completed."""
        await repo.enqueue("generate", {"id": 42})
        job = await repo.reserve_next_pending()

        await repo.mark_completed(job)
        await repo.mark_completed(job)

        assert (await repo.get_job(job.id)).status == JobStatus.COMPLETED

    async def test_mark_failed_truncates_error(self, repo: JobRepository):
        """Test failure text is stored truncated."""
        await repo.enqueue("generate", {"id": 42})
        job = await repo.reserve_next_pending()

        await repo.mark_failed(job, "e" * 5000)

        stored = await repo.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert len(stored.error) == MAX_ERROR_LENGTH
        assert job.error == stored.error

    async def test_mark_failed_with_nul_and_surrogate(self, repo: JobRepository):
        """Test extracted text with NUL bytes or lone surrogates still fails the job."""
        await repo.enqueue("extract", {"upload_id": 5})
        job = await repo.reserve_next_pending()

        await repo.mark_failed(job, "unreadable page\x00 near \udcff")

        stored = await repo.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error.startswith("unreadable page\ufffd near ")
        assert "\x00" not in stored.error

    async def test_schedule_retry_with_nul_in_error(self, repo: JobRepository):
        """Test a retry message with a NUL byte is stored."""
        await repo.enqueue("extract", {"upload_id": 5})
        job = await repo.reserve_next_pending()

        await repo.schedule_retry(job, 5, "timeout\x00")

        stored = await repo.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.error == "timeout\ufffd"

    async def test_schedule_retry(self, repo: JobRepository):
        """Test a retried job is pending and not eligible until the delay passes."""
        await repo.enqueue("generate", {"id": 42})
        job = await repo.reserve_next_pending()
        before = datetime.now(UTC)

        await repo.schedule_retry(job, 10, "rate limited")

        stored = await repo.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.error == "rate limited"
        assert stored.attempts == 1
        assert stored.run_after >= before + timedelta(seconds=9)
        assert stored.run_after <= datetime.now(UTC) + timedelta(seconds=11)
        assert job.status == JobStatus.PENDING
        assert job.run_after == stored.run_after
        assert await repo.reserve_next_pending() is None

    async def test_schedule_retry_minimum_delay(self, repo: JobRepository):
        """Test a zero delay is raised to one second."""
        await repo.enqueue("generate", {"id": 42})
        job = await repo.reserve_next_pending()
        before = datetime.now(UTC)

        await repo.schedule_retry(job, 0, "flaky")

        stored = await repo.get_job(job.id)
        assert stored.run_after > before
        assert await repo.reserve_next_pending() is None

    async def test_terminal_job_not_mutated(self, repo: JobRepository):
        """Test outcome writes do not touch a completed job."""
        await repo.enqueue("generate", {"id": 42})
        job = await repo.reserve_next_pending()
        await repo.mark_completed(job)

        await repo.schedule_retry(job, 5, "late failure")
        await repo.mark_failed(job, "late failure")

        stored = await repo.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.error is None
        assert job.status == JobStatus.COMPLETED
        assert await repo.reserve_next_pending() is None

    async def test_count_by_status(self, repo: JobRepository):
        """Test counts include every status."""
        await repo.enqueue("generate", {"id": 1})
        await repo.enqueue("generate", {"id": 2})
        job = await repo.reserve_next_pending()
        await repo.mark_failed(job, "boom")

        counts = await repo.count_by_status()

        assert counts == {"pending": 1, "running": 0, "completed": 0, "failed": 1}
