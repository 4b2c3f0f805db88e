import pytest

from portal_scraper.models.records import Category, Checkpoint, PatientRecord, ScrapeRequest
from portal_scraper.services.batch_runner import CheckpointedBatchRunner
from portal_scraper.services.errors import DeadlineExceeded, TransientNetworkError
from portal_scraper.services.progress import ProgressReporter

from conftest import RecordingContinuationQueue, SteppingClock


def roster(n):
    return [PatientRecord(patient_id=str(i), first_name=f"F{i}", last_name=f"L{i:03d}") for i in range(n)]


class CountingUnit:
    """Processes one patient per call and advances the clock."""

    def __init__(self, clock, seconds_per_unit=30.0):
        self.clock = clock
        self.seconds_per_unit = seconds_per_unit
        self.seen = []

    async def __call__(self, ctx, patient, counters):
        self.seen.append(patient.patient_id)
        counters["documents_found"] = counters.get("documents_found", 0) + 1
        self.clock.advance(self.seconds_per_unit)
        return [{"PatientId": patient.patient_id}]


@pytest.fixture
def request_body():
    return ScrapeRequest(dataTypes=["soap_notes"], testLimit=50)


class TestCheckpointedBatchRunner:
    @pytest.mark.asyncio
    async def test_checkpoint_round_trip_covers_every_patient_once(self, job_store, make_context, request_body):
        clock = SteppingClock()
        queue = RecordingContinuationQueue()
        job = await job_store.create_job("user-1", "scrape", ["soap_notes"])
        patients = roster(7)
        unit = CountingUnit(clock, seconds_per_unit=40.0)
        checkpoint = None
        outcome = None
        invocations = 0

        while True:
            invocations += 1
            ctx = make_context(budget=100.0, clock=clock)
            progress = ProgressReporter(job_store, job.id, 1, ctx.log)
            runner = CheckpointedBatchRunner(
                Category.SOAP_NOTES, job_store, queue, progress, "user-1", job.id, request_body, progress_every=2
            )
            outcome = await runner.run(ctx, patients, unit, {}, checkpoint=checkpoint)
            if outcome.completed:
                break
            # The handoff payload is what the next invocation receives
            user_id, payload = queue.enqueued[-1]
            assert user_id == "user-1"
            continued = ScrapeRequest.model_validate(payload)
            assert continued.continuation_job_id == job.id
            assert continued.test_limit == 50
            checkpoint = continued.continuation_checkpoint
            assert checkpoint.resume_index == checkpoint.counters["patients_processed"]
            assert len(unit.seen) == checkpoint.resume_index

        assert invocations == 3
        assert unit.seen == [p.patient_id for p in patients]
        assert [r["PatientId"] for r in outcome.rows] == [p.patient_id for p in patients]
        assert outcome.counters["patients_processed"] == 7
        assert outcome.counters["documents_found"] == 7

    @pytest.mark.asyncio
    async def test_checkpoint_persisted_with_log(self, job_store, make_context, request_body):
        clock = SteppingClock()
        queue = RecordingContinuationQueue()
        job = await job_store.create_job("user-1", "scrape", ["soap_notes"])
        ctx = make_context(budget=100.0, clock=clock)
        progress = ProgressReporter(job_store, job.id, 1, ctx.log)
        runner = CheckpointedBatchRunner(Category.SOAP_NOTES, job_store, queue, progress, "user-1", job.id, request_body)

        outcome = await runner.run(ctx, roster(10), CountingUnit(clock, seconds_per_unit=60.0), {},
                                   completed_results={"demographics": [{"PatientId": "1"}]})

        assert not outcome.completed
        stored = await job_store.get_job(job.id)
        state = Checkpoint.model_validate(stored.batch_state)
        assert state.resume_index == 2
        assert state.completed_results == {"demographics": [{"PatientId": "1"}]}
        assert "Checkpoint at soap_notes #2" in stored.log_output
        assert stored.status == "running"

    @pytest.mark.asyncio
    async def test_deadline_inside_unit_repeats_that_patient(self, job_store, make_context, request_body):
        clock = SteppingClock()
        queue = RecordingContinuationQueue()
        job = await job_store.create_job("user-1", "scrape", ["soap_notes"])
        ctx = make_context(budget=100.0, clock=clock)
        progress = ProgressReporter(job_store, job.id, 1, ctx.log)
        runner = CheckpointedBatchRunner(Category.SOAP_NOTES, job_store, queue, progress, "user-1", job.id, request_body)

        async def unit(ctx, patient, counters):
            if patient.patient_id == "1":
                counters["documents_found"] = 99
                raise DeadlineExceeded("spent")
            return []

        outcome = await runner.run(ctx, roster(3), unit, {"documents_found": 0})

        assert outcome.checkpoint.resume_index == 1
        # Counters from the interrupted unit are discarded
        assert outcome.checkpoint.counters["documents_found"] == 0

    @pytest.mark.asyncio
    async def test_portal_error_skips_patient(self, job_store, make_context, request_body):
        queue = RecordingContinuationQueue()
        job = await job_store.create_job("user-1", "scrape", ["soap_notes"])
        ctx = make_context()
        progress = ProgressReporter(job_store, job.id, 1, ctx.log)
        runner = CheckpointedBatchRunner(Category.SOAP_NOTES, job_store, queue, progress, "user-1", job.id, request_body)

        async def unit(ctx, patient, counters):
            if patient.patient_id == "0":
                raise TransientNetworkError("connection reset")
            return [{"PatientId": patient.patient_id}]

        outcome = await runner.run(ctx, roster(2), unit, {})

        assert outcome.completed
        assert outcome.rows == [{"PatientId": "1"}]
        assert outcome.counters["patients_processed"] == 2
        assert queue.enqueued == []

    @pytest.mark.asyncio
    async def test_progress_reported_every_n_units(self, job_store, make_context, request_body):
        queue = RecordingContinuationQueue()
        job = await job_store.create_job("user-1", "scrape", ["soap_notes"])
        ctx = make_context()
        progress = ProgressReporter(job_store, job.id, 1, ctx.log)
        runner = CheckpointedBatchRunner(Category.SOAP_NOTES, job_store, queue, progress, "user-1", job.id,
                                         request_body, progress_every=2)

        async def unit(ctx, patient, counters):
            return []

        await runner.run(ctx, roster(4), unit, {})

        assert progress.history == [50, 99]
