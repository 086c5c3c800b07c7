"""
End-to-end tests of pipeline invocations against a SQLite database.

Each test writes a synthetic ledger into the blob root, registers a job and
drives ``ImportPipeline.run_invocation`` the way the continuation scheduler
would: invoke again while the outcome asks for a continuation.
"""

import dataclasses
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from efd_config.schema import TrailerPolicy
from efd_ingestion.adapters.local_blob import LocalBlobStore
from efd_ingestion.domain.types import (
    ImportJobStatus,
    ImportScope,
    InvocationOutcome,
    RowCategory,
)
from efd_ingestion.models.import_job import ImportJobModel
from efd_ingestion.models.records import (
    AssetConsumptionRecordModel,
    FreightRecordModel,
    GoodsRecordModel,
    ServiceRecordModel,
    UtilityRecordModel,
)
from efd_ingestion.services.job_repository import ImportJobRepository
from efd_kernel.domain.clock import DeterministicClock
from efd_kernel.exceptions import BlobReadError, PersistenceError, ViewRefreshError
from efd_kernel.models.branch import BranchModel
from efd_kernel.services.branch_service import BranchService

from ledger_files import MAIN_CNPJ, SECOND_CNPJ, LedgerBuilder, abc_scenario

RECORD_MODELS = (
    GoodsRecordModel,
    ServiceRecordModel,
    UtilityRecordModel,
    FreightRecordModel,
    AssetConsumptionRecordModel,
)


def contributions_ledger() -> LedgerBuilder:
    builder = LedgerBuilder("contribuicoes")
    builder.participant("P001", "FORNECEDOR A", cnpj=SECOND_CNPJ)
    builder.branch("C010", MAIN_CNPJ)
    builder.goods_document("2001", "1200,00")
    builder.branch("D010", MAIN_CNPJ)
    builder.freight_document("900,00")
    builder.freight_pis("14,85")
    builder.freight_cofins("68,40")
    builder.branch("A010", SECOND_CNPJ)
    builder.service_document("3001", "500,00")
    return builder


def larger_ledger(services: int = 10) -> LedgerBuilder:
    builder = abc_scenario()
    for n in range(services):
        builder.service_document(str(5000 + n), f"{100 + n},00")
    return builder


def snapshot(rows_of, job_id) -> list[tuple]:
    """Persisted rows of a job without ids or timestamps."""
    result = []
    for model in RECORD_MODELS:
        for row in rows_of(model, job_id):
            result.append(
                (model.__tablename__, row.source_line, row.branch_id, row.period, row.amount, row.pis, row.cofins)
            )
    return sorted(result, key=lambda r: (r[0], r[1]))


def outcomes(results) -> list[InvocationOutcome]:
    return [r.outcome for r in results]


class RecordingRefresher:
    def __init__(self, error: Exception | None = None):
        self.calls = []
        self.error = error

    def refresh(self, job_id):
        self.calls.append(job_id)
        if self.error is not None:
            raise self.error


class FailingBlobStore(LocalBlobStore):
    """Header reads succeed; streaming always fails."""

    def __init__(self, root):
        super().__init__(root)
        self.attempts = 0

    def iter_blocks(self, path, offset, block_size):
        self.attempts += 1
        raise BlobReadError(path, "connection reset")


class FlakyBlobStore(LocalBlobStore):
    """Streaming fails once, after ``fail_after`` blocks were served."""

    def __init__(self, root, fail_after: int):
        super().__init__(root)
        self.fail_after = fail_after
        self.failed = False

    def iter_blocks(self, path, offset, block_size):
        for index, block in enumerate(super().iter_blocks(path, offset, block_size)):
            if index == self.fail_after and not self.failed:
                self.failed = True
                raise BlobReadError(path, "connection reset")
            yield block


class HookedBlobStore(LocalBlobStore):
    """Runs ``hook`` before serving block ``at_block``."""

    def __init__(self, root, at_block: int):
        super().__init__(root)
        self.at_block = at_block
        self.hook = None

    def iter_blocks(self, path, offset, block_size):
        for index, block in enumerate(super().iter_blocks(path, offset, block_size)):
            if index == self.at_block and self.hook is not None:
                self.hook()
            yield block


# =============================================================================
# Happy path
# =============================================================================


class TestSingleInvocation:
    def test_abc_scenario(self, create_job, make_pipeline, load_job, rows_of, abc_ledger):
        job_id = create_job(abc_ledger)

        result = make_pipeline().run_invocation(job_id)

        assert result.outcome is InvocationOutcome.COMPLETED
        assert result.lines_processed == 8
        job = load_job(job_id)
        assert job.status == ImportJobStatus.COMPLETED.value
        assert job.progress == 100
        assert job.status_message == "completed"
        assert job.processed_lines == 8
        assert job.total_lines == 8
        assert job.resume_cursor == job.file_size
        assert job.branch_id is not None
        assert job.error_message is None
        counts = job.counts()
        assert counts[RowCategory.GOODS] == 1
        assert counts[RowCategory.USAGE_CONSUMPTION] == 1
        assert counts[RowCategory.FIXED_ASSET] == 1
        assert counts[RowCategory.PARTICIPANTS] == 1
        assert counts[RowCategory.SERVICES] == 0

        (goods,) = rows_of(GoodsRecordModel, job_id)
        assert goods.amount == Decimal("3000.00")
        assert goods.branch_id == job.branch_id
        items = rows_of(AssetConsumptionRecordModel, job_id)
        assert [(i.category, i.fiscal_code) for i in items] == [
            ("usage_consumption", "1556"),
            ("fixed_asset", "1551"),
        ]

    def test_branch_created_from_header(
        self, create_job, make_pipeline, session_factory, company_id, abc_ledger
    ):
        make_pipeline().run_invocation(create_job(abc_ledger))
        with session_factory() as s:
            branch = s.execute(select(BranchModel)).scalar_one()
        assert branch.company_id == company_id
        assert branch.taxpayer_id == MAIN_CNPJ
        assert branch.name == "EMPRESA TESTE LTDA"

    def test_invocation_logs_carry_job_context(self, create_job, make_pipeline, captured_logs, abc_ledger):
        job_id = create_job(abc_ledger)
        make_pipeline().run_invocation(job_id)
        started = [r for r in captured_logs() if r["message"] == "import_invocation_started"]
        assert started[0]["job_id"] == str(job_id)
        assert started[0]["chunk_number"] == "1"
        finished = [r for r in captured_logs() if r["message"] == "import_invocation_finished"]
        assert finished[0]["outcome"] == "completed"

    def test_unknown_job_is_skipped(self, make_pipeline):
        result = make_pipeline().run_invocation(uuid4())
        assert result.outcome is InvocationOutcome.SKIPPED
        assert result.message == "job not found"
        assert not result.needs_continuation

    def test_completed_job_is_not_reprocessed(self, create_job, make_pipeline, abc_ledger):
        job_id = create_job(abc_ledger)
        pipeline = make_pipeline()
        pipeline.run_invocation(job_id)
        assert pipeline.run_invocation(job_id).outcome is InvocationOutcome.SKIPPED

    def test_trailer_mismatch_warns_by_default(self, create_job, make_pipeline, load_job):
        job_id = create_job(abc_scenario().build(declared_lines=99))
        assert make_pipeline().run_invocation(job_id).outcome is InvocationOutcome.COMPLETED
        assert load_job(job_id).total_lines == 99

    def test_short_records_are_counted(self, create_job, make_pipeline, load_job):
        job_id = create_job(abc_scenario().add("|C100|0|"))
        make_pipeline().run_invocation(job_id)
        job = load_job(job_id)
        assert job.status == ImportJobStatus.COMPLETED.value
        assert job.skipped_records == 1

    def test_record_limit_stops_early(self, create_job, make_pipeline, load_job, ledger_builder):
        builder = ledger_builder()
        for n in range(3):
            builder.service_document(str(n), "100,00")
        job_id = create_job(builder, scope=ImportScope.ONLY_A, record_limit=1)

        result = make_pipeline().run_invocation(job_id)

        assert result.outcome is InvocationOutcome.COMPLETED
        job = load_job(job_id)
        assert job.counts()[RowCategory.SERVICES] == 1
        assert job.processed_lines == 3

    def test_scope_only_c(self, create_job, make_pipeline, load_job):
        job_id = create_job(larger_ledger(3), scope=ImportScope.ONLY_C)
        make_pipeline().run_invocation(job_id)
        counts = load_job(job_id).counts()
        assert counts[RowCategory.SERVICES] == 0
        assert counts[RowCategory.GOODS] == 1


# =============================================================================
# Continuations
# =============================================================================


class TestContinuation:
    def test_line_budget_splits_into_invocations(
        self, create_job, make_pipeline, make_config, run_to_completion, load_job, abc_ledger
    ):
        job_id = create_job(abc_ledger)
        results = run_to_completion(make_pipeline(make_config(max_lines=2)), job_id)

        assert outcomes(results) == [InvocationOutcome.CONTINUE] * 3 + [InvocationOutcome.COMPLETED]
        assert [r.lines_processed for r in results] == [2, 2, 2, 2]
        job = load_job(job_id)
        assert job.chunk_number == 4
        assert job.counts()[RowCategory.USAGE_CONSUMPTION] == 1

    def test_chunked_run_matches_single_run(
        self, create_job, make_pipeline, make_config, run_to_completion, rows_of
    ):
        ledger = larger_ledger()
        single = create_job(ledger, name="single.txt")
        chunked = create_job(ledger, name="chunked.txt")

        run_to_completion(make_pipeline(), single)
        run_to_completion(make_pipeline(make_config(max_lines=3, checkpoint_interval=2, batch_size=2)), chunked)

        assert snapshot(rows_of, chunked) == snapshot(rows_of, single)
        assert len(snapshot(rows_of, single)) == 13

    def test_byte_budget(self, create_job, make_pipeline, make_config, run_to_completion, load_job):
        job_id = create_job(larger_ledger())
        results = run_to_completion(make_pipeline(make_config(max_bytes=200)), job_id)
        assert len(results) > 2
        assert load_job(job_id).counts()[RowCategory.SERVICES] == 10

    def test_time_budget(self, create_job, make_pipeline, pipeline_config, run_to_completion, load_job):
        chunk = dataclasses.replace(pipeline_config.chunk, max_seconds=10.0, deadline_margin_seconds=5.0)
        config = dataclasses.replace(pipeline_config, chunk=chunk)
        clock = DeterministicClock(auto_advance=1.0)
        job_id = create_job(larger_ledger(20))

        results = run_to_completion(make_pipeline(config, clock=clock), job_id)

        assert len(results) > 1
        assert all(r.outcome is InvocationOutcome.CONTINUE for r in results[:-1])
        assert results[-1].outcome is InvocationOutcome.COMPLETED
        assert load_job(job_id).counts()[RowCategory.SERVICES] == 20

    def test_progress_is_monotonic(self, create_job, make_pipeline, make_config, load_job):
        job_id = create_job(larger_ledger(20))
        pipeline = make_pipeline(make_config(max_lines=3, checkpoint_interval=1))

        observed = []
        while True:
            result = pipeline.run_invocation(job_id)
            observed.append(load_job(job_id).progress)
            if not result.needs_continuation:
                break

        assert observed == sorted(observed)
        assert all(p <= 90 for p in observed[:-1])
        assert observed[-1] == 100

    def test_resume_cursor_only_moves_forward(self, create_job, make_pipeline, make_config, run_to_completion):
        job_id = create_job(larger_ledger())
        results = run_to_completion(make_pipeline(make_config(max_lines=4)), job_id)
        cursors = [r.resume_cursor for r in results]
        assert cursors == sorted(cursors)
        assert len(set(cursors)) == len(cursors)

    def test_contributions_freight_split_across_invocations(
        self, create_job, make_pipeline, make_config, run_to_completion, rows_of, load_job, session_factory
    ):
        job_id = create_job(contributions_ledger())
        results = run_to_completion(make_pipeline(make_config(max_lines=1)), job_id)

        assert len(results) == 12
        (freight,) = rows_of(FreightRecordModel, job_id)
        assert freight.source_line == 7
        assert freight.amount == Decimal("900.00")
        assert freight.pis == Decimal("14.85")
        assert freight.cofins == Decimal("68.40")

        (service,) = rows_of(ServiceRecordModel, job_id)
        with session_factory() as s:
            second = s.execute(
                select(BranchModel).where(BranchModel.taxpayer_id == SECOND_CNPJ)
            ).scalar_one()
        assert service.branch_id == second.id
        assert freight.branch_id == load_job(job_id).branch_id

    def test_reimport_does_not_duplicate_participants(self, create_job, make_pipeline, load_job, abc_ledger):
        first = create_job(abc_ledger, name="first.txt")
        second = create_job(abc_ledger, name="second.txt")
        make_pipeline().run_invocation(first)
        make_pipeline().run_invocation(second)
        assert load_job(first).counts()[RowCategory.PARTICIPANTS] == 1
        assert load_job(second).counts()[RowCategory.PARTICIPANTS] == 0
        assert load_job(second).counts()[RowCategory.GOODS] == 1


# =============================================================================
# Claims and cancellation
# =============================================================================


class TestClaims:
    def test_held_claim_skips_invocation(
        self, create_job, make_pipeline, session_factory, deterministic_clock, load_job, abc_ledger
    ):
        job_id = create_job(abc_ledger)
        with session_factory() as s:
            ImportJobRepository(s, deterministic_clock).try_claim(job_id, 120)
            s.commit()

        result = make_pipeline().run_invocation(job_id)

        assert result.outcome is InvocationOutcome.SKIPPED
        assert load_job(job_id).processed_lines == 0

    def test_expired_claim_is_taken_over(
        self, create_job, make_pipeline, session_factory, deterministic_clock, load_job, abc_ledger
    ):
        job_id = create_job(abc_ledger)
        with session_factory() as s:
            ImportJobRepository(s, deterministic_clock).try_claim(job_id, 120)
            s.commit()
        deterministic_clock.advance(121)

        assert make_pipeline().run_invocation(job_id).outcome is InvocationOutcome.COMPLETED
        assert load_job(job_id).chunk_number == 2

    def test_cancel_between_invocations(
        self, create_job, make_pipeline, make_config, import_service, load_job, abc_ledger
    ):
        job_id = create_job(abc_ledger)
        pipeline = make_pipeline(make_config(max_lines=2))
        assert pipeline.run_invocation(job_id).outcome is InvocationOutcome.CONTINUE

        import_service.cancel(job_id)

        result = pipeline.run_invocation(job_id)
        assert result.outcome is InvocationOutcome.SKIPPED
        assert load_job(job_id).status == ImportJobStatus.CANCELLED.value

    def test_cancel_during_invocation(
        self, create_job, make_pipeline, make_config, import_service, blob_root, load_job
    ):
        store = HookedBlobStore(blob_root, at_block=3)
        job_id = create_job(larger_ledger())
        store.hook = lambda: import_service.cancel(job_id)
        config = make_config(read_block_bytes=64, checkpoint_interval=1)

        result = make_pipeline(config, store=store).run_invocation(job_id)

        assert result.outcome is InvocationOutcome.CANCELLED
        assert not result.needs_continuation
        job = load_job(job_id)
        assert job.status == ImportJobStatus.CANCELLED.value
        assert job.processed_lines < 18


# =============================================================================
# Failures
# =============================================================================


class TestValidationFailures:
    def test_missing_header(self, create_job, make_pipeline, load_job):
        job_id = create_job(b"|0001|0|\n|9999|2|\n")

        result = make_pipeline().run_invocation(job_id)

        assert result.outcome is InvocationOutcome.FAILED
        job = load_job(job_id)
        assert job.status == ImportJobStatus.FAILED.value
        assert job.error_message.startswith("Validation failed:")
        assert "0000" in job.error_message
        assert job.claim_token is None

    def test_malformed_line(self, create_job, make_pipeline, load_job, abc_ledger):
        job_id = create_job(abc_ledger.add("C100|0|1|"))
        assert make_pipeline().run_invocation(job_id).outcome is InvocationOutcome.FAILED
        assert "line 8" in load_job(job_id).error_message

    def test_invalid_branch_taxpayer_id(self, create_job, make_pipeline, load_job):
        job_id = create_job(LedgerBuilder("contribuicoes").branch("C010", "123"))
        make_pipeline().run_invocation(job_id)
        assert "Invalid taxpayer id" in load_job(job_id).error_message

    def test_strict_trailer_policy(self, create_job, make_pipeline, make_config, load_job):
        job_id = create_job(abc_scenario().build(declared_lines=99))
        config = make_config(trailer_policy=TrailerPolicy.FAIL)

        result = make_pipeline(config).run_invocation(job_id)

        assert result.outcome is InvocationOutcome.FAILED
        assert load_job(job_id).error_message == (
            "Validation failed: Trailer declares 99 lines but 8 were read"
        )

    def test_validation_failure_is_not_retried(
        self, create_job, make_pipeline, run_to_completion, load_job
    ):
        job_id = create_job(b"not a ledger\n")
        results = run_to_completion(make_pipeline(), job_id)
        assert outcomes(results) == [InvocationOutcome.FAILED]
        assert load_job(job_id).retry_count == 0


class TestSourceFailures:
    def test_missing_file_fails_without_retry(
        self, create_job, make_pipeline, run_to_completion, blob_root, load_job, abc_ledger
    ):
        job_id = create_job(abc_ledger)
        (blob_root / "efd.txt").unlink()

        results = run_to_completion(make_pipeline(), job_id)

        assert outcomes(results) == [InvocationOutcome.FAILED]
        job = load_job(job_id)
        assert job.status == ImportJobStatus.FAILED.value
        assert job.retry_count == 0
        assert job.error_message.startswith("Source unavailable:")
        assert "file not found" in job.error_message
        assert job.claim_token is None


class TestTransientFailures:
    def test_consecutive_failures_fail_the_job(
        self, create_job, make_pipeline, run_to_completion, blob_root, load_job, abc_ledger
    ):
        store = FailingBlobStore(blob_root)
        job_id = create_job(abc_ledger)

        results = run_to_completion(make_pipeline(store=store), job_id)

        assert outcomes(results) == [
            InvocationOutcome.RETRY,
            InvocationOutcome.RETRY,
            InvocationOutcome.FAILED,
        ]
        assert [r.retry_count for r in results] == [1, 2, 3]
        assert store.attempts == 3
        job = load_job(job_id)
        assert job.status == ImportJobStatus.FAILED.value
        assert job.error_message.startswith("Persistence failed:")
        assert "3 consecutive attempts" in job.error_message
        assert job.resume_cursor == 0

    def test_retry_is_exactly_once(
        self, create_job, make_pipeline, make_config, run_to_completion, blob_root, rows_of, load_job
    ):
        ledger = larger_ledger()
        reference = create_job(ledger, name="reference.txt")
        run_to_completion(make_pipeline(), reference)

        store = FlakyBlobStore(blob_root, fail_after=4)
        job_id = create_job(ledger, name="flaky.txt")
        config = make_config(read_block_bytes=64, batch_size=1, checkpoint_interval=1000)

        results = run_to_completion(make_pipeline(config, store=store), job_id)

        assert outcomes(results) == [InvocationOutcome.RETRY, InvocationOutcome.COMPLETED]
        assert snapshot(rows_of, job_id) == snapshot(rows_of, reference)
        job = load_job(job_id)
        assert job.counts()[RowCategory.SERVICES] == 10
        assert job.counts()[RowCategory.GOODS] == 1
        assert job.retry_count == 0

    def test_job_record_failure_propagates(self, engine, make_pipeline):
        ImportJobModel.__table__.drop(engine)
        with pytest.raises(PersistenceError) as exc_info:
            make_pipeline().run_invocation(uuid4())
        assert exc_info.value.target == "import_jobs"

    def test_branch_lookup_error_is_retried(
        self, create_job, make_pipeline, run_to_completion, load_job, monkeypatch
    ):
        original = BranchService._resolve_or_create
        failed = []

        def flaky(self, company_id, cnpj, name, establishment_code):
            if cnpj == SECOND_CNPJ and not failed:
                failed.append(cnpj)
                raise OperationalError("SELECT branches.id FROM branches", {}, Exception("connection reset"))
            return original(self, company_id, cnpj, name, establishment_code)

        monkeypatch.setattr(BranchService, "_resolve_or_create", flaky)
        ledger = LedgerBuilder("contribuicoes").branch("C010", SECOND_CNPJ).goods_document("1", "10,00")
        job_id = create_job(ledger)
        pipeline = make_pipeline()

        first = pipeline.run_invocation(job_id)

        assert first.outcome is InvocationOutcome.RETRY
        assert first.retry_count == 1
        job = load_job(job_id)
        assert job.status == ImportJobStatus.PROCESSING.value
        assert job.claim_token is None
        assert job.error_message.startswith("Persistence failed:")
        assert "branches" in job.error_message

        assert outcomes(run_to_completion(pipeline, job_id)) == [InvocationOutcome.COMPLETED]
        job = load_job(job_id)
        assert job.counts()[RowCategory.GOODS] == 1
        assert job.retry_count == 0

    def test_job_record_error_mid_invocation_is_retried(
        self, create_job, make_pipeline, run_to_completion, load_job, monkeypatch, abc_ledger
    ):
        original = ImportJobRepository.set_branch
        calls = []

        def flaky(self, claim, branch_id, parse_state):
            calls.append(claim.chunk_number)
            if len(calls) == 1:
                raise OperationalError("UPDATE import_jobs SET branch_id=?", {}, Exception("database is locked"))
            return original(self, claim, branch_id, parse_state)

        monkeypatch.setattr(ImportJobRepository, "set_branch", flaky)
        job_id = create_job(abc_ledger)

        results = run_to_completion(make_pipeline(), job_id)

        assert outcomes(results) == [InvocationOutcome.RETRY, InvocationOutcome.COMPLETED]
        assert results[0].retry_count == 1
        assert "import_jobs" in results[0].message
        assert load_job(job_id).status == ImportJobStatus.COMPLETED.value


# =============================================================================
# Aggregate refresh
# =============================================================================


class TestViewRefresh:
    def test_refresher_called_once_on_completion(
        self, create_job, make_pipeline, make_config, run_to_completion, abc_ledger
    ):
        refresher = RecordingRefresher()
        job_id = create_job(abc_ledger)
        run_to_completion(make_pipeline(make_config(max_lines=3), view_refresher=refresher), job_id)
        assert refresher.calls == [job_id]

    def test_refresh_failure_does_not_fail_job(
        self, create_job, make_pipeline, load_job, captured_logs, abc_ledger
    ):
        refresher = RecordingRefresher(error=ViewRefreshError("timeout"))
        job_id = create_job(abc_ledger)

        result = make_pipeline(view_refresher=refresher).run_invocation(job_id)

        assert result.outcome is InvocationOutcome.COMPLETED
        assert load_job(job_id).status == ImportJobStatus.COMPLETED.value
        assert any(r["message"] == "view_refresh_failed" for r in captured_logs())

    def test_disabled_refresh(self, create_job, make_pipeline, pipeline_config, abc_ledger):
        refresher = RecordingRefresher()
        config = dataclasses.replace(
            pipeline_config,
            view_refresh=dataclasses.replace(pipeline_config.view_refresh, enabled=False),
        )
        make_pipeline(config, view_refresher=refresher).run_invocation(create_job(abc_ledger))
        assert refresher.calls == []

    def test_interrupted_refresh_is_completed(
        self, create_job, make_pipeline, session_factory, deterministic_clock, load_job, abc_ledger
    ):
        job_id = create_job(abc_ledger)
        with session_factory() as session:
            repository = ImportJobRepository(session, deterministic_clock)
            claim = repository.try_claim(job_id, 10)
            repository.mark_refreshing(claim, progress=90, total_lines=8)
            session.commit()
        refresher = RecordingRefresher()
        pipeline = make_pipeline(view_refresher=refresher)

        assert pipeline.run_invocation(job_id).outcome is InvocationOutcome.SKIPPED
        deterministic_clock.advance(11)
        result = pipeline.run_invocation(job_id)

        assert result.outcome is InvocationOutcome.COMPLETED
        assert refresher.calls == [job_id]
        job = load_job(job_id)
        assert job.status == ImportJobStatus.COMPLETED.value
        assert job.progress == 100
        assert job.total_lines == 8
        assert job.claim_token is None
