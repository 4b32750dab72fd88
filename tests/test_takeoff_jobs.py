try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

from typing import Any, Dict, List, Sequence

import pytest

from takeoff.clients.page_images import PageImage
from takeoff.clients.sqlite_store import SQLiteStore
from takeoff.core.config import OrchestratorSettings
from takeoff.services.documents import DocumentRepository
from takeoff.services.job_admission import JobValidationError
from takeoff.services.plan_analysis import AnalysisRun
from takeoff.services.takeoff_jobs import (
    DuplicateJobError,
    JobBusyError,
    JobNotFoundError,
    JobSpec,
    MergeError,
    TakeoffJobService,
    batch_sort_key,
    job_key,
)


class StubPageSource:
    def __init__(self, page_count: int) -> None:
        self.page_count = page_count
        self.loaded: List[tuple[int, int]] = []

    async def count_pages(self, reference: str) -> int:
        return self.page_count

    async def load_pages(self, reference: str, start: int, end: int) -> List[PageImage]:
        self.loaded.append((start, end))
        return [PageImage(page=page, data_url=f"page-{page}") for page in range(start, end + 1)]


class StubController:
    """Returns one item per page; batches containing a page in ``fail_pages`` raise.

    ``flaky_calls`` makes that many calls fail before any batch succeeds.
    """

    def __init__(self, fail_pages: Sequence[int] = (), flaky_calls: int = 0) -> None:
        self.fail_pages = set(fail_pages)
        self.flaky_calls = flaky_calls
        self.prompts: List[str] = []
        self.options: List[Dict[str, Any]] = []

    async def run(self, *, images: Sequence[str], user_prompt: str, **options: Any) -> AnalysisRun:
        self.prompts.append(user_prompt)
        self.options.append(options)
        pages = [int(image.split("-")[1]) for image in images]
        if self.fail_pages.intersection(pages):
            raise RuntimeError("model unavailable")
        if self.flaky_calls:
            self.flaky_calls -= 1
            raise RuntimeError("rate limited")
        items = [
            {"name": f"Wall {page}", "confidence": 0.5, "bounding_box": {"page": page, "y": 0.5}}
            for page in reversed(pages)
        ]
        quality = {
            "completeness": {"missing_disciplines": [], "missing_sheets": [], "notes": ""},
            "consistency": {"conflicts": [], "unit_mismatches": [], "scale_issues": []},
            "risk_flags": [{"severity": "warning", "description": "Shared flag"}],
            "audit_trail": {"chunks_covered": "", "pages_covered": "", "method": "visual"},
        }
        return AnalysisRun(
            items=items,
            quality_analysis=quality,
            provider="gemini-2.5-pro",
            attempts=1,
            repaired=False,
            threshold=20,
        )


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _service(
    tmp_path,
    *,
    pages: int = 25,
    controller: StubController | None = None,
    wallclock: ManualClock | None = None,
    with_documents: bool = False,
    **settings: Any,
) -> tuple[TakeoffJobService, SQLiteStore, StubPageSource]:
    store = SQLiteStore(str(tmp_path / "jobs.db"))
    source = StubPageSource(pages)
    service = TakeoffJobService(
        store,
        source,  # type: ignore[arg-type]
        controller or StubController(),  # type: ignore[arg-type]
        OrchestratorSettings(**settings),
        documents=DocumentRepository(store) if with_documents else None,
        wallclock=wallclock or ManualClock(),
        sleep=RecordingSleep(),
    )
    return service, store, source


def _spec(job_id: str = "job-1", **overrides: Any) -> JobSpec:
    values: Dict[str, Any] = {
        "job_id": job_id,
        "document_id": "doc-1",
        "document_reference": "/plans/doc-1",
        "user_id": "user-1",
    }
    values.update(overrides)
    return JobSpec(**values)


@pytest.mark.asyncio
async def test_create_job_plans_batches_and_indexes_user(tmp_path) -> None:
    service, store, _ = _service(tmp_path, pages=12)

    job = await service.create_job(_spec())

    assert job["status"] == "queued"
    assert job["total_pages"] == 12
    assert job["total_batches"] == 3
    assert job["version"] == 1
    last = store.get_item(partition_key=job_key("job-1"), sort_key=batch_sort_key(2))
    assert (last["page_start"], last["page_end"], last["status"]) == (11, 12, "pending")
    index_entry = store.get_item(partition_key="user#user-1", sort_key=job_key("job-1"))
    assert index_entry["job_pk"] == job_key("job-1")


@pytest.mark.asyncio
async def test_create_job_honours_page_range_and_batch_size(tmp_path) -> None:
    service, store, _ = _service(tmp_path, pages=100)

    job = await service.create_job(
        _spec(page_start=11, page_end=20, batch_config={"batch_size": 4})
    )

    assert job["total_pages"] == 10
    assert job["total_batches"] == 3
    batches = store.list_items_with_prefix(partition_key=job_key("job-1"), sort_key_prefix="batch#")
    assert [(batch["page_start"], batch["page_end"]) for batch in batches] == [
        (11, 14),
        (15, 18),
        (19, 20),
    ]


@pytest.mark.asyncio
async def test_duplicate_job_id_is_rejected(tmp_path) -> None:
    service, _, _ = _service(tmp_path)
    await service.create_job(_spec())

    with pytest.raises(DuplicateJobError):
        await service.create_job(_spec())


@pytest.mark.asyncio
async def test_job_over_page_ceiling_is_stored_as_failed(tmp_path) -> None:
    service, store, _ = _service(tmp_path, pages=250)

    with pytest.raises(JobValidationError):
        await service.create_job(_spec())

    job = service.load_job("job-1")
    assert job["status"] == "failed"
    assert "maximum is 200" in job["errors"][0]["error"]
    assert store.list_items_with_prefix(partition_key=job_key("job-1"), sort_key_prefix="batch#") == []


@pytest.mark.asyncio
async def test_missing_document_reference_is_rejected(tmp_path) -> None:
    service, _, _ = _service(tmp_path)

    with pytest.raises(JobValidationError):
        await service.create_job(_spec(document_reference=" "))


@pytest.mark.asyncio
async def test_service_created_job_belongs_to_document_owner(tmp_path) -> None:
    service, store, _ = _service(tmp_path, pages=6, with_documents=True)
    DocumentRepository(store).register(
        document_id="doc-1", reference="/plans/doc-1", user_id="user-1", project_name="Lake House"
    )

    job = await service.create_job(_spec(user_id=None))

    assert job["user_id"] == "user-1"
    assert job["project_name"] == "Lake House"
    index_entry = store.get_item(partition_key="user#user-1", sort_key=job_key("job-1"))
    assert index_entry["job_pk"] == job_key("job-1")


@pytest.mark.asyncio
async def test_continuations_drive_job_to_single_merge(tmp_path) -> None:
    service, _, source = _service(tmp_path, pages=25)
    await service.create_job(_spec())

    merges: List[str] = []
    original_merge = service.merge_job_results

    async def counting_merge(job_id: str) -> Dict[str, Any]:
        merges.append(job_id)
        return await original_merge(job_id)

    service.merge_job_results = counting_merge  # type: ignore[method-assign]

    outcomes = [
        await service.continue_job("job-1", max_batches=2),
        await service.continue_job("job-1", max_batches=2),
        await service.continue_job("job-1", max_batches=3),
    ]

    assert [outcome.processed for outcome in outcomes] == [2, 2, 1]
    assert [outcome.remaining for outcome in outcomes] == [3, 1, 0]
    assert [outcome.progress_percent for outcome in outcomes] == [40, 80, 100]
    assert outcomes[0].status == "running"
    assert outcomes[0].message == "Processed 2 batches; 3 remaining. Call continue again to resume."
    assert outcomes[2].status == "completed"
    assert outcomes[2].message == "All batches processed and results merged."
    assert merges == ["job-1"]
    assert source.loaded == [(1, 5), (6, 10), (11, 15), (16, 20), (21, 25)]

    again = await service.continue_job("job-1", max_batches=3)
    assert again.processed == 0
    assert merges == ["job-1"]

    result = service.get_job_result("job-1")
    pages = [item["bounding_box"]["page"] for item in result["items"]]
    assert pages == list(range(1, 26))
    assert len(result["quality_analysis"]["risk_flags"]) == 1
    audit = result["quality_analysis"]["audit_trail"]
    assert audit["chunks_covered"] == "5 of 5 batches"
    assert audit["pages_covered"] == "1-25"

    job = service.load_job("job-1")
    assert job["summary"]["total_items"] == 25
    assert job["confidence"] == pytest.approx(0.5)
    assert job["lease_owner"] is None


@pytest.mark.asyncio
async def test_batch_prompts_carry_page_numbers(tmp_path) -> None:
    controller = StubController()
    service, _, _ = _service(tmp_path, pages=7, controller=controller)
    await service.create_job(_spec())

    await service.continue_job("job-1", max_batches=1)

    assert "pages 1 through 5" in controller.prompts[0]


@pytest.mark.asyncio
async def test_failed_batch_counts_as_processed_and_is_recorded(tmp_path) -> None:
    service, _, _ = _service(tmp_path, pages=10, controller=StubController(fail_pages=[7]))
    await service.create_job(_spec())

    outcome = await service.continue_job("job-1", max_batches=3)

    assert outcome.processed == 2
    assert outcome.remaining == 0
    assert outcome.status == "completed"
    status = service.get_job_status("job-1")
    assert [batch["status"] for batch in status["batches"]] == ["completed", "failed"]
    assert status["errors"][0]["batch_index"] == 1
    assert status["errors"][0]["error"] == "model unavailable"
    assert status["has_result"] is True
    assert len(service.get_job_result("job-1")["items"]) == 5


@pytest.mark.asyncio
async def test_job_with_only_failed_batches_fails_without_merge(tmp_path) -> None:
    service, _, _ = _service(tmp_path, pages=3, controller=StubController(fail_pages=[1]))
    await service.create_job(_spec())

    outcome = await service.continue_job("job-1")

    assert outcome.status == "failed"
    assert outcome.message == "All batches failed; no results to merge."
    with pytest.raises(JobNotFoundError):
        service.get_job_result("job-1")
    with pytest.raises(MergeError):
        await service.merge_job_results("job-1")


@pytest.mark.asyncio
async def test_flaky_batch_is_retried_with_backoff(tmp_path) -> None:
    controller = StubController(flaky_calls=2)
    service, store, _ = _service(tmp_path, pages=5, controller=controller)
    await service.create_job(_spec(batch_config={"max_retries": 3}))

    outcome = await service.continue_job("job-1")

    assert outcome.status == "completed"
    assert service._sleep.delays == [1.0, 2.0]
    assert len(controller.prompts) == 3
    batch = store.get_item(partition_key=job_key("job-1"), sort_key=batch_sort_key(0))
    assert batch["status"] == "completed"
    assert batch["metrics"]["batch_attempt"] == 3


@pytest.mark.asyncio
async def test_batch_fails_once_retries_are_exhausted(tmp_path) -> None:
    controller = StubController(fail_pages=[1])
    service, _, _ = _service(
        tmp_path, pages=5, controller=controller, batch_retry_base_seconds=10.0, batch_retry_max_seconds=15.0
    )
    await service.create_job(_spec(batch_config={"max_retries": 3}))

    outcome = await service.continue_job("job-1")

    assert outcome.status == "failed"
    assert len(controller.prompts) == 3
    assert service._sleep.delays == [10.0, 15.0]
    assert service.get_job_status("job-1")["errors"][0]["error"] == "model unavailable"


@pytest.mark.asyncio
async def test_mode_and_model_policy_are_passed_to_the_controller(tmp_path) -> None:
    controller = StubController()
    service, _, _ = _service(tmp_path, pages=5, controller=controller)
    await service.create_job(
        _spec(
            mode="quality_analysis",
            model_policy={"primary": "gemini-2.5-flash", "fallbacks": ["gemini-2.0-flash"], "temperature": 0.3},
        )
    )

    await service.continue_job("job-1")

    assert controller.options == [
        {
            "mode": "quality_analysis",
            "models": ["gemini-2.5-flash", "gemini-2.0-flash"],
            "max_tokens": None,
            "temperature": 0.3,
        }
    ]
    assert service.load_job("job-1")["batch_config"] == {"batch_size": 5, "max_retries": 2}


@pytest.mark.asyncio
async def test_unknown_mode_is_rejected(tmp_path) -> None:
    service, _, _ = _service(tmp_path)

    with pytest.raises(JobValidationError):
        await service.create_job(_spec(mode="batch"))


@pytest.mark.asyncio
async def test_held_lease_rejects_second_continuation(tmp_path) -> None:
    clock = ManualClock()
    service, store, _ = _service(tmp_path, wallclock=clock)
    await service.create_job(_spec())
    job = service.load_job("job-1")
    job.update({"lease_owner": "other", "lease_expires_at": clock.now + 60, "version": 2})
    store.put_item(job, expected_version=1)

    with pytest.raises(JobBusyError):
        await service.continue_job("job-1")

    clock.now += 61
    outcome = await service.continue_job("job-1", max_batches=1)
    assert outcome.processed == 1


@pytest.mark.asyncio
async def test_batch_left_in_processing_is_reclaimed(tmp_path) -> None:
    service, store, _ = _service(tmp_path, pages=5)
    await service.create_job(_spec())
    batch = store.get_item(partition_key=job_key("job-1"), sort_key=batch_sort_key(0))
    batch["status"] = "processing"
    store.put_item(batch)

    status = service.get_job_status("job-1")
    assert status["remaining_batches"] == 1

    outcome = await service.continue_job("job-1")
    assert outcome.processed == 1
    assert outcome.status == "completed"


@pytest.mark.asyncio
async def test_soft_deadline_stops_before_next_batch(tmp_path) -> None:
    service, _, _ = _service(tmp_path, pages=15)
    await service.create_job(_spec())
    ticks = iter([0.0, 0.0, 20.0])
    service._clock = lambda: next(ticks)  # type: ignore[attr-defined]

    progress = await service.process_batches("job-1", max_batches=3, timeout_ms=10000)

    assert progress.processed == 1
    assert progress.remaining == 2


@pytest.mark.asyncio
async def test_merge_is_rejected_while_batches_remain(tmp_path) -> None:
    service, _, _ = _service(tmp_path, pages=10)
    await service.create_job(_spec())
    await service.continue_job("job-1", max_batches=1)

    status = service.get_job_status("job-1")
    assert status["is_partial"] is True
    assert status["has_result"] is False

    with pytest.raises(MergeError):
        await service.merge_job_results("job-1")


@pytest.mark.asyncio
async def test_merge_can_be_retried_after_completion(tmp_path) -> None:
    service, _, _ = _service(tmp_path, pages=5)
    await service.create_job(_spec())
    await service.continue_job("job-1")

    first = service.get_job_result("job-1")
    second = await service.merge_job_results("job-1")

    assert second == first


@pytest.mark.asyncio
async def test_unknown_job_raises_not_found(tmp_path) -> None:
    service, _, _ = _service(tmp_path)

    with pytest.raises(JobNotFoundError):
        await service.continue_job("missing")
    with pytest.raises(JobNotFoundError):
        service.get_job_status("missing")
