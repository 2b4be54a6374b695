import math
import threading
import time
import zipfile

import pytest

from conftest import CORRUPT, BlockingTranscoder, BrokenArchiver, FailingTranscoder, StubTranscoder, make_jpeg
from converter.errors import EmptyBatch, InvalidParameters, InvalidTransition
from converter.jobs.models import ConversionParameters, JobStatus, UploadedImage


@pytest.fixture
def webp_params():
    return ConversionParameters.from_raw("webp", 80, "medium")


def _images(*payloads):
    return [UploadedImage(data=p, filename=f"photo{i}.jpg") for i, p in enumerate(payloads)]


def test_three_images_produce_three_webp_entries(make_orchestrator, store, dirs, webp_params):
    orchestrator = make_orchestrator()
    job_id = orchestrator.start_bulk_conversion(_images(make_jpeg(), make_jpeg(), make_jpeg()), webp_params)

    assert store.get(job_id).file_count == 3
    job = orchestrator.join(job_id, timeout=10)

    assert job.status == JobStatus.COMPLETED
    assert job.failed_count == 0
    archive_dir, _ = dirs
    with zipfile.ZipFile(archive_dir / job.archive_ref) as zf:
        names = zf.namelist()
    assert len(names) == 3
    assert all(n.endswith(".webp") for n in names)
    assert len(set(names)) == 3


def test_admission_returns_before_conversion_finishes(make_orchestrator, store, webp_params):
    transcoder = BlockingTranscoder()
    orchestrator = make_orchestrator(transcoder=transcoder, image_timeout=None)
    try:
        job_id = orchestrator.start_bulk_conversion(_images(b"HANG-1"), webp_params)
        assert store.get(job_id).status == JobStatus.PROCESSING
    finally:
        transcoder.release.set()
    assert orchestrator.join(job_id, timeout=10).status == JobStatus.COMPLETED


def test_one_corrupt_image_does_not_abort_the_batch(make_orchestrator, dirs, webp_params):
    orchestrator = make_orchestrator()
    job_id = orchestrator.start_bulk_conversion(_images(make_jpeg(), CORRUPT), webp_params)

    job = orchestrator.join(job_id, timeout=10)

    assert job.status == JobStatus.COMPLETED
    assert job.failed_count == 1
    archive_dir, _ = dirs
    with zipfile.ZipFile(archive_dir / job.archive_ref) as zf:
        assert zf.namelist() == ["001_photo0.webp"]


def test_all_images_failing_fails_the_job(make_orchestrator, dirs, webp_params):
    orchestrator = make_orchestrator(transcoder=FailingTranscoder())
    job_id = orchestrator.start_bulk_conversion(_images(make_jpeg()), webp_params)

    job = orchestrator.join(job_id, timeout=10)

    assert job.status == JobStatus.FAILED
    assert job.error_message
    assert "encoder unavailable" in job.error_message
    assert job.archive_ref is None
    assert job.failed_count == 1
    archive_dir, _ = dirs
    assert list(archive_dir.iterdir()) == []


def test_archive_failure_fails_the_job(make_orchestrator, webp_params):
    orchestrator = make_orchestrator(archiver=BrokenArchiver())
    job_id = orchestrator.start_bulk_conversion(_images(make_jpeg()), webp_params)

    job = orchestrator.join(job_id, timeout=10)

    assert job.status == JobStatus.FAILED
    assert "disk full" in job.error_message


def test_empty_batch_creates_no_job(make_orchestrator, store, webp_params):
    orchestrator = make_orchestrator()
    with pytest.raises(EmptyBatch):
        orchestrator.start_bulk_conversion([], webp_params)
    assert store.list_jobs() == []


def test_invalid_parameters_create_no_job(make_orchestrator, store):
    orchestrator = make_orchestrator()
    with pytest.raises(InvalidParameters):
        orchestrator.start_bulk_conversion(_images(make_jpeg()), ConversionParameters.from_raw("webp", 150, "medium"))
    with pytest.raises(InvalidParameters):
        orchestrator.start_bulk_conversion(_images(make_jpeg()), {"quality": 80})
    assert store.list_jobs() == []


def test_raw_bytes_are_accepted(make_orchestrator, webp_params):
    orchestrator = make_orchestrator()
    job_id = orchestrator.start_bulk_conversion([make_jpeg(), make_jpeg()], webp_params)

    job = orchestrator.join(job_id, timeout=10)
    assert job.status == JobStatus.COMPLETED
    assert job.file_count == 2


def test_parameters_are_applied_to_every_image(make_orchestrator):
    transcoder = StubTranscoder()
    orchestrator = make_orchestrator(transcoder=transcoder)
    params = ConversionParameters.from_raw("avif", 42, "high")

    job_id = orchestrator.start_bulk_conversion(_images(make_jpeg(), make_jpeg(), make_jpeg()), params)
    orchestrator.join(job_id, timeout=10)

    assert transcoder.calls == [(params.output_format, 42, params.compression)] * 3


def test_scratch_files_are_removed(make_orchestrator, dirs, webp_params):
    orchestrator = make_orchestrator()
    ok = orchestrator.start_bulk_conversion(_images(make_jpeg(), CORRUPT), webp_params)
    bad = orchestrator.start_bulk_conversion(_images(CORRUPT), webp_params)
    orchestrator.join(ok, timeout=10)
    orchestrator.join(bad, timeout=10)

    _, scratch_root = dirs
    assert list(scratch_root.iterdir()) == []


def test_wedged_image_times_out_as_single_failure(make_orchestrator, dirs, webp_params):
    transcoder = BlockingTranscoder()
    orchestrator = make_orchestrator(transcoder=transcoder, image_timeout=0.3)
    try:
        job_id = orchestrator.start_bulk_conversion(_images(make_jpeg(), b"HANG-forever"), webp_params)
        job = orchestrator.join(job_id, timeout=10)
    finally:
        transcoder.release.set()

    assert job.status == JobStatus.COMPLETED
    assert job.failed_count == 1
    archive_dir, _ = dirs
    with zipfile.ZipFile(archive_dir / job.archive_ref) as zf:
        assert zf.namelist() == ["001_photo0.webp"]


def test_concurrent_jobs_all_reach_terminal_state(make_orchestrator, store, webp_params):
    orchestrator = make_orchestrator(max_workers=2, max_concurrent_jobs=2)
    job_ids = []
    barrier = threading.Barrier(4)

    def submit(payloads):
        barrier.wait()
        job_ids.append(orchestrator.start_bulk_conversion(_images(*payloads), webp_params))

    threads = [
        threading.Thread(target=submit, args=([make_jpeg()] * n,)) for n in (1, 2, 3)
    ] + [threading.Thread(target=submit, args=([CORRUPT],))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    statuses = sorted(orchestrator.join(j, timeout=10).status.value for j in job_ids)
    assert statuses == ["completed", "completed", "completed", "failed"]
    assert sorted(j.file_count for j in store.list_jobs()) == [1, 1, 2, 3]


def test_finished_job_status_is_final(make_orchestrator, store, webp_params):
    orchestrator = make_orchestrator()
    job_id = orchestrator.start_bulk_conversion(_images(make_jpeg()), webp_params)
    orchestrator.join(job_id, timeout=10)

    with pytest.raises(InvalidTransition):
        store.update_status(job_id, JobStatus.FAILED, error_message="late")
    assert store.get(job_id).status == JobStatus.COMPLETED


def test_submission_after_shutdown_fails_job(make_orchestrator, store, webp_params):
    orchestrator = make_orchestrator()
    orchestrator.shutdown(wait=True)

    job_id = orchestrator.start_bulk_conversion(_images(make_jpeg()), webp_params)

    job = store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert "schedule" in job.error_message


def test_job_queued_behind_wedged_worker_still_finishes(make_orchestrator, store, webp_params):
    transcoder = BlockingTranscoder()
    orchestrator = make_orchestrator(transcoder=transcoder, max_workers=1, image_timeout=0.3)
    try:
        wedged = orchestrator.start_bulk_conversion(_images(b"HANG-a"), webp_params)
        assert transcoder.hung.wait(5)
        queued = orchestrator.start_bulk_conversion(_images(make_jpeg()), webp_params)
        wedged_job = orchestrator.join(wedged, timeout=5)
        queued_job = orchestrator.join(queued, timeout=5)
    finally:
        transcoder.release.set()

    assert wedged_job.status == JobStatus.FAILED
    assert "timed out after 0.3s" in wedged_job.error_message
    assert queued_job.status == JobStatus.FAILED
    assert "waiting for a conversion worker" in queued_job.error_message
    assert queued_job.failed_count == 1


def test_batch_deadline_scales_with_worker_rounds(make_orchestrator):
    orchestrator = make_orchestrator(max_workers=2, image_timeout=10)
    before = time.monotonic()
    deadline = orchestrator.batch_deadline(5)

    # ceil(5 / 2) rounds plus one round of slack
    assert before + 40 <= deadline <= time.monotonic() + 40
    assert make_orchestrator(image_timeout=None).batch_deadline(5) == math.inf
