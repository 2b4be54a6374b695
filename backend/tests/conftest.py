import io
import os
import tempfile
import threading

# Keep test runs out of the source tree; must happen before converter.config is imported
_TMP_ROOT = tempfile.mkdtemp(prefix="converter-tests-")
os.environ.setdefault("SCRATCH_DIR", os.path.join(_TMP_ROOT, "scratch"))
os.environ.setdefault("ARCHIVE_DIR", os.path.join(_TMP_ROOT, "archives"))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JOB_STORE", "memory")

import pytest
from PIL import Image

from converter.errors import TranscodeError
from converter.jobs.orchestrator import BulkConversionOrchestrator
from converter.jobs.store import InMemoryJobStore


def make_jpeg(color=(200, 30, 30), size=(32, 24)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()


CORRUPT = b"definitely not an image"


class StubTranscoder:
    """Echoes the input tagged with the format; fails on CORRUPT input."""

    def __init__(self) -> None:
        self.calls = []
        self._lock = threading.Lock()

    def convert(self, data, output_format, quality, compression):
        with self._lock:
            self.calls.append((output_format, quality, compression))
        if data == CORRUPT:
            raise TranscodeError("Unreadable image")
        return b"converted:" + output_format.value.encode() + b":" + data[:8]


class FailingTranscoder:
    def convert(self, data, output_format, quality, compression):
        raise TranscodeError("encoder unavailable")


class BlockingTranscoder(StubTranscoder):
    """Hangs on inputs starting with b"HANG" until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()
        self.hung = threading.Event()

    def convert(self, data, output_format, quality, compression):
        if data.startswith(b"HANG"):
            self.hung.set()
            self.release.wait(10)
        return super().convert(data, output_format, quality, compression)


class BrokenArchiver:
    def bundle(self, entries, destination):
        raise OSError("disk full")


@pytest.fixture
def jpeg_bytes():
    return make_jpeg()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def dirs(tmp_path):
    archive_dir = tmp_path / "archives"
    scratch_root = tmp_path / "scratch"
    archive_dir.mkdir()
    scratch_root.mkdir()
    return archive_dir, scratch_root


@pytest.fixture
def make_orchestrator(store, dirs):
    created = []

    def factory(transcoder=None, archiver=None, **kwargs):
        archive_dir, scratch_root = dirs
        orchestrator = BulkConversionOrchestrator(
            store,
            transcoder if transcoder is not None else StubTranscoder(),
            archiver,
            archive_dir=archive_dir,
            scratch_root=scratch_root,
            max_workers=kwargs.pop("max_workers", 2),
            max_concurrent_jobs=kwargs.pop("max_concurrent_jobs", 2),
            image_timeout=kwargs.pop("image_timeout", 5),
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.shutdown(wait=False)
