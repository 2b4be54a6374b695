"""Per-job scratch space for transient conversion outputs."""
import logging
import re
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("converter.workspace")


def sanitize_stem(name: str) -> str:
    """Safe file stem for archive entries (no path separators, never empty)."""
    s = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._") or "image"
    return s[:64]


class Scratch:
    def __init__(self, root: Path):
        self.root = root

    def write(self, name: str, data: bytes) -> Path:
        path = self.root / name
        path.write_bytes(data)
        return path


@contextmanager
def scratch_dir(base: Path, job_id: str) -> Iterator[Scratch]:
    """Create base/job_id for the duration of the block; always removed afterwards."""
    root = Path(base) / job_id
    root.mkdir(parents=True, exist_ok=True)
    try:
        yield Scratch(root)
    finally:
        shutil.rmtree(root, ignore_errors=True)
        logger.debug("Removed scratch dir %s", root)
