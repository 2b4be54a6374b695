"""Zip archive creation for bulk conversion outputs."""
import logging
import zipfile
from pathlib import Path
from typing import Mapping

from converter.errors import ArchiveCreationError

logger = logging.getLogger("converter.archiver")


class ZipArchiver:
    """Bundles named files into one deflated zip. Entries are streamed from disk, not held in memory."""

    def __init__(self, compresslevel: int = 9):
        self.compresslevel = compresslevel

    def bundle(self, entries: Mapping[str, Path], destination: Path) -> Path:
        """Write entries (arcname -> file path) to destination. A partial archive is removed on failure."""
        destination = Path(destination)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(destination, "w", zipfile.ZIP_DEFLATED, compresslevel=self.compresslevel) as zf:
                for arcname, path in entries.items():
                    zf.write(path, arcname)
        except (OSError, zipfile.BadZipFile, ValueError) as e:
            destination.unlink(missing_ok=True)
            raise ArchiveCreationError(f"Could not create archive {destination.name}: {e}") from e
        logger.info("Created zip %s with %s entries", destination.name, len(entries))
        return destination
