"""Pillow-backed image transcoder (bytes in, WebP/AVIF bytes out)."""
import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError

from converter.errors import TranscodeError
from converter.jobs.models import CompressionLevel, OutputFormat

logger = logging.getLogger("converter.transcoder")

# Encoder effort per compression level. WebP `method`: 0 fast .. 6 smallest.
# AVIF `speed`: 0 slowest/smallest .. 10 fastest.
WEBP_METHOD = {
    CompressionLevel.LOW: 1,
    CompressionLevel.MEDIUM: 4,
    CompressionLevel.HIGH: 6,
}
AVIF_SPEED = {
    CompressionLevel.LOW: 8,
    CompressionLevel.MEDIUM: 6,
    CompressionLevel.HIGH: 3,
}


def save_options(output_format: OutputFormat, quality: int, compression: CompressionLevel) -> dict:
    if output_format == OutputFormat.WEBP:
        return {"format": "WEBP", "quality": quality, "method": WEBP_METHOD[compression]}
    return {"format": "AVIF", "quality": quality, "speed": AVIF_SPEED[compression]}


class PillowTranscoder:
    """Converts raw image bytes to the target format. Raises TranscodeError on any decode/encode failure."""

    def convert(
        self,
        data: bytes,
        output_format: OutputFormat,
        quality: int,
        compression: CompressionLevel,
    ) -> bytes:
        output_format = OutputFormat(output_format)
        compression = CompressionLevel(compression)
        save_kw = save_options(output_format, quality, compression)
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                if img.mode not in ("RGB", "RGBA"):
                    has_alpha = img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info)
                    work = img.convert("RGBA" if has_alpha else "RGB")
                else:
                    work = img
                buf = io.BytesIO()
                work.save(buf, **save_kw)
        except (UnidentifiedImageError, Image.DecompressionBombError) as e:
            raise TranscodeError(f"Unreadable image: {e}") from e
        except (OSError, ValueError, KeyError) as e:
            # KeyError: Pillow built without an encoder for the format
            raise TranscodeError(f"Could not encode {output_format.value}: {e}") from e
        out = buf.getvalue()
        logger.debug("Converted %s bytes -> %s bytes (%s, q=%s)", len(data), len(out), output_format.value, quality)
        return out


# Singleton
_transcoder: Optional[PillowTranscoder] = None


def get_transcoder() -> PillowTranscoder:
    global _transcoder
    if _transcoder is None:
        _transcoder = PillowTranscoder()
    return _transcoder
