from .archiver import ZipArchiver
from .transcoder import PillowTranscoder

__all__ = ["PillowTranscoder", "ZipArchiver"]
