import pytest

from converter.errors import InvalidParameters
from converter.jobs.models import CompressionLevel, ConversionParameters, JobStatus, OutputFormat


def test_from_raw_parses_form_values():
    params = ConversionParameters.from_raw("AVIF", "55", "High")

    assert params.output_format == OutputFormat.AVIF
    assert params.quality == 55
    assert params.compression == CompressionLevel.HIGH


def test_from_raw_uses_defaults_for_missing_values():
    params = ConversionParameters.from_raw(None, "", None)

    assert params.output_format == OutputFormat.WEBP
    assert params.quality == 80
    assert params.compression == CompressionLevel.MEDIUM


@pytest.mark.parametrize("quality", [0, 101, 150, -5, "150", "abc", "8.5"])
def test_quality_out_of_range_is_rejected(quality):
    with pytest.raises(InvalidParameters):
        ConversionParameters.from_raw("webp", quality, "medium")


@pytest.mark.parametrize("quality", [1, 100])
def test_quality_bounds_are_inclusive(quality):
    assert ConversionParameters.from_raw("webp", quality, "low").quality == quality


def test_unknown_format_and_compression_are_rejected():
    with pytest.raises(InvalidParameters, match="output format"):
        ConversionParameters.from_raw("gif", 80, "medium")
    with pytest.raises(InvalidParameters, match="compression"):
        ConversionParameters.from_raw("webp", 80, "extreme")


def test_direct_construction_is_validated():
    with pytest.raises(InvalidParameters):
        ConversionParameters(OutputFormat.WEBP, 150, CompressionLevel.LOW)
    with pytest.raises(InvalidParameters):
        ConversionParameters(OutputFormat.WEBP, True, CompressionLevel.LOW)

    params = ConversionParameters("webp", 70, "low")
    assert params.output_format is OutputFormat.WEBP
    assert params.compression is CompressionLevel.LOW


def test_terminal_states():
    assert JobStatus.COMPLETED.is_terminal
    assert JobStatus.FAILED.is_terminal
    assert not JobStatus.PROCESSING.is_terminal
    assert not JobStatus.PENDING.is_terminal
