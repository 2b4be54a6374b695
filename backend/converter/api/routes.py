"""API routes for single-image conversion and bulk conversion jobs."""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, Response

from converter.config import (
    ALLOWED_CONTENT_TYPES,
    COMPRESSION_LEVELS,
    DEFAULT_COMPRESSION,
    DEFAULT_OUTPUT_FORMAT,
    DEFAULT_QUALITY,
    MAX_IMAGE_SIZE_BYTES,
    MAX_IMAGES_PER_BATCH,
    OUTPUT_FORMATS,
)
from converter.conversion.transcoder import PillowTranscoder, get_transcoder
from converter.errors import ArchiveNotReady, EmptyBatch, InvalidParameters, JobNotFound, TranscodeError
from converter.jobs.models import ConversionParameters, UploadedImage
from converter.jobs.orchestrator import BulkConversionOrchestrator, get_orchestrator
from converter.jobs.status import StatusQueryService, get_status_service

logger = logging.getLogger("converter.api")
router = APIRouter(tags=["converter"])


def _parse_params(output_format: Optional[str], quality: Optional[str], compression: Optional[str]) -> ConversionParameters:
    try:
        return ConversionParameters.from_raw(output_format, quality, compression)
    except InvalidParameters as e:
        raise HTTPException(400, str(e))


async def _read_image(file: UploadFile) -> bytes:
    """Read an uploaded image, enforcing the declared content type and the size limit."""
    if file.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            400,
            f"Invalid file type for {file.filename}: {file.content_type}. Only JPEG, PNG, WebP, and AVIF images are allowed.",
        )
    max_mb = MAX_IMAGE_SIZE_BYTES // (1024 * 1024)
    chunks: list[bytes] = []
    total = 0
    while chunk := await file.read(1024 * 1024):
        total += len(chunk)
        if total > MAX_IMAGE_SIZE_BYTES:
            raise HTTPException(413, f"File too large: {file.filename} (max {max_mb} MB)")
        chunks.append(chunk)
    return b"".join(chunks)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/formats")
def get_formats():
    """Supported output formats, compression levels, defaults and upload limits."""
    return {
        "output_formats": OUTPUT_FORMATS,
        "compression_levels": COMPRESSION_LEVELS,
        "input_content_types": sorted(ALLOWED_CONTENT_TYPES),
        "defaults": {
            "outputFormat": DEFAULT_OUTPUT_FORMAT,
            "quality": DEFAULT_QUALITY,
            "compression": DEFAULT_COMPRESSION,
        },
        "max_images_per_batch": MAX_IMAGES_PER_BATCH,
        "max_image_size_bytes": MAX_IMAGE_SIZE_BYTES,
    }


@router.post("/convert")
async def convert_image(
    image: Optional[UploadFile] = File(None),
    output_format: Optional[str] = Form(None, alias="outputFormat"),
    quality: Optional[str] = Form(None),
    compression: Optional[str] = Form(None),
    transcoder: PillowTranscoder = Depends(get_transcoder),
):
    """Convert one image synchronously and return it as an attachment."""
    if image is None:
        raise HTTPException(400, "No image file provided")
    params = _parse_params(output_format, quality, compression)
    data = await _read_image(image)
    try:
        out = await asyncio.to_thread(
            transcoder.convert, data, params.output_format, params.quality, params.compression
        )
    except TranscodeError as e:
        logger.warning("Single conversion failed for %s: %s", image.filename, e)
        raise HTTPException(422, f"Image conversion failed: {e}")
    fmt = params.output_format.value
    logger.info("Converted %s to %s (quality=%s, compression=%s)", image.filename, fmt, params.quality, params.compression.value)
    return Response(
        content=out,
        media_type=f"image/{fmt}",
        headers={"Content-Disposition": f'attachment; filename="converted-image.{fmt}"'},
    )


@router.post("/bulk-convert", status_code=202)
async def start_bulk_conversion(
    images: Optional[list[UploadFile]] = File(None),
    output_format: Optional[str] = Form(None, alias="outputFormat"),
    quality: Optional[str] = Form(None),
    compression: Optional[str] = Form(None),
    orchestrator: BulkConversionOrchestrator = Depends(get_orchestrator),
):
    """Admit a batch and return its job id. Poll /bulk-convert/status/{jobId} for progress."""
    params = _parse_params(output_format, quality, compression)
    files = images or []
    if len(files) > MAX_IMAGES_PER_BATCH:
        raise HTTPException(400, f"Max {MAX_IMAGES_PER_BATCH} images per bulk conversion")
    batch = [UploadedImage(data=await _read_image(f), filename=f.filename or "") for f in files]
    try:
        job_id = orchestrator.start_bulk_conversion(batch, params)
    except (EmptyBatch, InvalidParameters) as e:
        raise HTTPException(400, str(e))
    return {"jobId": job_id, "status": "processing", "message": "Bulk conversion started"}


@router.get("/bulk-convert/status/{job_id}")
def bulk_conversion_status(
    job_id: str,
    request: Request,
    status_service: StatusQueryService = Depends(get_status_service),
):
    """Job status; downloadUrl present when completed, errorMessage when failed."""
    try:
        view = status_service.get_status(job_id)
    except JobNotFound:
        raise HTTPException(404, "Job not found")
    body = {"jobId": view.job_id, "status": view.status.value}
    if view.download_ref:
        body["downloadUrl"] = str(request.url_for("download_archive", job_id=view.job_id))
    if view.error_message:
        body["errorMessage"] = view.error_message
    if view.failed_count is not None:
        body["failedCount"] = view.failed_count
    return body


@router.get("/bulk-convert/download/{job_id}", name="download_archive")
def download_archive(
    job_id: str,
    status_service: StatusQueryService = Depends(get_status_service),
):
    """Download the zip of a completed job."""
    try:
        path = status_service.archive_path(job_id)
    except JobNotFound:
        raise HTTPException(404, "Job not found")
    except ArchiveNotReady as e:
        raise HTTPException(404, str(e))
    return FileResponse(path, media_type="application/zip", filename=f"converted-{job_id}.zip")
