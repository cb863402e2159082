"""API route definitions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from nsfwdetect.api.dependencies import (
    get_detector,
    get_inference_pool,
    get_model,
    get_settings,
    verify_api_key,
)
from nsfwdetect.api.schemas import CheckImageResponse, ErrorResponse, HealthResponse
from nsfwdetect.ml.environment import ExecutionMode
from nsfwdetect.ml.errors import DetectionError, NoMatchingLabel, UnsupportedImageFormat
from nsfwdetect.ml.model import DESIGNATED_LABEL

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.post(
    "/check",
    response_model=CheckImageResponse,
    responses={
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Check an image for explicit content",
)
async def check_image(request: Request, file: UploadFile) -> CheckImageResponse | JSONResponse:
    """Return the explicit content confidence for an uploaded image.

    The score is reported as-is; deciding what to block is up to the caller.
    """
    settings = get_settings(request)
    content = await file.read(settings.max_file_size + 1)
    if len(content) > settings.max_file_size:
        return _error(
            status.HTTP_413_CONTENT_TOO_LARGE,
            f"File exceeds the {settings.max_file_size} byte limit",
        )

    detector = get_detector(request)
    pool = get_inference_pool(request)
    try:
        async with pool.slot():
            confidence = await detector.check_async(content)
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference capacity exhausted, retry later")
    except UnsupportedImageFormat as exc:
        return _error(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, str(exc))
    except NoMatchingLabel as exc:
        logger.error("Label contract violated for %s: %s", file.filename, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    except DetectionError as exc:
        logger.warning("Check failed for %s: %s", file.filename, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    return CheckImageResponse(
        confidence=confidence,
        label=DESIGNATED_LABEL,
        execution_mode=detector.mode.value,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings(request)
    detector = get_detector(request)
    pool = get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda" and detector.mode is ExecutionMode.ACCELERATED,
        model=get_model(request).name,
        execution_mode=detector.mode.value,
        reduced_accuracy=detector.mode.reduced_accuracy,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
