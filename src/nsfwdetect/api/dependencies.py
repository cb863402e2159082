"""Request dependencies: app state accessors and API key authentication."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from nsfwdetect.config import Settings
    from nsfwdetect.ml.detector import NsfwDetector
    from nsfwdetect.ml.inference import InferencePool
    from nsfwdetect.ml.model import NsfwModel

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_detector(request: Request) -> NsfwDetector:
    detector: NsfwDetector = request.app.state.detector
    return detector


def get_model(request: Request) -> NsfwModel:
    model: NsfwModel = request.app.state.model
    return model


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject requests without the configured Bearer token.

    Authentication is disabled when NSFWDETECT_API_KEY is unset.
    """
    expected = get_settings(request).api_key
    if expected is None:
        return

    supplied = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
