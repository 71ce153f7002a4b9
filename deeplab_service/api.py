"""
FastAPI layer exposing DeepLab background removal.

Endpoints:
 - GET /health
 - POST /remove-bg  (returns the composited PNG)
"""

from __future__ import annotations

from functools import lru_cache
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from pydantic import BaseModel, HttpUrl
import requests

from . import config, model_loader
from .bridge import RemovalOptions, TypedBridgeAdapter
from .compositing import OutputMode
from .errors import BackgroundRemovalError

settings = config.get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="DeepLab Background Removal Service", version="0.1.0")

ERROR_STATUS = {
    "invalidInput": 400,
    "cancelled": 409,
    "dimensionMismatch": 500,
    "modelLoad": 503,
    "inference": 503,
    "outputWrite": 500,
}


class RemoveBgRequest(BaseModel):
    imageUrl: HttpUrl
    mode: OutputMode = OutputMode.TRANSPARENT
    backgroundColor: Optional[str] = None  # "#RRGGBB"
    backgroundImageUrl: Optional[HttpUrl] = None
    featherRadius: Optional[int] = None
    threshold: Optional[float] = None


@lru_cache()
def get_remover() -> TypedBridgeAdapter:
    return TypedBridgeAdapter()


def _download_image(url: str) -> bytes:
    resp = requests.get(url, timeout=(5, settings.request_timeout_seconds))
    resp.raise_for_status()
    return resp.content


@app.get("/health")
def health():
    return {"status": "ok", "modelLoaded": model_loader.is_loaded()}


@app.post("/remove-bg")
def remove_bg(body: RemoveBgRequest, remover: TypedBridgeAdapter = Depends(get_remover)):
    try:
        image_bytes = _download_image(str(body.imageUrl))
    except requests.RequestException as exc:
        logger.exception("Failed to download image: %s", exc)
        raise HTTPException(status_code=400, detail="Could not download image") from exc

    bg_bytes: Optional[bytes] = None
    if body.backgroundImageUrl:
        try:
            bg_bytes = _download_image(str(body.backgroundImageUrl))
        except requests.RequestException as exc:
            logger.exception("Failed to download background image: %s", exc)
            raise HTTPException(status_code=400, detail="Could not download background image") from exc

    options = {
        "mode": body.mode,
        "color": body.backgroundColor,
        "replacementImage": bg_bytes,
        "featherRadius": body.featherRadius,
        "threshold": body.threshold,
    }
    try:
        output = remover.remove_background_image(image_bytes, RemovalOptions.parse(options))
    except BackgroundRemovalError as exc:
        status = ERROR_STATUS.get(exc.kind, 500)
        if status >= 500:
            logger.error("Background removal failed: [%s] %s", exc.kind, exc.message)
        raise HTTPException(status_code=status, detail={"kind": exc.kind, "message": exc.message}) from exc

    return Response(
        content=output.to_png_bytes(),
        media_type="image/png",
        headers={"X-Output-Mode": body.mode.value},
    )
