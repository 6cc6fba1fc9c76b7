"""Health check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from stepiq.core.config import KMSConfig

router = APIRouter(tags=["health"])


def _kms_configured(config: KMSConfig) -> bool:
    return bool((config.vault_addr and config.vault_token) or config.master_key)


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def ready(request: Request) -> JSONResponse:
    settings = request.app.state.settings
    checks = {
        "redis": request.app.state.lock.ping(),
        "kms": _kms_configured(settings.kms),
    }
    ok = all(checks.values())
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"status": "ready" if ok else "not_ready", "checks": checks},
    )
