"""Health check, settings and story API connection check endpoints."""

import httpx
from fastapi import APIRouter

from backend import config, services

from .models import CheckConnectionBody

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.post("/check-connection")
async def check_connection(body: CheckConnectionBody):
    """Quick health check against the story API (configured URL by default)."""
    conn = config.get_config()["story_api"]
    base = (body.url or conn["url"]).rstrip("/")
    api_key = body.api_key or conn["api_key"]
    headers: dict[str, str] = {}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            resp = await client.get(f"{base}/api/health", headers=headers)
            resp.raise_for_status()
        return {"ok": True}
    except httpx.HTTPError:
        return {"ok": False}


@router.get("/settings")
async def get_settings():
    """Get global app settings."""
    return config.get_config()


@router.patch("/settings")
async def update_settings(body: dict):
    """Update global app settings (partial merge)."""
    updated = config.update_config(body)
    services.apply_config(updated)
    return updated
