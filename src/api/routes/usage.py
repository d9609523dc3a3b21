"""Usage endpoint for realtime in-memory counters."""

from typing import Any

from fastapi import APIRouter

from ...usage_metrics import build_usage_snapshot

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("")
async def get_usage() -> dict[str, Any]:
    """Return realtime request and token counters since startup."""
    return build_usage_snapshot()
