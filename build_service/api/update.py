"""
Self-update API route.

Endpoints:
- GET /update - Start the update script in the background (409 if running)
"""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["update"])


@router.get("/update", response_class=PlainTextResponse)
async def update(request: Request) -> str:
    """Fire-and-forget: the response does not wait for the script."""
    request.app.state.updater.trigger()
    return "Server update initiated"
