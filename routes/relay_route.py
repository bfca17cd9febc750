"""FastAPI routes for the provider relay."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Header, Query, Request
from pydantic import BaseModel

from controllers.relay_controller import proxy_image, relay_chat_completion, relay_image_generation

router = APIRouter(prefix="/api", tags=["relay"])


class ChatCompletionPayload(BaseModel):
    model: Optional[str] = None
    messages: List[Dict[str, Any]] = []
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    stream: Optional[bool] = False


@router.post("/text/chat/completions")
async def post_chat_completion(
    request: Request,
    payload: ChatCompletionPayload,
    x_api_key: Optional[str] = Header(None),
    x_api_url: Optional[str] = Header(None),
):
    """Relay a chat completion call, streamed or buffered."""
    return await relay_chat_completion(request, payload.model_dump(), x_api_key, x_api_url)


@router.post("/image/generations")
async def post_image_generation(
    request: Request,
    payload: Optional[Dict[str, Any]] = Body(None),
    x_api_key: Optional[str] = Header(None),
    x_api_url: Optional[str] = Header(None),
):
    """Relay an image generation call; the caller body is forwarded as-is."""
    return await relay_image_generation(request, payload or {}, x_api_key, x_api_url)


@router.get("/proxy-image")
async def get_proxy_image(request: Request, url: Optional[str] = Query(None)):
    """Fetch an arbitrary image for callers blocked by cross-origin rules."""
    return await proxy_image(request, url)
