"""Controllers translating relay calls into FastAPI responses."""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from services.relay.gateway import (
    IMAGE_GENERATIONS,
    TEXT_COMPLETIONS,
    ForwardRequest,
    RelayGateway,
    RelayResult,
    StreamingRelay,
)

LOGGER = logging.getLogger(__name__)


def _get_gateway(request: Request) -> RelayGateway:
    """Retrieve the shared relay gateway from the app state."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=500, detail="Relay gateway not initialized.")
    return gateway


def _to_response(result: RelayResult) -> Response:
    """Stream or return the upstream body unchanged.

    Streaming bodies close the upstream response once the downstream side is
    done, including when the client disconnects early.
    """
    if isinstance(result, StreamingRelay):
        return StreamingResponse(
            result.iter_bytes(),
            media_type=result.media_type,
            headers=result.headers,
            background=BackgroundTask(result.aclose),
        )
    return Response(content=result.content, status_code=result.status_code, media_type=result.media_type)


def build_chat_payload(body: Dict[str, Any], default_max_tokens: int, default_temperature: float) -> Dict[str, Any]:
    """Return the outbound chat completion body with defaults applied."""
    max_tokens = body.get("max_tokens")
    temperature = body.get("temperature")
    return {
        "model": body.get("model"),
        "messages": body.get("messages"),
        "max_tokens": max_tokens if max_tokens is not None else default_max_tokens,
        "temperature": temperature if temperature is not None else default_temperature,
        "stream": bool(body.get("stream")),
    }


async def relay_chat_completion(
    request: Request,
    body: Dict[str, Any],
    api_key: Optional[str],
    api_url: Optional[str],
) -> Response:
    """Forward a chat completion request to the caller's provider.

    Args:
        request: FastAPI Request (used to access app.state).
        body: Parsed chat completion body.
        api_key: Value of the `x-api-key` header.
        api_url: Value of the `x-api-url` header.

    Returns:
        An event-stream passthrough when `stream` is set, else the provider's
        JSON body unchanged.
    """
    gateway = _get_gateway(request)
    config = request.app.state.config
    payload = build_chat_payload(body, config.default_max_tokens, config.default_temperature)

    if api_key and api_url:
        LOGGER.info(
            "Proxying text request to: %s (model=%s, messages=%d)",
            api_url,
            payload["model"],
            len(payload["messages"] or []),
        )

    result = await gateway.forward(
        ForwardRequest(
            target_base_address=api_url,
            credential=api_key,
            payload=payload,
            capability=TEXT_COMPLETIONS,
            stream=payload["stream"],
        )
    )
    return _to_response(result)


async def relay_image_generation(
    request: Request,
    body: Dict[str, Any],
    api_key: Optional[str],
    api_url: Optional[str],
) -> Response:
    """Forward an image generation request, passing every caller field through."""
    gateway = _get_gateway(request)
    payload = dict(body)

    if api_key and api_url:
        LOGGER.info(
            "Proxying image request to: %s (model=%s, prompt length=%d)",
            api_url,
            payload.get("model"),
            len(str(payload.get("prompt") or "")),
        )

    result = await gateway.forward(
        ForwardRequest(
            target_base_address=api_url,
            credential=api_key,
            payload=payload,
            capability=IMAGE_GENERATIONS,
        )
    )
    return _to_response(result)


async def proxy_image(request: Request, url: Optional[str]) -> Response:
    """Re-serve the bytes of an arbitrary image URL with permissive CORS headers."""
    gateway = _get_gateway(request)
    relay = await gateway.fetch_image(url)
    return _to_response(relay)
