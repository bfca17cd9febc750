"""Stateless relay that forwards generation calls to an upstream provider.

The gateway authenticates on the caller's behalf, trying each credential
strategy in order and moving on only after an authentication rejection. It
relays streaming bodies chunk by chunk and buffers everything else, and it
can re-serve arbitrary image URLs for callers that cannot fetch them directly.
"""

from __future__ import annotations

import json
import logging
import mimetypes
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

import httpx

from services.relay.credentials import DEFAULT_STRATEGIES, CredentialStrategy
from services.relay.errors import CallerConfigurationError, TransportFailure, UpstreamRejection

LOGGER = logging.getLogger(__name__)

DEFAULT_IMAGE_TYPE = "image/jpeg"


@dataclass(frozen=True)
class Capability:
    """An upstream endpoint family reachable through the relay.

    Attributes:
        name: Short identifier used in logs.
        path_suffix: Appended to the target address unless already present.
        title: Human name used in configuration hints ("Text", "Image").
        error_prefix: Prefix for user-facing error messages.
    """

    name: str
    path_suffix: str
    title: str
    error_prefix: str = ""


TEXT_COMPLETIONS = Capability("text", "/chat/completions", "Text")
IMAGE_GENERATIONS = Capability("image", "/images/generations", "Image", error_prefix="Image ")


@dataclass
class ForwardRequest:
    """One call to forward: where, with which credential, and what body."""

    target_base_address: Optional[str]
    credential: Optional[str]
    payload: Dict[str, Any]
    capability: Capability = TEXT_COMPLETIONS
    stream: bool = False


@dataclass
class BufferedRelay:
    """A fully read upstream response, forwarded unchanged."""

    status_code: int
    content: bytes
    media_type: str = "application/json"

    def json(self) -> Any:
        return json.loads(self.content)


@dataclass
class StreamingRelay:
    """An open upstream response relayed chunk by chunk.

    The upstream response is closed exactly once: when the body is exhausted,
    when iteration fails, or when the consumer stops iterating early (a
    downstream disconnect closes the generator).
    """

    response: httpx.Response
    media_type: str = "text/event-stream"
    headers: Dict[str, str] = field(default_factory=dict)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield upstream chunks as they arrive.

        An interrupted upstream body re-raises its `httpx.HTTPError` so the
        downstream side is aborted rather than ended as if complete.
        """
        try:
            async for chunk in self.response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            LOGGER.error("Upstream stream interrupted: %s", exc)
            raise
        finally:
            await self.response.aclose()

    async def read(self) -> bytes:
        """Collect the remaining body into memory.

        Raises:
            TransportFailure: The upstream body was interrupted.
        """
        try:
            chunks = [chunk async for chunk in self.iter_bytes()]
        except httpx.HTTPError as exc:
            raise TransportFailure("Upstream response interrupted", str(exc)) from exc
        return b"".join(chunks)

    async def aclose(self) -> None:
        await self.response.aclose()


RelayResult = Union[BufferedRelay, StreamingRelay]


def resolve_target_url(base_address: str, path_suffix: str) -> str:
    """Append `path_suffix` to `base_address` unless it already ends with it.

    Only a single trailing slash on the base address is normalized away.
    """
    if base_address.endswith(path_suffix):
        return base_address
    if base_address.endswith("/"):
        base_address = base_address[:-1]
    return f"{base_address}{path_suffix}"


class RelayGateway:
    """Forward provider calls on behalf of a caller.

    Args:
        client: Shared HTTP client used for every upstream call.
        aggregator_markers: Substrings identifying a multi-provider aggregator.
        referer: `HTTP-Referer` value attached for aggregators.
        app_title: `X-Title` value attached for aggregators.
        strategies: Ordered credential strategies.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        aggregator_markers: Iterable[str] = ("openrouter.ai",),
        referer: str = "http://localhost:2427",
        app_title: str = "SillyTavern Character Generator",
        strategies: Sequence[CredentialStrategy] = DEFAULT_STRATEGIES,
    ) -> None:
        if not strategies:
            raise ValueError("At least one credential strategy is required.")
        self.client = client
        self.aggregator_markers: Tuple[str, ...] = tuple(aggregator_markers)
        self.referer = referer
        self.app_title = app_title
        self.strategies: Tuple[CredentialStrategy, ...] = tuple(strategies)

    def is_aggregator(self, target_base_address: str) -> bool:
        return any(marker in target_base_address for marker in self.aggregator_markers)

    def aggregator_headers(self, target_base_address: str) -> Dict[str, str]:
        if not self.is_aggregator(target_base_address):
            return {}
        return {"HTTP-Referer": self.referer, "X-Title": self.app_title}

    @staticmethod
    def validate(request: ForwardRequest) -> None:
        capability = request.capability
        if not request.credential:
            LOGGER.error("Missing API key in request headers")
            raise CallerConfigurationError(
                f"{capability.error_prefix}API key required",
                f"Please configure your {capability.title} API key in the settings",
                status_code=401,
            )
        if not request.target_base_address:
            LOGGER.error("Missing API URL in request headers")
            raise CallerConfigurationError(
                f"{capability.error_prefix}API URL required",
                f"Please configure your {capability.title} API Base URL in the settings",
                status_code=400,
            )

    async def forward(self, request: ForwardRequest) -> RelayResult:
        """Forward `request` upstream.

        Returns:
            A `StreamingRelay` when `request.stream` is set, else a `BufferedRelay`.

        Raises:
            CallerConfigurationError: Credential or target address missing.
            UpstreamRejection: Non-success status after all credential strategies.
            TransportFailure: No response from the provider.
        """
        self.validate(request)
        capability = request.capability
        url = resolve_target_url(request.target_base_address, capability.path_suffix)
        base_headers = {
            "Content-Type": "application/json",
            **self.aggregator_headers(request.target_base_address),
        }

        response = await self._send_with_fallback(url, request, base_headers)

        if not response.is_success:
            try:
                await response.aread()
                error_text = response.text
            finally:
                await response.aclose()
            LOGGER.error("%s API error: %s %s", capability.title, response.status_code, error_text)
            raise UpstreamRejection(
                response.status_code,
                f"{capability.error_prefix}API Error: {response.reason_phrase}",
                error_text,
            )

        if request.stream:
            return StreamingRelay(
                response,
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            )

        try:
            content = await response.aread()
        except httpx.HTTPError as exc:
            LOGGER.exception("Failed reading %s response body", capability.name)
            raise TransportFailure(self._internal_message(capability), str(exc)) from exc
        finally:
            await response.aclose()
        return BufferedRelay(status_code=response.status_code, content=content)

    async def _send_with_fallback(
        self,
        url: str,
        request: ForwardRequest,
        base_headers: Dict[str, str],
    ) -> httpx.Response:
        """Try each credential strategy in order; only a 401 advances to the next."""
        last_index = len(self.strategies) - 1
        for index, strategy in enumerate(self.strategies):
            outbound = self.client.build_request(
                "POST",
                url,
                json=request.payload,
                headers={**base_headers, **strategy.headers(request.credential)},
            )
            try:
                response = await self.client.send(outbound, stream=True)
            except httpx.RequestError as exc:
                LOGGER.exception("Proxy error calling %s", url)
                raise TransportFailure(self._internal_message(request.capability), str(exc)) from exc

            if response.status_code == 401 and index < last_index:
                LOGGER.info(
                    "%s auth failed for %s API, trying %s...",
                    strategy.name,
                    request.capability.title,
                    self.strategies[index + 1].name,
                )
                await response.aclose()
                continue
            return response
        raise AssertionError("credential strategy loop exited without a response")

    @staticmethod
    def _internal_message(capability: Capability) -> str:
        if capability.name == "text":
            return "Internal server error in proxy"
        return "Internal server error in image proxy"

    async def fetch_image(self, url: Optional[str]) -> StreamingRelay:
        """Open an arbitrary image URL for re-serving with permissive CORS headers."""
        if not url:
            raise CallerConfigurationError(
                "Image URL required",
                "Please provide a URL parameter with the image URL",
                status_code=400,
            )

        LOGGER.info("Proxying image request for: %s", url)
        try:
            outbound = self.client.build_request("GET", url)
        except httpx.InvalidURL as exc:
            raise CallerConfigurationError("Invalid image URL", str(exc), status_code=400) from exc

        try:
            response = await self.client.send(outbound, stream=True)
        except httpx.RequestError as exc:
            LOGGER.exception("Image proxy error for %s", url)
            raise TransportFailure("Internal server error in image proxy", str(exc)) from exc

        if not response.is_success:
            await response.aclose()
            LOGGER.error("Failed to fetch image: %s %s", response.status_code, response.reason_phrase)
            raise UpstreamRejection(
                response.status_code,
                f"Failed to fetch image: {response.reason_phrase}",
                f"Image URL: {url}",
            )

        return StreamingRelay(
            response,
            media_type=infer_image_type(url, response.headers.get("content-type")),
            headers={
                "Access-Control-Allow-Origin": "*",
                "Cache-Control": "public, max-age=31536000",
            },
        )


def infer_image_type(url: str, declared: Optional[str]) -> str:
    """Prefer the upstream content type, then the URL extension, then JPEG."""
    if declared:
        return declared
    guessed, _ = mimetypes.guess_type(urlsplit(url).path)
    if guessed and guessed.startswith("image/"):
        return guessed
    return DEFAULT_IMAGE_TYPE
