"""Persona generation workflow on top of the relay, parser and libraries.

Drives one generation end to end: save the request snapshot, stream the
completion through the relay, parse the transcript and store the result.
Storage problems are reported as warnings and never abort a generation;
only configuration and upstream failures do.
"""

import asyncio
import base64
import binascii
import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx
from openai.types import ImagesResponse
from openai.types.chat import ChatCompletion, ChatCompletionChunk

from dal.persona_dal import ResultRecordDAL, StorageError
from models.persona_records import (
    POINTS_OF_VIEW,
    RequestSnapshot,
    ResultRecord,
    SaveOutcome,
    StructuredRecord,
)
from services.persona_library import RequestLibrary
from services.persona_parser import SectionParser
from services.persona_prompts import (
    effective_concept,
    illustration_prompt,
    persona_system_prompt,
    persona_user_prompt,
)
from services.relay.errors import TransportFailure
from services.relay.gateway import (
    IMAGE_GENERATIONS,
    TEXT_COMPLETIONS,
    BufferedRelay,
    ForwardRequest,
    RelayGateway,
    RelayResult,
)
from services.thumbnail_generator import ThumbnailGenerator

LOGGER = logging.getLogger(__name__)

TokenCallback = Callable[[str, str], None]


class GenerationInputError(ValueError):
    """The generation request failed validation; `errors` lists every problem."""

    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class IllustrationError(RuntimeError):
    """The image provider answered successfully but returned no usable image."""


@dataclass
class ProviderConnection:
    """Where and how to reach the upstream provider for one call."""

    target_base_address: Optional[str]
    credential: Optional[str]
    model: str = ""


@dataclass
class GenerationRequest:
    concept: str
    subject_name: str = ""
    point_of_view: str = "first"
    knowledge_base: Optional[Any] = None
    reference_description: str = ""
    reference_image: str = ""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@dataclass
class GenerationOutcome:
    record: StructuredRecord
    transcript: str
    request_save: SaveOutcome
    result_id: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resultId": self.result_id,
            "structuredRecord": self.record.to_dict(),
            "transcript": self.transcript,
            "requestSave": self.request_save.to_dict(),
            "warnings": list(self.warnings),
        }


@dataclass
class IllustrationOutcome:
    result: ResultRecord
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {**self.result.to_dict(), "warnings": list(self.warnings)}


def validate_generation_request(request: GenerationRequest) -> List[str]:
    """Return the list of validation errors (empty when the request is valid)."""
    errors: List[str] = []
    concept = (request.concept or "").strip()
    if not concept:
        errors.append("Character concept is required")
    elif len(concept) < 10:
        errors.append("Character concept should be at least 10 characters")
    elif len(concept) > 1000:
        errors.append("Character concept should be less than 1000 characters")

    if request.subject_name and len(request.subject_name.strip()) > 50:
        errors.append("Character name should be less than 50 characters")

    if request.point_of_view not in POINTS_OF_VIEW:
        errors.append(f"Point of view must be one of: {', '.join(POINTS_OF_VIEW)}")
    return errors


def _chunk_text(chunk: Any) -> str:
    parts = []
    for choice in getattr(chunk, "choices", None) or []:
        delta = getattr(choice, "delta", None)
        content = getattr(delta, "content", None) if delta is not None else None
        if content:
            parts.append(content)
    return "".join(parts)


def decode_event_line(line: str) -> Optional[str]:
    """Return the content delta carried by one server-sent-event line, if any."""
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None
    try:
        payload = json.loads(data)
    except ValueError:
        LOGGER.debug("Skipping non-JSON stream frame: %r", data[:200])
        return None
    if not isinstance(payload, dict):
        return None
    return _chunk_text(ChatCompletionChunk.model_construct(**payload))


def completion_text(payload: Any) -> str:
    """Return the assistant text of a buffered chat completion."""
    if not isinstance(payload, dict):
        return ""
    completion = ChatCompletion.model_construct(**payload)
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    return getattr(message, "content", None) or ""


class PersonaGenerator:
    """Orchestrate persona generation and illustration.

    All collaborators are injected; the generator keeps no per-call state and
    may serve concurrent requests.
    """

    def __init__(
        self,
        gateway: RelayGateway,
        parser: SectionParser,
        requests: RequestLibrary,
        results: ResultRecordDAL,
        thumbnails: Optional[ThumbnailGenerator] = None,
        default_max_tokens: int = 1000,
        default_temperature: float = 0.7,
    ) -> None:
        self.gateway = gateway
        self.parser = parser
        self.requests = requests
        self.results = results
        self.thumbnails = thumbnails or ThumbnailGenerator()
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature

    async def generate(
        self,
        request: GenerationRequest,
        connection: ProviderConnection,
        on_token: Optional[TokenCallback] = None,
    ) -> GenerationOutcome:
        """Generate, parse and store one persona.

        Raises:
            GenerationInputError: The request is invalid (nothing is saved or sent).
            RelayError: Configuration, upstream or transport failure.
        """
        errors = validate_generation_request(request)
        if errors:
            raise GenerationInputError(errors)

        snapshot = RequestSnapshot(
            concept=request.concept.strip(),
            subject_name=(request.subject_name or "").strip(),
            point_of_view=request.point_of_view,
            knowledge_base=request.knowledge_base,
            reference_description=(request.reference_description or "").strip(),
            reference_image=request.reference_image or "",
        )
        payload = {
            "model": connection.model,
            "messages": [
                {"role": "system", "content": persona_system_prompt()},
                {
                    "role": "user",
                    "content": persona_user_prompt(
                        effective_concept(snapshot.concept, snapshot.reference_description),
                        snapshot.subject_name,
                        snapshot.point_of_view,
                        snapshot.knowledge_base,
                    ),
                },
            ],
            "max_tokens": request.max_tokens if request.max_tokens is not None else self.default_max_tokens,
            "temperature": request.temperature if request.temperature is not None else self.default_temperature,
            "stream": True,
        }
        forward_request = ForwardRequest(
            target_base_address=connection.target_base_address,
            credential=connection.credential,
            payload=payload,
            capability=TEXT_COMPLETIONS,
            stream=True,
        )
        # Configuration errors surface before anything is stored or sent.
        self.gateway.validate(forward_request)

        request_save = await self.requests.save(snapshot)
        warnings = list(request_save.warnings)
        if not request_save.saved:
            warnings.append("Prompt could not be saved to local library.")

        relayed = await self.gateway.forward(forward_request)
        transcript = await self.collect_transcript(relayed, on_token)

        record = self.parser.parse(transcript)
        result = ResultRecord(subject_name=record.name or snapshot.subject_name, record=record)
        result_id: Optional[int] = None
        try:
            result_id = await self.results.put(result)
        except StorageError as exc:
            LOGGER.error("Failed to save card: %s", exc)
            warnings.append("Generated persona could not be saved to the library.")

        return GenerationOutcome(
            record=record,
            transcript=transcript,
            request_save=request_save,
            result_id=result_id,
            warnings=warnings,
        )

    async def collect_transcript(self, relayed: RelayResult, on_token: Optional[TokenCallback] = None) -> str:
        """Accumulate the assistant text from a streamed or buffered completion."""
        if isinstance(relayed, BufferedRelay):
            text = completion_text(relayed.json())
            if on_token and text:
                on_token(text, text)
            return text

        content_type = relayed.response.headers.get("content-type", "")
        if "text/event-stream" not in content_type:
            # Provider ignored `stream`; the body is a plain completion.
            body = await relayed.read()
            text = completion_text(json.loads(body)) if body else ""
            if on_token and text:
                on_token(text, text)
            return text

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        parts: List[str] = []

        def _consume(line: str) -> None:
            delta = decode_event_line(line.strip())
            if delta:
                parts.append(delta)
                if on_token:
                    on_token(delta, "".join(parts))

        try:
            async for chunk in relayed.iter_bytes():
                pending += decoder.decode(chunk)
                while "\n" in pending:
                    line, pending = pending.split("\n", 1)
                    _consume(line)
        except httpx.HTTPError as exc:
            # A truncated transcript is never parsed or stored.
            raise TransportFailure("Upstream stream interrupted", str(exc)) from exc
        pending += decoder.decode(b"", final=True)
        if pending:
            _consume(pending)
        return "".join(parts)

    async def illustrate(
        self,
        result_id: int,
        connection: ProviderConnection,
        prompt: Optional[str] = None,
        size: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> IllustrationOutcome:
        """Generate an illustration for a stored persona and swap it in.

        Raises:
            LookupError: No result is stored under `result_id`.
            IllustrationError: The provider returned no image.
            RelayError: Configuration, upstream or transport failure.
        """
        result = await self.results.get(result_id)
        if result is None:
            raise LookupError(f"Result {result_id} not found")

        payload: Dict[str, Any] = dict(extra or {})
        payload.setdefault("model", connection.model)
        payload.setdefault(
            "prompt", prompt or illustration_prompt(result.record.name, result.record.description)
        )
        if size and not payload.get("size"):
            payload["size"] = size

        relayed = await self.gateway.forward(
            ForwardRequest(
                target_base_address=connection.target_base_address,
                credential=connection.credential,
                payload=payload,
                capability=IMAGE_GENERATIONS,
            )
        )
        data, media_type = await self._image_bytes(relayed)

        warnings: List[str] = []
        thumbnail: Optional[bytes] = None
        try:
            # Pillow work is blocking -> run in thread
            thumbnail = await asyncio.to_thread(self.thumbnails.create_thumbnail, data)
        except ValueError as exc:
            LOGGER.warning("Skipping thumbnail for result %s: %s", result_id, exc)

        result.illustration = data
        result.illustration_type = media_type
        result.illustration_thumbnail = thumbnail
        try:
            await self.results.put(result)
        except StorageError as exc:
            LOGGER.error("Failed to save illustration for result %s: %s", result_id, exc)
            warnings.append("Illustration could not be saved to the library.")
        return IllustrationOutcome(result=result, warnings=warnings)

    async def _image_bytes(self, relayed: RelayResult) -> tuple[bytes, str]:
        if not isinstance(relayed, BufferedRelay):
            raise IllustrationError("Image API returned a streaming response")
        try:
            body = relayed.json()
        except ValueError as exc:
            raise IllustrationError("Image API returned invalid JSON") from exc

        images = ImagesResponse.model_construct(**body) if isinstance(body, dict) else None
        entries = (getattr(images, "data", None) or []) if images is not None else []
        if not entries:
            raise IllustrationError("Image API returned no images")

        first = entries[0]
        b64_json = getattr(first, "b64_json", None)
        if b64_json:
            try:
                return base64.b64decode(b64_json), "image/png"
            except (binascii.Error, ValueError) as exc:
                raise IllustrationError("Image API returned invalid base64 data") from exc

        url = getattr(first, "url", None)
        if url:
            fetched = await self.gateway.fetch_image(url)
            return await fetched.read(), fetched.media_type

        raise IllustrationError("Image API returned neither image data nor a URL")
