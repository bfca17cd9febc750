"""FastAPI routes for server-side persona generation."""

from typing import Any, Optional

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, ConfigDict, Field

from controllers.persona_controller import generate_persona, illustrate_persona
from services.persona_generator import GenerationRequest, ProviderConnection

router = APIRouter(prefix="/api/personas", tags=["personas"])


class GeneratePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    model: str
    concept: str
    subject_name: str = Field("", alias="subjectName")
    point_of_view: str = Field("first", alias="pointOfView")
    knowledge_base: Optional[Any] = Field(None, alias="auxiliaryKnowledgeBase")
    reference_description: str = Field("", alias="referenceDescription")
    reference_image: str = Field("", alias="referenceImage")
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


class IllustratePayload(BaseModel):
    # Unknown fields (n, response_format, quality...) go to the image provider untouched.
    model_config = ConfigDict(extra="allow")

    model: str
    prompt: Optional[str] = None
    size: Optional[str] = None


@router.post("/generate")
async def generate_route(
    request: Request,
    payload: GeneratePayload,
    x_api_key: Optional[str] = Header(None),
    x_api_url: Optional[str] = Header(None),
):
    """Generate, parse and store a persona in one call."""
    fields = payload.model_dump()
    connection = ProviderConnection(
        target_base_address=x_api_url,
        credential=x_api_key,
        model=fields.pop("model"),
    )
    return await generate_persona(request, GenerationRequest(**fields), connection)


@router.post("/{result_id}/illustration")
async def illustrate_route(
    request: Request,
    result_id: int,
    payload: IllustratePayload,
    x_api_key: Optional[str] = Header(None),
    x_api_url: Optional[str] = Header(None),
):
    """Generate a new illustration for a stored persona and swap it in."""
    connection = ProviderConnection(target_base_address=x_api_url, credential=x_api_key, model=payload.model)
    extra = dict(payload.model_extra or {})
    return await illustrate_persona(request, result_id, connection, payload.prompt, payload.size, extra)
