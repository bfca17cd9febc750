"""FastAPI routes for the prompt library and the card library."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from controllers.library_controller import (
    delete_request_snapshot,
    delete_result,
    export_card,
    get_illustration,
    get_request_snapshot,
    get_result,
    get_thumbnail,
    list_request_snapshots,
    list_results,
    save_request_snapshot,
    save_result,
    storage_http_error,
    update_result,
)
from dal.persona_dal import StorageError
from models.persona_records import RequestSnapshot, StructuredRecord

router = APIRouter(prefix="/api/library", tags=["library"])


class RequestSnapshotPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    concept: str
    subject_name: str = Field("", alias="subjectName")
    point_of_view: str = Field("first", alias="pointOfView")
    knowledge_base: Optional[Any] = Field(None, alias="auxiliaryKnowledgeBase")
    reference_description: str = Field("", alias="referenceDescription")
    reference_image: str = Field("", alias="referenceImage")


class StructuredRecordPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_message: str = Field("", alias="firstMessage")


class ResultPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[int] = None
    subject_name: Optional[str] = Field(None, alias="subjectName")
    structured_record: Optional[StructuredRecordPayload] = Field(None, alias="structuredRecord")
    card: Optional[Dict[str, Any]] = None
    transcript: Optional[str] = None


class ResultPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject_name: Optional[str] = Field(None, alias="subjectName")
    name: Optional[str] = None
    description: Optional[str] = None
    personality: Optional[str] = None
    scenario: Optional[str] = None
    first_message: Optional[str] = Field(None, alias="firstMessage")


@router.get("/requests")
async def list_requests_route(request: Request):
    return await list_request_snapshots(request)


@router.post("/requests")
async def save_request_route(request: Request, payload: RequestSnapshotPayload):
    """Save a prompt; a same-fingerprint prompt is overwritten in place."""
    snapshot = RequestSnapshot(**payload.model_dump())
    return await save_request_snapshot(request, snapshot)


@router.get("/requests/{key}")
async def get_request_route(request: Request, key: int):
    return await get_request_snapshot(request, key)


@router.delete("/requests/{key}")
async def delete_request_route(request: Request, key: int):
    try:
        return await delete_request_snapshot(request, key)
    except StorageError as exc:
        raise storage_http_error(exc) from exc


@router.get("/results")
async def list_results_route(request: Request):
    return await list_results(request)


@router.post("/results")
async def save_result_route(request: Request, payload: ResultPayload):
    """Store a generated, edited or imported persona."""
    record = None
    if payload.structured_record is not None:
        record = StructuredRecord(**payload.structured_record.model_dump())
    try:
        return await save_result(
            request,
            payload.id,
            payload.subject_name,
            record=record,
            card=payload.card,
            transcript=payload.transcript,
        )
    except HTTPException:
        raise
    except StorageError as exc:
        raise storage_http_error(exc) from exc


@router.get("/results/{key}")
async def get_result_route(request: Request, key: int):
    return await get_result(request, key)


@router.patch("/results/{key}")
async def patch_result_route(request: Request, key: int, payload: ResultPatch):
    try:
        return await update_result(request, key, payload.model_dump())
    except HTTPException:
        raise
    except StorageError as exc:
        raise storage_http_error(exc) from exc


@router.delete("/results/{key}")
async def delete_result_route(request: Request, key: int):
    try:
        return await delete_result(request, key)
    except StorageError as exc:
        raise storage_http_error(exc) from exc


@router.get("/results/{key}/card")
async def export_card_route(request: Request, key: int):
    return await export_card(request, key)


@router.get("/results/{key}/thumbnail")
async def get_thumbnail_route(request: Request, key: int):
    """Return the PNG thumbnail bytes for the specified card."""
    return await get_thumbnail(request, key)


@router.get("/results/{key}/illustration")
async def get_illustration_route(request: Request, key: int):
    return await get_illustration(request, key)
