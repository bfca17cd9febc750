"""Controllers for the prompt and card libraries."""

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request
from fastapi.responses import Response

from dal.persona_dal import ResultRecordDAL, StorageError
from models.persona_records import RequestSnapshot, ResultRecord, StructuredRecord
from services.persona_library import RequestLibrary
from services.persona_parser import SectionParser

EDITABLE_FIELDS = ("name", "description", "personality", "scenario", "first_message")


def _request_library(request: Request) -> RequestLibrary:
    return request.app.state.request_library


def _result_dal(request: Request) -> ResultRecordDAL:
    return request.app.state.result_dal


async def save_request_snapshot(request: Request, snapshot: RequestSnapshot) -> Dict[str, Any]:
    """Upsert a request snapshot by fingerprint; the outcome reports dropped fields."""
    outcome = await _request_library(request).save(snapshot)
    return outcome.to_dict()


async def list_request_snapshots(request: Request) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in await _request_library(request).list()]


async def get_request_snapshot(request: Request, key: int) -> Dict[str, Any]:
    snapshot = await _request_library(request).get(key)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Prompt {key} not found")
    return snapshot.to_dict()


async def delete_request_snapshot(request: Request, key: int) -> Dict[str, Any]:
    deleted = await _request_library(request).delete(key)
    return {"id": key, "deleted": deleted}


async def save_result(
    request: Request,
    key: Optional[int],
    subject_name: Optional[str],
    record: Optional[StructuredRecord] = None,
    card: Optional[Dict[str, Any]] = None,
    transcript: Optional[str] = None,
) -> Dict[str, Any]:
    """Store a result from a structured record, an imported card, or a raw transcript.

    Raises:
        HTTPException(400) unless exactly one source is provided.
    """
    sources = [s for s in (record, card, transcript) if s is not None]
    if len(sources) != 1:
        raise HTTPException(
            status_code=400,
            detail="Provide exactly one of structuredRecord, card or transcript.",
        )

    if card is not None:
        record = StructuredRecord.from_card(card)
    elif transcript is not None:
        parser: SectionParser = request.app.state.parser
        record = parser.parse(transcript)

    result = ResultRecord(id=key, subject_name=subject_name or record.name, record=record)
    existing = await _result_dal(request).get(key) if key else None
    if existing is not None:
        result.illustration = existing.illustration
        result.illustration_type = existing.illustration_type
        result.illustration_thumbnail = existing.illustration_thumbnail
        result.created_at = existing.created_at

    await _result_dal(request).put(result)
    return result.to_dict()


async def list_results(request: Request) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in await _result_dal(request).list()]


async def _require_result(request: Request, key: int) -> ResultRecord:
    result = await _result_dal(request).get(key)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Card {key} not found")
    return result


async def get_result(request: Request, key: int) -> Dict[str, Any]:
    return (await _require_result(request, key)).to_dict()


async def update_result(request: Request, key: int, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Apply field edits to a stored result and refresh its `updated_at`."""
    result = await _require_result(request, key)
    for field_name in EDITABLE_FIELDS:
        value = changes.get(field_name)
        if value is not None:
            setattr(result.record, field_name, value)
    if changes.get("subject_name") is not None:
        result.subject_name = changes["subject_name"]
    await _result_dal(request).put(result)
    return result.to_dict()


async def delete_result(request: Request, key: int) -> Dict[str, Any]:
    deleted = await _result_dal(request).delete(key)
    return {"id": key, "deleted": deleted}


async def export_card(request: Request, key: int) -> Dict[str, Any]:
    """Return the stored persona as a `chara_card_v2` document."""
    return (await _require_result(request, key)).record.to_card()


async def get_thumbnail(request: Request, key: int) -> Response:
    """Return the PNG thumbnail of a result's illustration.

    Raises:
        HTTPException(404) if the result or thumbnail is not found.
    """
    result = await _require_result(request, key)
    if not result.illustration_thumbnail:
        raise HTTPException(status_code=404, detail="Thumbnail not available for this card")
    return Response(content=result.illustration_thumbnail, media_type="image/png")


async def get_illustration(request: Request, key: int) -> Response:
    result = await _require_result(request, key)
    if not result.illustration:
        raise HTTPException(status_code=404, detail="Illustration not available for this card")
    return Response(content=result.illustration, media_type=result.illustration_type or "image/png")


def storage_http_error(exc: StorageError) -> HTTPException:
    return HTTPException(status_code=500, detail=f"Library storage failure: {exc}")
