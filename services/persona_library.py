"""Prompt library with fingerprint dedup and size-triggered degradation.

Saving a request snapshot never blocks generation: the full record is tried
first (with individually oversized optional fields already dropped), then a
compact record without any large optional field, and only then the save is
reported as failed.
"""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Tuple

from dal.persona_dal import RequestSnapshotDAL, StorageError
from models.persona_records import RequestSnapshot, SaveOutcome, compute_fingerprint

LOGGER = logging.getLogger(__name__)

REFERENCE_IMAGE_FIELD = "reference-image"
KNOWLEDGE_BASE_FIELD = "knowledge-base"


class RequestLibrary:
    """Persist request snapshots for later reuse.

    Args:
        dal: Storage for request snapshots.
        max_embedded_chars: Per-field limit for large optional fields.
    """

    def __init__(self, dal: RequestSnapshotDAL, max_embedded_chars: int = 400_000) -> None:
        self.dal = dal
        self.max_embedded_chars = max_embedded_chars

    def prepare(self, snapshot: RequestSnapshot, minimal: bool = False) -> Tuple[RequestSnapshot, List[str]]:
        """Return a storage-safe copy of `snapshot` and the names of dropped fields.

        In minimal mode every large optional field is stripped; those that
        carried a value are reported as dropped.
        """
        safe = RequestSnapshot(
            concept=snapshot.concept or "",
            subject_name=snapshot.subject_name or "",
            point_of_view=snapshot.point_of_view or "first",
            reference_description=snapshot.reference_description or "",
            created_at=snapshot.created_at,
        )
        # Fingerprint the normalized values that are actually stored.
        safe.fingerprint = compute_fingerprint(
            safe.concept, safe.subject_name, safe.point_of_view, safe.reference_description
        )
        trimmed: List[str] = []

        if minimal:
            if snapshot.reference_image:
                trimmed.append(REFERENCE_IMAGE_FIELD)
            if snapshot.knowledge_base is not None:
                trimmed.append(KNOWLEDGE_BASE_FIELD)
            return safe, trimmed

        if snapshot.reference_image:
            if len(snapshot.reference_image) <= self.max_embedded_chars:
                safe.reference_image = snapshot.reference_image
            else:
                trimmed.append(REFERENCE_IMAGE_FIELD)

        if snapshot.knowledge_base is not None:
            knowledge_base = self._bounded_json(snapshot.knowledge_base)
            if knowledge_base is not None:
                safe.knowledge_base = knowledge_base
            else:
                trimmed.append(KNOWLEDGE_BASE_FIELD)

        return safe, trimmed

    def _bounded_json(self, value: Any) -> Optional[Any]:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError):
            return None
        if len(encoded) > self.max_embedded_chars:
            return None
        return json.loads(encoded)

    async def save(self, snapshot: RequestSnapshot) -> SaveOutcome:
        """Upsert `snapshot` by fingerprint, degrading once on failure."""
        record, trimmed = self.prepare(snapshot)
        try:
            key = await self.dal.upsert_by_fingerprint(record)
        except StorageError as exc:
            LOGGER.warning("Failed to save prompt (full record): %s", exc)
        else:
            snapshot.id = key
            outcome = SaveOutcome(saved=True, key=key, omitted_fields=trimmed)
            if trimmed:
                message = (
                    f"Prompt saved. Omitted large {' and '.join(trimmed)} snapshot for storage safety."
                )
                LOGGER.warning(message)
                outcome.warnings.append(message)
            return outcome

        compact, dropped = self.prepare(snapshot, minimal=True)
        try:
            key = await self.dal.upsert_by_fingerprint(compact)
        except StorageError as exc:
            LOGGER.error("Failed to save prompt (compact retry): %s", exc)
            return SaveOutcome(
                saved=False,
                warnings=["Failed to save prompt. Check storage permissions."],
            )

        snapshot.id = key
        message = "Prompt saved in compact mode (large context omitted)."
        LOGGER.warning(message)
        return SaveOutcome(saved=True, key=key, compact=True, omitted_fields=dropped, warnings=[message])

    async def get(self, key: int) -> Optional[RequestSnapshot]:
        return await self.dal.get(key)

    async def list(self) -> List[RequestSnapshot]:
        return await self.dal.list()

    async def delete(self, key: int) -> bool:
        return await self.dal.delete(key)
