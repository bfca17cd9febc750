from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

PLACEHOLDER_NAME = "{{char}}"
PLACEHOLDER_COUNTERPART = "{{user}}"
UNNAMED_CHARACTER = "Unnamed Character"
POINTS_OF_VIEW = ("first", "third")


def compute_fingerprint(
    concept: Optional[str],
    subject_name: Optional[str],
    point_of_view: Optional[str],
    reference_description: Optional[str],
) -> str:
    """Return the dedup key for a request from its logical (untrimmed) values."""
    return "::".join(
        [concept or "", subject_name or "", point_of_view or "", reference_description or ""]
    )


@dataclass
class StructuredRecord:
    """The five-field persona schema produced by the section parser.

    Every field is a string; an empty string marks a field that could not be
    extracted.
    """

    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_message: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "description": self.description,
            "personality": self.personality,
            "scenario": self.scenario,
            "firstMessage": self.first_message,
        }

    def to_card(self) -> Dict[str, Any]:
        """Export as a `chara_card_v2` document."""
        return {
            "spec": "chara_card_v2",
            "spec_version": "2.0",
            "data": {
                "name": self.name or UNNAMED_CHARACTER,
                "description": self.description or "",
                "personality": self.personality or "",
                "scenario": self.scenario or "",
                "first_mes": self.first_message or "Hello!",
                "mes_example": "",
                "tags": [],
            },
        }

    @classmethod
    def from_card(cls, payload: Optional[Dict[str, Any]]) -> "StructuredRecord":
        """Normalize an imported card, either `chara_card_v2` or a flat object."""
        payload = payload or {}
        data = payload.get("data")
        if isinstance(data, dict):
            return cls(
                name=str(data.get("name") or UNNAMED_CHARACTER),
                description=str(data.get("description") or ""),
                personality=str(data.get("personality") or ""),
                scenario=str(data.get("scenario") or ""),
                first_message=str(data.get("first_mes") or ""),
            )
        return cls(
            name=str(payload.get("name") or UNNAMED_CHARACTER),
            description=str(payload.get("description") or ""),
            personality=str(payload.get("personality") or ""),
            scenario=str(payload.get("scenario") or ""),
            first_message=str(payload.get("firstMessage") or payload.get("first_mes") or ""),
        )


@dataclass
class RequestSnapshot:
    """Generation inputs kept in the prompt library.

    Attributes:
        id: Store-assigned key (None until first saved).
        concept: Free-form persona concept.
        subject_name: Requested persona name, may be empty.
        point_of_view: `first` or `third`.
        knowledge_base: Optional auxiliary knowledge base (lorebook JSON).
        reference_description: Optional textual appearance guidance.
        reference_image: Optional reference image as a data URL.
        fingerprint: Dedup key, see `compute_fingerprint`.
        created_at: ISO timestamp set on first insert.
        updated_at: ISO timestamp refreshed on every write.
    """

    concept: str
    subject_name: str = ""
    point_of_view: str = "first"
    knowledge_base: Optional[Any] = None
    reference_description: str = ""
    reference_image: str = ""
    fingerprint: str = ""
    id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def logical_fingerprint(self) -> str:
        return compute_fingerprint(
            self.concept, self.subject_name, self.point_of_view, self.reference_description
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "concept": self.concept,
            "subjectName": self.subject_name,
            "pointOfView": self.point_of_view,
            "auxiliaryKnowledgeBase": self.knowledge_base,
            "referenceDescription": self.reference_description,
            "referenceImage": self.reference_image,
            "fingerprint": self.fingerprint,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class ResultRecord:
    """A generated (or imported) persona kept in the card library."""

    subject_name: str
    record: StructuredRecord = field(default_factory=StructuredRecord)
    illustration: Optional[bytes] = None
    illustration_type: Optional[str] = None
    illustration_thumbnail: Optional[bytes] = None
    id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subjectName": self.subject_name,
            "structuredRecord": self.record.to_dict(),
            "hasIllustration": self.illustration is not None,
            "illustrationType": self.illustration_type,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class SaveOutcome:
    """Result of a degrading request-snapshot save.

    `saved` is False only when both the full and the compact write failed.
    """

    saved: bool
    key: Optional[int] = None
    compact: bool = False
    omitted_fields: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.key,
            "saved": self.saved,
            "compact": self.compact,
            "omittedFields": list(self.omitted_fields),
            "warnings": list(self.warnings),
        }
