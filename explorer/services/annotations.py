"""User annotations kept as a single JSON document in the key-value store."""

from __future__ import annotations

import json
import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlmodel import Session

from ..models import StoredValue

logger = logging.getLogger(__name__)

ANNOTATIONS_KEY = "nasa-space-apps-annotations"
DEFAULT_ANNOTATION_COLOR = "#ff6b35"
_ID_ALPHABET = string.ascii_lowercase + string.digits

AnnotationType = Literal["point", "area", "line"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_annotation_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"annotation_{int(time.time() * 1000)}_{suffix}"


class AnnotationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    x: float = Field(strict=True)
    y: float = Field(strict=True)
    title: str = Field(min_length=1)
    description: str = ""
    type: AnnotationType = "point"
    color: str = DEFAULT_ANNOTATION_COLOR
    layer_id: str = Field(default="", alias="layerId")
    date: str = ""


class AnnotationUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    x: float | None = Field(default=None, strict=True)
    y: float | None = Field(default=None, strict=True)
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    type: AnnotationType | None = None
    color: str | None = None
    layer_id: str | None = Field(default=None, alias="layerId")
    date: str | None = None


class Annotation(AnnotationCreate):
    id: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _parse_annotations(payload: Any) -> List[Annotation]:
    if not isinstance(payload, list):
        raise ValueError("Annotations must be a JSON array")
    return [Annotation.model_validate(item) for item in payload]


class AnnotationStore:
    """Load-modify-save access to the annotation list.

    Every write replaces the whole document, so the store is only safe for a
    single writer at a time.
    """

    def __init__(self, session: Session, key: str = ANNOTATIONS_KEY) -> None:
        self.session = session
        self.key = key

    def load_annotations(self) -> List[Annotation]:
        record = self.session.get(StoredValue, self.key)
        if record is None or not record.value:
            return []
        try:
            return _parse_annotations(json.loads(record.value))
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Failed to load annotations: %s", exc)
            return []

    def save_annotations(self, annotations: List[Annotation]) -> None:
        payload = json.dumps([annotation.to_json() for annotation in annotations])
        record = self.session.get(StoredValue, self.key)
        if record is None:
            record = StoredValue(key=self.key)
        record.value = payload
        record.updated_at = _utcnow()
        self.session.add(record)
        self.session.commit()

    def add_annotation(self, draft: AnnotationCreate) -> Annotation:
        now = _utcnow()
        annotation = Annotation(
            **draft.model_dump(),
            id=generate_annotation_id(),
            created_at=now,
            updated_at=now,
        )
        annotations = self.load_annotations()
        annotations.append(annotation)
        self.save_annotations(annotations)
        return annotation

    def update_annotation(self, annotation_id: str, updates: AnnotationUpdate) -> Annotation | None:
        annotations = self.load_annotations()
        for index, current in enumerate(annotations):
            if current.id != annotation_id:
                continue
            merged = current.model_dump()
            merged.update(updates.model_dump(exclude_unset=True, exclude_none=True))
            merged["updated_at"] = _utcnow()
            annotations[index] = Annotation.model_validate(merged)
            self.save_annotations(annotations)
            return annotations[index]
        return None

    def delete_annotation(self, annotation_id: str) -> bool:
        annotations = self.load_annotations()
        remaining = [annotation for annotation in annotations if annotation.id != annotation_id]
        if len(remaining) == len(annotations):
            return False
        self.save_annotations(remaining)
        return True

    def get_annotations_for_layer(self, layer_id: str, date: str) -> List[Annotation]:
        return [
            annotation
            for annotation in self.load_annotations()
            if annotation.layer_id == layer_id and annotation.date == date
        ]

    def export_annotations(self) -> str:
        return json.dumps([annotation.to_json() for annotation in self.load_annotations()], indent=2)

    def import_annotations(self, json_data: str) -> bool:
        """Replace every annotation with ``json_data``; nothing changes unless all entries are valid."""

        try:
            annotations = _parse_annotations(json.loads(json_data))
        except (json.JSONDecodeError, ValidationError, ValueError) as exc:
            logger.warning("Failed to import annotations: %s", exc)
            return False
        self.save_annotations(annotations)
        return True
