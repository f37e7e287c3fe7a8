from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field as PydanticField, field_validator
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _look_id() -> str:
    return f"look_{uuid4().hex[:16]}"


class LookStatus(str, Enum):
    PENDING_GENERATION = "pending_generation"
    GENERATING = "generating"
    READY = "ready"
    GENERATION_FAILED = "generation_failed"


class LookComposition(BaseModel):
    """An outfit proposed by the curation step."""

    item_ids: List[str] = PydanticField(min_length=1)
    style_tags: List[str] = PydanticField(default_factory=list)
    occasion: Optional[str] = None
    name: Optional[str] = None
    comment: Optional[str] = None

    @field_validator("item_ids")
    @classmethod
    def _unique_items(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("item_ids must not contain duplicates")
        return value


class Look(SQLModel, table=True):
    """A persisted outfit and the state of its try-on image."""

    __tablename__ = "looks"

    id: str = Field(default_factory=_look_id, primary_key=True)
    user_id: str = Field(index=True)
    item_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    name: Optional[str] = None
    style_tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    occasion: Optional[str] = None
    comment: Optional[str] = None
    source_key: Optional[str] = Field(default=None, unique=True, index=True)
    status: str = Field(default=LookStatus.PENDING_GENERATION.value)
    image_ref: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_composition(
        cls, user_id: str, composition: LookComposition, source_key: Optional[str] = None
    ) -> "Look":
        return cls(
            user_id=user_id,
            item_ids=list(composition.item_ids),
            name=composition.name,
            style_tags=list(composition.style_tags),
            occasion=composition.occasion,
            comment=composition.comment,
            source_key=source_key,
        )
