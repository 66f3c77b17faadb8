"""Lecture document outline: knowledge point titles grouped into sections."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _OutlineModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class OutlineSection(_OutlineModel):
    title:             str       = Field(..., min_length=1)
    knowledge_points:  list[str] = Field(default_factory=list)
    brief_description: str       = Field(..., min_length=1)


class OutlineResponse(_OutlineModel):
    """Shape the model is asked to return."""
    title:    str                  = Field(..., min_length=1)
    summary:  str                  = Field(..., min_length=1)
    sections: list[OutlineSection] = Field(..., min_length=1)


class DocumentOutline(_OutlineModel):
    document_id:            str
    title:                  str
    summary:                str
    total_knowledge_points: int = Field(..., ge=0)
    sections:               list[OutlineSection]

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)
