"""
Structured Items: the unit flowing through extraction and persistence.

    StructuredItem = KnowledgePoint   (lecture)
                   | Question         (exam, assignment)

The active variant is fixed by the job's ContentCategory, so every branch
downstream of extraction handles exactly one shape.

Wire format:
  Items are serialized with camelCase aliases (sourcePages, referenceAnswer,
  orderNum ...) because the same payload is streamed to the browser in
  `item` events and stored in chunk metadata.

  The model is prompted with a slightly different vocabulary (keyFormulas,
  keyConcepts, score, questionNumber, type). Those names are accepted as
  validation aliases so a raw model entry can be validated directly.
"""

from __future__ import annotations

from enum import Enum
from typing import Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ContentCategory(str, Enum):
    LECTURE    = "lecture"
    EXAM       = "exam"
    ASSIGNMENT = "assignment"


class ItemType(str, Enum):
    KNOWLEDGE_POINT = "knowledge_point"
    QUESTION        = "question"


class _ItemModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Knowledge point (lecture)
# ---------------------------------------------------------------------------

class KnowledgePoint(_ItemModel):
    title:        str             = Field(..., min_length=1)
    definition:   str             = Field(..., min_length=1)
    formulas:     list[str] | None = Field(None, validation_alias=AliasChoices("formulas", "keyFormulas"))
    concepts:     list[str] | None = Field(None, validation_alias=AliasChoices("concepts", "keyConcepts"))
    examples:     list[str] | None = None
    source_pages: list[int]        = Field(
        default_factory=list,
        validation_alias=AliasChoices("source_pages", "sourcePages"),
        serialization_alias="sourcePages",
    )


# ---------------------------------------------------------------------------
# Question (exam / assignment)
# ---------------------------------------------------------------------------

class Question(_ItemModel):
    order_num:        int        = Field(
        0, ge=0,
        validation_alias=AliasChoices("order_num", "orderNum"),
        serialization_alias="orderNum",
    )
    question_number:  str | None = Field(
        None,
        validation_alias=AliasChoices("question_number", "questionNumber"),
        serialization_alias="questionNumber",
    )
    content:          str        = Field(..., min_length=1)
    options:          list[str] | None = None
    reference_answer: str | None = Field(
        None,
        validation_alias=AliasChoices("reference_answer", "referenceAnswer"),
        serialization_alias="referenceAnswer",
    )
    points:           float      = Field(
        0, ge=0, validation_alias=AliasChoices("points", "score"),
    )
    source_page:      int        = Field(
        1, ge=1,
        validation_alias=AliasChoices("source_page", "sourcePage"),
        serialization_alias="sourcePage",
    )
    question_type:    str | None = Field(
        None,
        validation_alias=AliasChoices("question_type", "questionType", "type"),
        serialization_alias="questionType",
    )

    @field_validator("question_number", mode="before")
    @classmethod
    def _coerce_question_number(cls, v: object) -> object:
        # Models emit both 3 and "3a"
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v)) if float(v).is_integer() else str(v)
        return v

    @field_validator("points", mode="before")
    @classmethod
    def _null_points(cls, v: object) -> object:
        return 0 if v is None else v

    @field_validator("source_page", mode="before")
    @classmethod
    def _null_source_page(cls, v: object) -> object:
        return 1 if v is None else v


StructuredItem = Union[KnowledgePoint, Question]


def item_type_of(item: StructuredItem) -> ItemType:
    if isinstance(item, KnowledgePoint):
        return ItemType.KNOWLEDGE_POINT
    if isinstance(item, Question):
        return ItemType.QUESTION
    raise TypeError(f"Not a structured item: {type(item).__name__}")
