import logging
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

ItemType = Literal[
    "multiple_choice", "true_false", "short_answer", "coding_exercise", "fill_blank"
]
ItemLevel = Literal["beginner", "intermediate", "advanced"]

ITEM_TYPES: tuple[str, ...] = ItemType.__args__
ITEM_LEVELS: tuple[str, ...] = ItemLevel.__args__

_ITEM_TYPE_ALIASES = {
    "mcq": "multiple_choice",
    "multiple_choice_question": "multiple_choice",
    "truefalse": "true_false",
    "boolean": "true_false",
    "fill_in_the_blank": "fill_blank",
    "fill_in_blank": "fill_blank",
    "coding": "coding_exercise",
    "code": "coding_exercise",
    "open_ended": "short_answer",
}


def _clean_labels(values: list[str]) -> list[str]:
    """Strip, drop empties and de-duplicate while keeping first-seen order."""
    seen: dict[str, None] = {}
    for value in values:
        label = str(value).strip()
        if label:
            seen.setdefault(label, None)
    return list(seen)


# --- Item writer payload ---


class GeneratedItem(BaseModel):
    item_order: int | None = None
    item_type: ItemType = "short_answer"
    question_text: str = Field(min_length=1)
    correct_answer: str
    concepts: list[str] = []
    level: ItemLevel = "intermediate"

    @field_validator("item_type", mode="before")
    @classmethod
    def normalize_item_type(cls, v):
        if v is None:
            return "short_answer"
        key = str(v).strip().lower().replace("-", "_").replace(" ", "_").replace("/", "")
        key = _ITEM_TYPE_ALIASES.get(key, key)
        if key not in ITEM_TYPES:
            logger.warning("Unknown item type %r, treating as short_answer", v)
            return "short_answer"
        return key

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v):
        level = str(v or "").strip().lower()
        return level if level in ITEM_LEVELS else "intermediate"

    @field_validator("correct_answer", mode="before")
    @classmethod
    def answer_as_text(cls, v):
        if v is None:
            raise ValueError("correct_answer is required")
        return v if isinstance(v, str) else str(v)

    @field_validator("concepts", mode="before")
    @classmethod
    def concepts_as_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class GeneratedAssessment(BaseModel):
    """Item writer output: the concept taxonomy and the ordered items covering it."""

    concepts: list[str] = Field(min_length=1)
    items: list[GeneratedItem] = Field(min_length=1)

    @field_validator("concepts")
    @classmethod
    def concepts_not_blank(cls, v: list[str]) -> list[str]:
        cleaned = _clean_labels(v)
        if not cleaned:
            raise ValueError("At least one non-empty concept is required")
        return cleaned

    @model_validator(mode="after")
    def order_items(self) -> "GeneratedAssessment":
        # Respect the model's ordering where given, then renumber 1..N contiguously
        ranked = sorted(
            enumerate(self.items),
            key=lambda pair: (
                pair[1].item_order if pair[1].item_order is not None else pair[0] + 1,
                pair[0],
            ),
        )
        known = set(self.concepts)
        items = []
        for order, (_, item) in enumerate(ranked, start=1):
            concepts = [c for c in _clean_labels(item.concepts) if c in known]
            items.append(item.model_copy(update={"item_order": order, "concepts": concepts}))
        self.items = items
        return self


# --- Grading judge payload ---


class JudgeEvaluation(BaseModel):
    item_id: str | None = None
    score: float | None = None
    is_correct: bool | None = None
    error_type: str | None = None
    concepts: list[str] = []

    @field_validator("item_id", mode="before")
    @classmethod
    def item_id_as_text(cls, v):
        if v is None:
            return None
        return str(v).strip()

    @field_validator("concepts", mode="before")
    @classmethod
    def concepts_as_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class JudgeOutput(BaseModel):
    evaluations: list[JudgeEvaluation]
    failed_concepts: list[str] = []

    @field_validator("failed_concepts", mode="before")
    @classmethod
    def failed_as_list(cls, v):
        return v or []


# --- API ---


class AssessmentGenerateRequest(BaseModel):
    course_id: str
    topic: str = Field(min_length=1)
    lesson_title: str | None = None
    lesson_index: int | None = Field(default=None, ge=0)
    topic_index: int | None = Field(default=None, ge=0)


class AssessmentCreatedResponse(BaseModel):
    assessment_id: str
    total_items: int
    concepts: list[str]


class AnswerUpdateRequest(BaseModel):
    user_answer: str


class AnswerBatchUpdate(BaseModel):
    id: str = Field(min_length=1)
    user_answer: str


class AnswerBatchRequest(BaseModel):
    updates: list[AnswerBatchUpdate] = Field(min_length=1)


class ItemWriteResultResponse(BaseModel):
    item_id: str
    success: bool
    error: str | None = None


class AnswerUpdateResponse(BaseModel):
    success: bool
    updated: int
    results: list[ItemWriteResultResponse] = []


class SubmittedAnswer(BaseModel):
    item_id: str | None = None
    answer: str | None = None


class AssessmentSubmitRequest(BaseModel):
    course_id: str
    answers: list[SubmittedAnswer] = []


class SubmissionResponse(BaseModel):
    assessment_id: str
    passed: bool
    score: float
    correct_count: int
    total_items: int
    failed_concepts: list[str]
    failed_item_writes: list[str] = []


class AssessmentItemResponse(BaseModel):
    id: str
    item_order: int
    item_type: str
    question_text: str
    correct_answer: str
    level: str
    user_answer: str | None
    score: float | None
    is_correct: bool | None
    error_type: str | None
    concepts: list[str]


class AssessmentResponse(BaseModel):
    id: str
    course_id: str
    status: str
    total_items: int
    overall_score: float | None
    completed_at: datetime | None
    metadata: dict
    items: list[AssessmentItemResponse]


class SummaryResponse(BaseModel):
    summary: str
    cached: bool
