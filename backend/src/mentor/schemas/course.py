from pydantic import BaseModel, Field, field_validator


class LessonOutline(BaseModel):
    title: str
    description: str | None = None
    topics: list[str] = []


class LearningPathInput(BaseModel):
    title: str = Field(min_length=1)
    goal: str | None = None
    subject: str | None = None
    domain: str | None = None
    level: str | None = None


class CourseCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    lessons: list[LessonOutline]
    learning_path: LearningPathInput | None = None

    @field_validator("lessons")
    @classmethod
    def lessons_not_empty(cls, v: list[LessonOutline]) -> list[LessonOutline]:
        if not v:
            raise ValueError("At least one lesson is required")
        return v


class AssessmentReadyRequest(BaseModel):
    topic: str = Field(min_length=1)
    lesson_index: int | None = Field(default=None, ge=0)
    topic_index: int | None = Field(default=None, ge=0)


class CourseResponse(BaseModel):
    id: str
    title: str
    description: str | None
    learning_path_id: str | None
    lessons: list[LessonOutline]
    current_lesson_index: int
    current_topic_index: int
    completed: bool
    metadata: dict
