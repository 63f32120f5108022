from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from mentor.config import settings
from mentor.db.models import COMPLETED, FAILED, IN_PROGRESS, Assessment, Course

IN_PROGRESS_KEYS = ("in_progress_assessment_id", "in_progress_assessment_topic")
PENDING_KEYS = (
    "pending_assessment_topic",
    "pending_assessment_lesson_index",
    "pending_assessment_topic_index",
)


class InvalidTransitionError(Exception):
    pass


# Valid assessment transitions and their guard conditions
TRANSITIONS: dict[tuple[str, str], str] = {
    (IN_PROGRESS, COMPLETED): "score_meets_threshold",
    (IN_PROGRESS, FAILED): "score_below_threshold",
    (FAILED, COMPLETED): "score_meets_threshold",  # retry after remediation
    (FAILED, FAILED): "score_below_threshold",
}


def check_guard(assessment: Assessment, guard: str) -> bool:
    score = assessment.overall_score
    if guard == "score_meets_threshold":
        return score is not None and score >= settings.pass_threshold
    if guard == "score_below_threshold":
        return score is not None and score < settings.pass_threshold
    return False


def ensure_gradable(assessment: Assessment) -> None:
    """Only ungraded or failed assessments accept answers and submissions."""
    if assessment.status not in (IN_PROGRESS, FAILED):
        raise InvalidTransitionError(
            f"Assessment {assessment.id} is '{assessment.status}' and can no longer be changed"
        )


async def transition_assessment(
    db: AsyncSession, assessment: Assessment, target_status: str
) -> Assessment:
    key = (assessment.status, target_status)
    guard_name = TRANSITIONS.get(key)
    if guard_name is None:
        raise InvalidTransitionError(
            f"Cannot transition from '{assessment.status}' to '{target_status}'"
        )

    if not check_guard(assessment, guard_name):
        raise InvalidTransitionError(
            f"Guard '{guard_name}' failed for transition "
            f"'{assessment.status}' → '{target_status}'"
        )

    assessment.status = target_status
    assessment.grading_version = (assessment.grading_version or 0) + 1
    try:
        await db.flush()
    except StaleDataError as e:
        raise InvalidTransitionError(
            f"Assessment {assessment.id} was graded by another request"
        ) from e
    return assessment


def next_position(lessons: list[dict], lesson_index: int, topic_index: int) -> tuple[int, int]:
    """Advance one topic, rolling over to the next lesson after its last topic.

    A lesson index past the end of the curriculum means the course is complete;
    callers rendering the curriculum treat it that way.
    """
    lesson = lessons[lesson_index] if 0 <= lesson_index < len(lessons) else {}
    topics = lesson.get("topics") or []
    if topic_index >= len(topics) - 1:
        return lesson_index + 1, 0
    return lesson_index, topic_index + 1


async def advance_curriculum_pointer(db: AsyncSession, course: Course) -> Course:
    lesson_index, topic_index = next_position(
        course.lessons,
        course.current_lesson_index or 0,
        course.current_topic_index or 0,
    )
    course.current_lesson_index = lesson_index
    course.current_topic_index = topic_index
    await db.flush()
    return course


def is_course_complete(course: Course) -> bool:
    return (course.current_lesson_index or 0) >= len(course.lessons)


def _without(meta: dict | None, keys: tuple[str, ...]) -> dict:
    return {k: v for k, v in (meta or {}).items() if k not in keys}


def mark_assessment_started(course: Course, assessment_id: str, topic: str) -> None:
    course.meta = {
        **_without(course.meta, PENDING_KEYS + IN_PROGRESS_KEYS),
        "in_progress_assessment_id": assessment_id,
        "in_progress_assessment_topic": topic,
    }


def mark_assessment_passed(course: Course, assessment_id: str) -> None:
    meta = course.meta or {}
    # Leave a newer in-progress assessment's pointer alone
    if meta.get("in_progress_assessment_id") in (None, assessment_id):
        meta = _without(meta, IN_PROGRESS_KEYS)
    course.meta = {**meta, "completed_assessment_id": assessment_id}


def mark_assessment_ready(
    course: Course, topic: str, lesson_index: int | None, topic_index: int | None
) -> bool:
    """Record the topic a mastery check is ready for, unless one is already pending."""
    if (course.meta or {}).get("pending_assessment_topic"):
        return False
    course.meta = {
        **(course.meta or {}),
        "pending_assessment_topic": topic,
        "pending_assessment_lesson_index": lesson_index,
        "pending_assessment_topic_index": topic_index,
    }
    return True
