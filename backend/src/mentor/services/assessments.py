"""Assessment lifecycle: creation, autosave, submission and grading, summaries."""

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from mentor.agents.grader import GradableItem, ItemEvaluation, grade_submission
from mentor.agents.item_writer import CurriculumContext, run_item_writer
from mentor.agents.logging import AgentContext
from mentor.agents.summarizer import run_assessment_summarizer
from mentor.config import settings
from mentor.db.models import COMPLETED, FAILED, Assessment, AssessmentItem, Course
from mentor.schemas.assessment import SubmittedAnswer
from mentor.services import assessment_store as store
from mentor.services.errors import ConflictError, GenerationFailed, NotFoundError, OwnershipError
from mentor.services.progression import (
    InvalidTransitionError,
    advance_curriculum_pointer,
    ensure_gradable,
    mark_assessment_passed,
    mark_assessment_ready,
    mark_assessment_started,
)

logger = logging.getLogger(__name__)


@dataclass
class CreatedAssessment:
    assessment_id: str
    total_items: int
    concepts: list[str]


@dataclass
class ScoreSummary:
    overall_score: float
    correct_count: int
    passed: bool


@dataclass
class SubmissionResult:
    assessment_id: str
    passed: bool
    score: float
    correct_count: int
    total_items: int
    failed_concepts: list[str]
    failed_item_writes: list[str] = field(default_factory=list)


def aggregate_scores(
    evaluations: list[ItemEvaluation],
    total_items: int,
    pass_threshold: float | None = None,
) -> ScoreSummary:
    threshold = settings.pass_threshold if pass_threshold is None else pass_threshold
    if total_items <= 0:
        return ScoreSummary(overall_score=0.0, correct_count=0, passed=False)

    total = sum(min(1.0, max(0.0, e.score)) for e in evaluations)
    overall = min(100.0, max(0.0, 100.0 * total / total_items))
    correct = sum(1 for e in evaluations if e.score >= 0.5)
    return ScoreSummary(overall_score=overall, correct_count=correct, passed=overall >= threshold)


# --- Loading with ownership ---


async def load_owned_course(db: AsyncSession, user_id: str, course_id: str) -> Course:
    result = await db.execute(
        select(Course)
        .where(Course.id == course_id)
        .options(selectinload(Course.learning_path))
    )
    course = result.scalar_one_or_none()
    if course is None:
        raise NotFoundError("Course not found")
    if course.user_id != user_id:
        raise OwnershipError("Course does not belong to this learner")
    return course


async def load_owned_assessment(db: AsyncSession, user_id: str, assessment_id: str) -> Assessment:
    assessment = await store.get_assessment(db, assessment_id)
    if assessment is None:
        raise NotFoundError("Assessment not found")
    if assessment.user_id != user_id:
        raise OwnershipError("Assessment does not belong to this learner")
    return assessment


async def load_owned_items(
    db: AsyncSession, user_id: str, item_ids: list[str]
) -> dict[str, AssessmentItem]:
    wanted = list(dict.fromkeys(item_ids))
    items = {item.id: item for item in await store.get_items(db, wanted)}
    missing = [item_id for item_id in wanted if item_id not in items]
    if missing:
        raise NotFoundError(f"Assessment items not found: {', '.join(missing)}")
    for item in items.values():
        if item.assessment.user_id != user_id:
            raise OwnershipError("Assessment item does not belong to this learner")
        ensure_gradable(item.assessment)
    return items


# --- Concepts ---


def creation_concepts(assessment: Assessment, item: AssessmentItem) -> list[str]:
    meta = assessment.meta or {}
    per_item = (meta.get("item_concepts") or {}).get(str(item.item_order))
    if per_item:
        return list(per_item)
    return list(meta.get("concepts") or [])


def item_concepts(assessment: Assessment) -> dict[str, list[str]]:
    """Concepts per item id: latest evaluation echo, then creation-time concepts."""
    evaluations = ((assessment.meta or {}).get("evaluation_data") or {}).get("evaluations") or []
    graded = {e.get("item_id"): e.get("concepts") for e in evaluations if isinstance(e, dict)}
    concepts = {}
    for item in assessment.items:
        concepts[item.id] = list(graded.get(item.id) or []) or creation_concepts(assessment, item)
    return concepts


# --- Create ---


async def _keep_agent_log(db: AsyncSession) -> None:
    """Commit the failed call's ``agent_logs`` row before the request rolls back.

    Callers invoke this before any lifecycle write, so the log row is the only
    pending change.
    """
    await db.commit()


def build_curriculum_context(
    course: Course,
    topic: str,
    lesson_title: str | None,
    lesson_index: int | None,
    topic_index: int | None,
) -> CurriculumContext:
    if lesson_index is None:
        lesson_index = course.current_lesson_index
    if topic_index is None:
        topic_index = course.current_topic_index

    lessons = course.lessons
    lesson = lessons[lesson_index] if 0 <= lesson_index < len(lessons) else {}
    path = course.learning_path
    return CurriculumContext(
        topic=topic,
        course_title=course.title,
        course_description=course.description,
        lesson_title=lesson_title or lesson.get("title"),
        lesson_description=lesson.get("description"),
        lesson_index=lesson_index,
        topic_index=topic_index,
        path_title=path.title if path else None,
        path_goal=path.goal if path else None,
        path_subject=path.subject if path else None,
        path_domain=path.domain if path else None,
        path_level=path.level if path else None,
    )


async def create_assessment(
    db: AsyncSession,
    user_id: str,
    course_id: str,
    topic: str,
    lesson_title: str | None = None,
    lesson_index: int | None = None,
    topic_index: int | None = None,
) -> CreatedAssessment:
    course = await load_owned_course(db, user_id, course_id)

    existing = await store.find_in_progress(db, user_id, course_id)
    if existing is not None:
        raise ConflictError(existing.id)

    context = build_curriculum_context(course, topic, lesson_title, lesson_index, topic_index)
    ctx = AgentContext(db=db, user_id=user_id, course_id=course_id)

    # Nothing but the agent log is persisted unless generation yields a usable payload
    try:
        generated = await run_item_writer(ctx, context)
    except GenerationFailed:
        await _keep_agent_log(db)
        raise

    assessment = await store.create_assessment(
        db,
        user_id=user_id,
        course_id=course_id,
        generated=generated,
        meta={
            "concepts": generated.concepts,
            "item_concepts": {str(i.item_order): i.concepts for i in generated.items},
            "topic": topic,
            "lesson_title": context.lesson_title,
            "lesson_index": context.lesson_index,
            "topic_index": context.topic_index,
        },
    )

    mark_assessment_started(course, assessment.id, topic)
    await db.flush()

    logger.info(
        "Created assessment %s for course %s topic %r with %d items",
        assessment.id, course_id, topic, assessment.total_items,
    )
    return CreatedAssessment(
        assessment_id=assessment.id,
        total_items=assessment.total_items,
        concepts=list(generated.concepts),
    )


# --- Answers ---


async def record_answer(db: AsyncSession, user_id: str, item_id: str, answer: str) -> bool:
    items = await load_owned_items(db, user_id, [item_id])
    return await store.record_answer(db, items[item_id], answer)


async def record_answers(
    db: AsyncSession, user_id: str, updates: list[tuple[str, str]]
) -> list[store.ItemWriteResult]:
    items = await load_owned_items(db, user_id, [item_id for item_id, _ in updates])
    return await store.record_answers(db, [(items[item_id], answer) for item_id, answer in updates])


def resolve_answers(
    items: list[AssessmentItem], submitted: list[SubmittedAnswer]
) -> dict[str, str]:
    """Map item id to the answer being graded.

    Answers carrying an item id are matched by id, the rest by position. Items
    left without an answer fall back to the last autosaved one, else blank.
    """
    known = {item.id for item in items}
    answers: dict[str, str] = {}
    for index, entry in enumerate(submitted):
        if entry.answer is None:
            continue
        if entry.item_id:
            if entry.item_id in known:
                answers[entry.item_id] = entry.answer
            else:
                logger.warning("Ignoring answer for unknown item %s", entry.item_id)
        elif index < len(items):
            answers.setdefault(items[index].id, entry.answer)

    for item in items:
        if item.id not in answers:
            answers[item.id] = item.user_answer or ""
    return answers


# --- Submit ---


async def submit_assessment(
    db: AsyncSession,
    user_id: str,
    assessment_id: str,
    course_id: str,
    answers: list[SubmittedAnswer],
) -> SubmissionResult:
    assessment = await load_owned_assessment(db, user_id, assessment_id)
    if assessment.course_id != course_id:
        raise OwnershipError("Assessment does not belong to this course")
    ensure_gradable(assessment)
    course = await load_owned_course(db, user_id, course_id)

    items = list(assessment.items)
    if not items:
        raise NotFoundError("Assessment items not found")

    resolved = resolve_answers(items, answers)
    gradable = [
        GradableItem(
            id=item.id,
            item_order=item.item_order,
            item_type=item.item_type,
            question_text=item.question_text,
            correct_answer=item.correct_answer,
            user_answer=resolved[item.id],
            concepts=creation_concepts(assessment, item),
        )
        for item in items
    ]

    ctx = AgentContext(db=db, user_id=user_id, course_id=course_id)
    grading = await grade_submission(ctx, gradable)
    summary = aggregate_scores(grading.evaluations, assessment.total_items)

    write_results = await store.finalize_assessment(
        db,
        assessment,
        evaluations=grading.evaluations,
        answers=resolved,
        overall_score=summary.overall_score,
        passed=summary.passed,
        evaluation_data=grading.to_dict(),
        failed_concepts=grading.failed_concepts,
    )

    if summary.passed:
        mark_assessment_passed(course, assessment.id)
        await advance_curriculum_pointer(db, course)

    logger.info(
        "Assessment %s graded %.1f (%s)%s",
        assessment.id,
        summary.overall_score,
        assessment.status,
        " with degraded grading" if grading.degraded else "",
    )
    return SubmissionResult(
        assessment_id=assessment.id,
        passed=summary.passed,
        score=summary.overall_score,
        correct_count=summary.correct_count,
        total_items=assessment.total_items,
        failed_concepts=grading.failed_concepts,
        failed_item_writes=[r.item_id for r in write_results if not r.success],
    )


# --- Summary ---


async def get_summary(db: AsyncSession, user_id: str, assessment_id: str) -> tuple[str, bool]:
    """Return (summary, cached). Generated at most once per grading."""
    assessment = await load_owned_assessment(db, user_id, assessment_id)
    if assessment.status not in (COMPLETED, FAILED):
        raise InvalidTransitionError("Assessment has not been graded yet")

    cached = (assessment.meta or {}).get("summary")
    if cached:
        return cached, True

    ctx = AgentContext(db=db, user_id=user_id, course_id=assessment.course_id)
    try:
        summary = await run_assessment_summarizer(ctx, assessment, item_concepts(assessment))
    except GenerationFailed:
        await _keep_agent_log(db)
        raise

    assessment.meta = {**(assessment.meta or {}), "summary": summary}
    await db.flush()
    return summary, False


# --- Readiness ---


async def mark_ready(
    db: AsyncSession,
    user_id: str,
    course_id: str,
    topic: str,
    lesson_index: int | None = None,
    topic_index: int | None = None,
) -> Course:
    course = await load_owned_course(db, user_id, course_id)
    if mark_assessment_ready(course, topic, lesson_index, topic_index):
        await db.flush()
    return course
