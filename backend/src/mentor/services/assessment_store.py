"""Persistence for assessments and their items.

The store owns the single in-flight invariant: a partial unique index on
``(user_id, course_id) WHERE status = 'in_progress'`` backs up the read check in
the orchestrator, so concurrent creations resolve to one row and a ConflictError.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from mentor.agents.grader import ItemEvaluation
from mentor.db.models import COMPLETED, FAILED, IN_PROGRESS, Assessment, AssessmentItem, utcnow
from mentor.schemas.assessment import GeneratedAssessment
from mentor.services.errors import ConflictError, PersistenceError
from mentor.services.progression import transition_assessment

logger = logging.getLogger(__name__)


@dataclass
class ItemWriteResult:
    item_id: str
    success: bool
    error: str | None = None


async def find_in_progress(db: AsyncSession, user_id: str, course_id: str) -> Assessment | None:
    result = await db.execute(
        select(Assessment)
        .where(
            Assessment.user_id == user_id,
            Assessment.course_id == course_id,
            Assessment.status == IN_PROGRESS,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_assessment(db: AsyncSession, assessment_id: str) -> Assessment | None:
    result = await db.execute(
        select(Assessment)
        .where(Assessment.id == assessment_id)
        .options(selectinload(Assessment.items))
    )
    return result.scalar_one_or_none()


async def get_items(db: AsyncSession, item_ids: list[str]) -> list[AssessmentItem]:
    result = await db.execute(
        select(AssessmentItem)
        .where(AssessmentItem.id.in_(item_ids))
        .options(selectinload(AssessmentItem.assessment))
    )
    return list(result.scalars().all())


async def create_assessment(
    db: AsyncSession,
    user_id: str,
    course_id: str,
    generated: GeneratedAssessment,
    meta: dict,
) -> Assessment:
    """Insert the assessment and all of its items in one savepoint."""
    assessment = Assessment(
        user_id=user_id,
        course_id=course_id,
        status=IN_PROGRESS,
        total_items=len(generated.items),
        meta=meta,
        items=[
            AssessmentItem(
                item_order=item.item_order,
                item_type=item.item_type,
                question_text=item.question_text,
                correct_answer=item.correct_answer,
                level=item.level,
            )
            for item in generated.items
        ],
    )
    try:
        async with db.begin_nested():
            db.add(assessment)
            await db.flush()
    except IntegrityError as e:
        existing = await find_in_progress(db, user_id, course_id)
        if existing is None:
            raise
        logger.info(
            "Concurrent creation for user %s course %s lost to assessment %s",
            user_id, course_id, existing.id,
        )
        raise ConflictError(existing.id) from e
    return assessment


async def record_answer(db: AsyncSession, item: AssessmentItem, answer: str) -> bool:
    """Autosave a learner answer. Returns False when the stored value is already equal."""
    if item.user_answer == answer:
        return False
    item.user_answer = answer
    await db.flush()
    return True


async def record_answers(
    db: AsyncSession, updates: list[tuple[AssessmentItem, str]]
) -> list[ItemWriteResult]:
    results = []
    for item, answer in updates:
        try:
            async with db.begin_nested():
                await record_answer(db, item, answer)
        except SQLAlchemyError as e:
            error = PersistenceError(item.id, str(e))
            logger.warning("%s", error)
            results.append(ItemWriteResult(item_id=item.id, success=False, error=str(error)))
            continue
        results.append(ItemWriteResult(item_id=item.id, success=True))
    return results


async def write_item_result(
    db: AsyncSession, item: AssessmentItem, evaluation: ItemEvaluation, answer: str
) -> None:
    item.user_answer = answer
    item.score = evaluation.score
    item.is_correct = evaluation.is_correct
    item.error_type = evaluation.error_type
    await db.flush()


async def finalize_assessment(
    db: AsyncSession,
    assessment: Assessment,
    evaluations: list[ItemEvaluation],
    answers: dict[str, str],
    overall_score: float,
    passed: bool,
    evaluation_data: dict,
    failed_concepts: list[str],
) -> list[ItemWriteResult]:
    """Write per-item grades, then the assessment row.

    Item writes are isolated from each other; a failed one is logged and reported
    in the returned list but never blocks the assessment-level write, which is
    applied last as the authoritative completion signal.
    """
    items_by_id = {item.id: item for item in assessment.items}
    results = []
    for evaluation in evaluations:
        item = items_by_id[evaluation.item_id]
        try:
            async with db.begin_nested():
                await write_item_result(db, item, evaluation, answers.get(item.id, ""))
        except SQLAlchemyError as e:
            error = PersistenceError(item.id, str(e))
            logger.warning("Assessment %s: %s", assessment.id, error)
            results.append(ItemWriteResult(item_id=item.id, success=False, error=str(error)))
            continue
        results.append(ItemWriteResult(item_id=item.id, success=True))

    assessment.overall_score = overall_score
    assessment.completed_at = utcnow() if passed else None
    meta = {k: v for k, v in (assessment.meta or {}).items() if k != "summary"}
    assessment.meta = {
        **meta,
        "failed_concepts": failed_concepts,
        "evaluation_data": evaluation_data,
    }
    await transition_assessment(db, assessment, COMPLETED if passed else FAILED)
    return results
