import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from mentor.auth.dependencies import get_current_user
from mentor.db.models import User
from mentor.db.session import get_db_session
from mentor.schemas.assessment import (
    AnswerBatchRequest,
    AnswerUpdateRequest,
    AnswerUpdateResponse,
    AssessmentCreatedResponse,
    AssessmentGenerateRequest,
    AssessmentItemResponse,
    AssessmentResponse,
    AssessmentSubmitRequest,
    ItemWriteResultResponse,
    SubmissionResponse,
    SummaryResponse,
)
from mentor.services import assessments
from mentor.services.errors import (
    AssessmentError,
    ConflictError,
    GenerationFailed,
    NotFoundError,
    OwnershipError,
)
from mentor.services.progression import InvalidTransitionError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/assessments", tags=["assessments"])


def _http_error(exc: Exception) -> HTTPException:
    """Translate a lifecycle error into the HTTP response the client expects."""
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=409,
            detail={
                "error": "An assessment is already in progress for this course",
                "existing_assessment_id": exc.existing_assessment_id,
                "message": "Please complete the current assessment before starting a new one.",
            },
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, OwnershipError):
        return HTTPException(status_code=403, detail="Unauthorized")
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, GenerationFailed):
        return HTTPException(
            status_code=503,
            detail={"error": str(exc), "retryable": True},
            headers={"Retry-After": "5"},
        )
    retryable = isinstance(exc, AssessmentError) and exc.retryable
    return HTTPException(status_code=503 if retryable else 400, detail=str(exc))


@router.post("/generate", response_model=AssessmentCreatedResponse)
async def generate_assessment(
    req: AssessmentGenerateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        created = await assessments.create_assessment(
            db,
            user_id=user.id,
            course_id=req.course_id,
            topic=req.topic,
            lesson_title=req.lesson_title,
            lesson_index=req.lesson_index,
            topic_index=req.topic_index,
        )
    except AssessmentError as e:
        raise _http_error(e)

    return AssessmentCreatedResponse(
        assessment_id=created.assessment_id,
        total_items=created.total_items,
        concepts=created.concepts,
    )


# Registered before /items/{item_id} so "batch" is not taken for an id
@router.patch("/items/batch", response_model=AnswerUpdateResponse)
async def update_answers(
    req: AnswerBatchRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        results = await assessments.record_answers(
            db, user.id, [(u.id, u.user_answer) for u in req.updates]
        )
    except (AssessmentError, InvalidTransitionError) as e:
        raise _http_error(e)

    failed = [r for r in results if not r.success]
    if failed:
        logger.error("Autosave failed for %d of %d items", len(failed), len(results))
    return AnswerUpdateResponse(
        success=not failed,
        updated=len(results) - len(failed),
        results=[
            ItemWriteResultResponse(item_id=r.item_id, success=r.success, error=r.error)
            for r in results
        ],
    )


@router.patch("/items/{item_id}", response_model=AnswerUpdateResponse)
async def update_answer(
    item_id: str,
    req: AnswerUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        written = await assessments.record_answer(db, user.id, item_id, req.user_answer)
    except (AssessmentError, InvalidTransitionError) as e:
        raise _http_error(e)
    return AnswerUpdateResponse(success=True, updated=1 if written else 0)


@router.get("/{assessment_id}", response_model=AssessmentResponse)
async def get_assessment(
    assessment_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        assessment = await assessments.load_owned_assessment(db, user.id, assessment_id)
    except AssessmentError as e:
        raise _http_error(e)

    concepts = assessments.item_concepts(assessment)
    return AssessmentResponse(
        id=assessment.id,
        course_id=assessment.course_id,
        status=assessment.status,
        total_items=assessment.total_items,
        overall_score=assessment.overall_score,
        completed_at=assessment.completed_at,
        metadata=assessment.meta or {},
        items=[
            AssessmentItemResponse(
                id=item.id,
                item_order=item.item_order,
                item_type=item.item_type,
                question_text=item.question_text,
                correct_answer=item.correct_answer,
                level=item.level,
                user_answer=item.user_answer,
                score=item.score,
                is_correct=item.is_correct,
                error_type=item.error_type,
                concepts=concepts.get(item.id, []),
            )
            for item in assessment.items
        ],
    )


@router.post("/{assessment_id}/submit", response_model=SubmissionResponse)
async def submit_assessment(
    assessment_id: str,
    req: AssessmentSubmitRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        result = await assessments.submit_assessment(
            db,
            user_id=user.id,
            assessment_id=assessment_id,
            course_id=req.course_id,
            answers=req.answers,
        )
    except (AssessmentError, InvalidTransitionError) as e:
        raise _http_error(e)

    return SubmissionResponse(
        assessment_id=result.assessment_id,
        passed=result.passed,
        score=result.score,
        correct_count=result.correct_count,
        total_items=result.total_items,
        failed_concepts=result.failed_concepts,
        failed_item_writes=result.failed_item_writes,
    )


@router.post("/{assessment_id}/summary", response_model=SummaryResponse)
async def assessment_summary(
    assessment_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        summary, cached = await assessments.get_summary(db, user.id, assessment_id)
    except (AssessmentError, InvalidTransitionError) as e:
        raise _http_error(e)
    return SummaryResponse(summary=summary, cached=cached)
