from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from mentor.auth.dependencies import get_current_user
from mentor.db.models import Course, LearningPath, User
from mentor.db.session import get_db_session
from mentor.schemas.course import AssessmentReadyRequest, CourseCreateRequest, CourseResponse
from mentor.services.assessments import load_owned_course, mark_ready
from mentor.services.errors import NotFoundError, OwnershipError
from mentor.services.progression import is_course_complete

router = APIRouter(prefix="/api/courses", tags=["courses"])


def _course_response(course: Course) -> CourseResponse:
    return CourseResponse(
        id=course.id,
        title=course.title,
        description=course.description,
        learning_path_id=course.learning_path_id,
        lessons=course.lessons,
        current_lesson_index=course.current_lesson_index,
        current_topic_index=course.current_topic_index,
        completed=is_course_complete(course),
        metadata=course.meta or {},
    )


@router.post("", response_model=CourseResponse)
async def create_course(
    req: CourseCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    path = None
    if req.learning_path:
        path = LearningPath(user_id=user.id, **req.learning_path.model_dump())
        db.add(path)
        await db.flush()

    course = Course(
        user_id=user.id,
        learning_path_id=path.id if path else None,
        title=req.title,
        description=req.description,
        curriculum={"lessons": [lesson.model_dump() for lesson in req.lessons]},
        current_lesson_index=0,
        current_topic_index=0,
        meta={},
    )
    db.add(course)
    await db.flush()
    return _course_response(course)


@router.get("/{course_id}", response_model=CourseResponse)
async def get_course(
    course_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        course = await load_owned_course(db, user.id, course_id)
    except (NotFoundError, OwnershipError):
        raise HTTPException(status_code=404, detail="Course not found")
    return _course_response(course)


@router.post("/{course_id}/assessment-ready", response_model=CourseResponse)
async def assessment_ready(
    course_id: str,
    req: AssessmentReadyRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        course = await mark_ready(
            db, user.id, course_id, req.topic, req.lesson_index, req.topic_index
        )
    except (NotFoundError, OwnershipError):
        raise HTTPException(status_code=404, detail="Course not found")
    return _course_response(course)
