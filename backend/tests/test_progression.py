import pytest

from mentor.db.models import Assessment, Course
from mentor.services.progression import (
    InvalidTransitionError,
    advance_curriculum_pointer,
    ensure_gradable,
    is_course_complete,
    mark_assessment_passed,
    mark_assessment_ready,
    mark_assessment_started,
    next_position,
    transition_assessment,
)

LESSONS = [{"topics": ["a", "b"]}, {"topics": ["c"]}]


@pytest.mark.parametrize(
    "position, expected",
    [
        ((0, 0), (0, 1)),
        ((0, 1), (1, 0)),
        ((1, 0), (2, 0)),
        # Index past the curriculum keeps moving forward, never wraps
        ((2, 0), (3, 0)),
    ],
)
def test_next_position(position, expected):
    assert next_position(LESSONS, *position) == expected


def test_next_position_lesson_without_topics_moves_to_next_lesson():
    assert next_position([{"title": "empty"}, {"topics": ["x"]}], 0, 0) == (1, 0)


def _course(**kwargs) -> Course:
    defaults = {
        "user_id": "u",
        "title": "Course",
        "curriculum": {"lessons": LESSONS},
        "current_lesson_index": 0,
        "current_topic_index": 0,
        "meta": {},
    }
    defaults.update(kwargs)
    return Course(**defaults)


class _FakeSession:
    def __init__(self):
        self.flushes = 0

    async def flush(self):
        self.flushes += 1


async def test_advance_curriculum_pointer_walks_to_completion():
    course = _course()
    db = _FakeSession()

    positions = []
    for _ in range(3):
        await advance_curriculum_pointer(db, course)
        positions.append((course.current_lesson_index, course.current_topic_index))

    assert positions == [(0, 1), (1, 0), (2, 0)]
    assert is_course_complete(course)
    assert db.flushes == 3


@pytest.mark.parametrize(
    "start, score, target",
    [
        ("in_progress", 80.0, "completed"),
        ("in_progress", 79.999, "failed"),
        ("failed", 100.0, "completed"),
        ("failed", 10.0, "failed"),
    ],
)
async def test_valid_transitions(start, score, target):
    assessment = Assessment(status=start, total_items=1, overall_score=score)
    await transition_assessment(_FakeSession(), assessment, target)
    assert assessment.status == target


@pytest.mark.parametrize(
    "start, score, target",
    [
        ("completed", 100.0, "failed"),
        ("completed", 100.0, "completed"),
        ("in_progress", 50.0, "completed"),
        ("in_progress", 90.0, "failed"),
        ("in_progress", None, "failed"),
    ],
)
async def test_invalid_transitions(start, score, target):
    assessment = Assessment(status=start, total_items=1, overall_score=score)
    with pytest.raises(InvalidTransitionError):
        await transition_assessment(_FakeSession(), assessment, target)
    assert assessment.status == start


def test_completed_assessments_are_read_only():
    ensure_gradable(Assessment(status="in_progress", total_items=1))
    ensure_gradable(Assessment(status="failed", total_items=1))
    with pytest.raises(InvalidTransitionError):
        ensure_gradable(Assessment(id="done", status="completed", total_items=1))


def test_started_assessment_replaces_pending_topic():
    course = _course(meta={
        "pending_assessment_topic": "Loops",
        "pending_assessment_lesson_index": 0,
        "pending_assessment_topic_index": 0,
        "theme": "dark",
    })
    original = course.meta

    mark_assessment_started(course, "a-1", "Loops")

    assert course.meta == {
        "theme": "dark",
        "in_progress_assessment_id": "a-1",
        "in_progress_assessment_topic": "Loops",
    }
    assert "pending_assessment_topic" in original


def test_passed_assessment_clears_only_its_own_pointer():
    course = _course(meta={"in_progress_assessment_id": "a-1", "in_progress_assessment_topic": "Loops"})
    mark_assessment_passed(course, "a-1")
    assert course.meta == {"completed_assessment_id": "a-1"}

    course = _course(meta={"in_progress_assessment_id": "a-2", "in_progress_assessment_topic": "Conditionals"})
    mark_assessment_passed(course, "a-1")
    assert course.meta["in_progress_assessment_id"] == "a-2"
    assert course.meta["completed_assessment_id"] == "a-1"


def test_ready_topic_is_not_overwritten():
    course = _course()
    assert mark_assessment_ready(course, "Loops", 0, 0) is True
    assert mark_assessment_ready(course, "Conditionals", 0, 1) is False
    assert course.meta["pending_assessment_topic"] == "Loops"
