import json
import os
import re
from contextlib import ExitStack

import pytest

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from pydantic_ai import models  # noqa: E402
from pydantic_ai.messages import ModelResponse, TextPart, UserPromptPart  # noqa: E402
from pydantic_ai.models.function import FunctionModel  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from mentor.agents.grader import grading_judge  # noqa: E402
from mentor.agents.item_writer import item_writer  # noqa: E402
from mentor.agents.summarizer import assessment_summarizer  # noqa: E402
from mentor.db.models import Base, Course, LearningPath, User  # noqa: E402

models.ALLOW_MODEL_REQUESTS = False

LEARNER_ID = "learner-1"
OTHER_LEARNER_ID = "learner-2"

LESSONS = [
    {"title": "Control flow", "description": "Branching and repetition", "topics": ["Loops", "Conditionals"]},
    {"title": "Functions", "description": "Reusable code", "topics": ["Defining functions"]},
]

LOOPS_ASSESSMENT = {
    "concepts": ["for loops", "while loops", "range"],
    "items": [
        {
            "item_order": 1,
            "item_type": "multiple_choice",
            "question_text": "Which keyword starts a counted loop? A) for B) if C) def D) try",
            "correct_answer": "A",
            "concepts": ["for loops"],
            "level": "beginner",
        },
        {
            "item_order": 2,
            "item_type": "true_false",
            "question_text": "A while loop checks its condition before each iteration.",
            "correct_answer": "true",
            "concepts": ["while loops"],
            "level": "beginner",
        },
        {
            "item_order": 3,
            "item_type": "fill_blank",
            "question_text": "range(3) yields 0, 1 and ___.",
            "correct_answer": "2",
            "concepts": ["range"],
            "level": "beginner",
        },
        {
            "item_order": 4,
            "item_type": "short_answer",
            "question_text": "Which statement exits a loop early?",
            "correct_answer": "break",
            "concepts": ["for loops", "while loops"],
            "level": "intermediate",
        },
    ],
}

CORRECT_ANSWERS = ["A", "true", "2", "break"]

_JUDGE_ITEM = re.compile(
    r"Item (?P<order>\d+) \(ID: (?P<id>[^,]+), [a-z_]+\):.*?\n"
    r"Concepts tested: (?P<concepts>.*?)\n"
    r"Correct Answer: (?P<correct>.*?)\n"
    r"User Answer: (?P<answer>.*?)(?:\n\n|$)",
    re.DOTALL,
)


def prompt_text(messages) -> str:
    for message in reversed(messages):
        for part in getattr(message, "parts", []):
            if isinstance(part, UserPromptPart) and isinstance(part.content, str):
                return part.content
    return ""


def reply_with(text: str) -> FunctionModel:
    def respond(messages, info):
        return ModelResponse(parts=[TextPart(text)])

    return FunctionModel(respond)


def exact_match_judge(messages, info) -> ModelResponse:
    """Judge stand-in: grades the prompt's items by comparing answers, echoing their ids."""
    evaluations = []
    for match in _JUDGE_ITEM.finditer(prompt_text(messages)):
        correct = match["answer"].strip().lower() == match["correct"].strip().lower()
        evaluations.append({
            "item_id": match["id"],
            "score": 1.0 if correct else 0.0,
            "is_correct": correct,
            "error_type": None if correct else "You did not give the expected answer",
            "concepts": [c.strip() for c in match["concepts"].split(",") if c.strip()],
        })
    payload = {"evaluations": evaluations, "failed_concepts": []}
    return ModelResponse(parts=[TextPart("```json\n" + json.dumps(payload) + "\n```")])


class ModelStubs:
    """Deterministic models for the app's agents.

    The fixture installs the defaults for the whole test. Each method returns an
    ``Agent.override`` context manager; enter it with ``with`` inside the test
    body so the override is set and reset in the same context.
    """

    def item_writer_returns(self, text: str):
        return item_writer.override(model=reply_with(text))

    def item_writer_with(self, function):
        return item_writer.override(model=FunctionModel(function))

    def judge_returns(self, text: str):
        return grading_judge.override(model=reply_with(text))

    def judge_with(self, function):
        return grading_judge.override(model=FunctionModel(function))

    def summarizer_with(self, function):
        return assessment_summarizer.override(model=FunctionModel(function))


@pytest.fixture
def stubs():
    stubs = ModelStubs()
    with ExitStack() as stack:
        stack.enter_context(stubs.item_writer_returns(json.dumps(LOOPS_ASSESSMENT)))
        stack.enter_context(stubs.judge_with(exact_match_judge))
        yield stubs


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    # Let SQLAlchemy own BEGIN so SAVEPOINTs nest correctly on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def course(db):
    db.add_all([
        User(id=LEARNER_ID, email="learner@example.com"),
        User(id=OTHER_LEARNER_ID, email="other@example.com"),
    ])
    path = LearningPath(
        user_id=LEARNER_ID,
        title="Python foundations",
        goal="Write small scripts",
        subject="Programming",
        domain="Python",
        level="beginner",
    )
    db.add(path)
    await db.flush()
    course = Course(
        user_id=LEARNER_ID,
        learning_path_id=path.id,
        title="Intro to Python",
        description="First steps in Python",
        curriculum={"lessons": LESSONS},
        current_lesson_index=0,
        current_topic_index=0,
        meta={"pending_assessment_topic": "Loops", "pending_assessment_lesson_index": 0},
    )
    db.add(course)
    await db.commit()
    return course
