import asyncio
import logging
from dataclasses import dataclass

from pydantic_ai import Agent

from mentor.agents.logging import AgentContext, run_agent
from mentor.agents.parsing import PayloadParseError, parse_payload
from mentor.config import settings
from mentor.schemas.assessment import GeneratedAssessment
from mentor.services.errors import GenerationFailed

logger = logging.getLogger(__name__)

item_writer = Agent(
    output_type=str,
    retries=2,
    system_prompt=(
        "You are an expert educational assessment designer. Generate a comprehensive "
        "assessment for one topic of a course, based on its learning context.\n\n"
        "Requirements:\n"
        "1. Identify ALL sub-concepts within the topic (e.g. for 'Python syntax and data "
        "structures': lists, dicts, tuples, sets, list comprehensions).\n"
        "2. For EACH concept, generate AT LEAST 3 assessment items.\n"
        "3. An item may test several concepts (e.g. an exercise combining lists and dicts).\n"
        "4. Use diverse item types, choosing what suits each concept best: "
        "multiple_choice, true_false, short_answer, coding_exercise, fill_blank.\n"
        "5. Items must test genuine understanding at an appropriate difficulty.\n\n"
        "Output format (JSON only, no markdown):\n"
        "{\n"
        '  "concepts": ["concept1", "concept2"],\n'
        '  "items": [\n'
        "    {\n"
        '      "item_order": 1,\n'
        '      "item_type": "multiple_choice",\n'
        '      "question_text": "For multiple_choice, ALWAYS put the options in the text: '
        "'Question? A) Option1 B) Option2 C) Option3 D) Option4'\",\n"
        '      "correct_answer": "For multiple_choice the option letter or full option text; '
        'otherwise the expected answer or output",\n'
        '      "concepts": ["concept1"],\n'
        '      "level": "beginner | intermediate | advanced"\n'
        "    }\n"
        "  ]\n"
        "}\n\n"
        "Return ONLY valid JSON."
    ),
)


@dataclass
class CurriculumContext:
    """Everything the item writer knows about where the topic sits in the curriculum."""

    topic: str
    course_title: str
    course_description: str | None = None
    lesson_title: str | None = None
    lesson_description: str | None = None
    lesson_index: int | None = None
    topic_index: int | None = None
    path_title: str | None = None
    path_goal: str | None = None
    path_subject: str | None = None
    path_domain: str | None = None
    path_level: str | None = None


def build_item_writer_prompt(context: CurriculumContext) -> str:
    prompt = ""
    if context.path_title:
        prompt += (
            "Learning context:\n"
            f"Learning path: {context.path_title}\n"
            f"Goal: {context.path_goal or ''}\n"
            f"Subject: {context.path_subject or 'General'}\n"
            f"Domain: {context.path_domain or 'General'}\n"
            f"Level: {context.path_level or 'intermediate'}\n\n"
        )
    prompt += f"Course: {context.course_title}\n"
    if context.course_description:
        prompt += f"Course description: {context.course_description}\n"
    prompt += f"\nLesson: {context.lesson_title or 'Current lesson'}\n"
    if context.lesson_description:
        prompt += f"Lesson description: {context.lesson_description}\n"
    prompt += f"\nTopic to assess: {context.topic}\n"
    return prompt


async def run_item_writer(ctx: AgentContext, context: CurriculumContext) -> GeneratedAssessment:
    """Generate and validate assessment items. Raises GenerationFailed on any unusable result."""
    prompt = build_item_writer_prompt(context)
    try:
        raw = await run_agent(
            ctx, item_writer, "item_writer", prompt,
            timeout=settings.generation_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise GenerationFailed(
            f"Item generation timed out after {settings.generation_timeout_seconds}s"
        ) from e
    except Exception as e:
        logger.exception("Item writer call failed for topic %r", context.topic)
        raise GenerationFailed("Item generation failed") from e

    try:
        return parse_payload(raw, GeneratedAssessment)
    except PayloadParseError as e:
        logger.error("Unusable item writer output for topic %r: %s", context.topic, e)
        raise GenerationFailed("Failed to generate a valid assessment") from e
