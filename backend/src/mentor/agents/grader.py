import asyncio
import logging
import math
import re
from dataclasses import asdict, dataclass, field

from pydantic_ai import Agent

from mentor.agents.logging import AgentContext, run_agent
from mentor.agents.parsing import PayloadParseError, parse_payload
from mentor.config import settings
from mentor.schemas.assessment import JudgeEvaluation, JudgeOutput
from mentor.services.errors import GradingDegraded

logger = logging.getLogger(__name__)

CORRECT_THRESHOLD = 0.5
NO_ANSWER = "No answer provided"

_ITEM_LABEL = re.compile(r"^\s*item\s*#?\s*(\d+)\s*$", re.IGNORECASE)

grading_judge = Agent(
    output_type=str,
    retries=2,
    system_prompt=(
        "You are an expert educational assessor. Evaluate assessment answers with fairness "
        "and educational intent. Give partial credit when appropriate.\n\n"
        "Evaluation criteria:\n"
        "1. multiple_choice: accept the correct option letter (A-E) OR the correct option "
        "text, even if formatting differs.\n"
        "2. true_false: accept any common spelling or case (true/True/yes/y, false/False/no/n).\n"
        "3. short_answer: full credit when the answer shows understanding even if worded "
        "differently; 0.5-0.7 for partial understanding or missing details.\n"
        "4. coding_exercise: full credit for correct logic or output even with minor style "
        "differences; 0.5-0.8 for the correct approach with minor syntax errors; 0.3-0.5 "
        "for the correct approach but an incomplete implementation.\n"
        "5. fill_blank: accept semantically correct answers, synonyms, typos and equivalent "
        "expressions.\n\n"
        "Only give 0 for a fundamental misunderstanding, no attempt, or a completely wrong "
        "approach.\n\n"
        "For each item report: score (0.0-1.0), is_correct (true if score >= 0.5), "
        "error_type (what went wrong, addressing the student as 'You'; null if fully "
        "correct) and the concepts it tests.\n\n"
        "Output format (JSON only):\n"
        "{\n"
        '  "evaluations": [\n'
        '    {"item_id": "the exact item ID given, not \'Item X\'", "score": 0.0, '
        '"is_correct": false, "error_type": null, "concepts": ["concept1"]}\n'
        "  ],\n"
        '  "failed_concepts": ["all unique concepts from items with score < 0.5"]\n'
        "}"
    ),
)


@dataclass
class GradableItem:
    id: str
    item_order: int
    item_type: str
    question_text: str
    correct_answer: str
    user_answer: str
    concepts: list[str] = field(default_factory=list)


@dataclass
class ItemEvaluation:
    item_id: str
    item_order: int
    score: float
    is_correct: bool
    error_type: str | None
    concepts: list[str]
    source: str  # judge, fallback


@dataclass
class GradingResult:
    evaluations: list[ItemEvaluation]
    failed_concepts: list[str]
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "evaluations": [asdict(e) for e in self.evaluations],
            "failed_concepts": list(self.failed_concepts),
            "degraded": self.degraded,
        }


def clamp_score(value: float | None) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def fallback_evaluate(item: GradableItem) -> ItemEvaluation:
    """Deterministic grading: case-insensitive, trimmed exact match."""
    submitted = (item.user_answer or "").strip().lower()
    expected = (item.correct_answer or "").strip().lower()
    correct = bool(submitted) and submitted == expected
    return ItemEvaluation(
        item_id=item.id,
        item_order=item.item_order,
        score=1.0 if correct else 0.0,
        is_correct=correct,
        error_type=None if correct else "Answer mismatch",
        concepts=list(item.concepts),
        source="fallback",
    )


def evaluation_from_judge(entry: JudgeEvaluation, item: GradableItem) -> ItemEvaluation:
    if entry.score is not None:
        score = clamp_score(entry.score)
    else:
        score = 1.0 if entry.is_correct else 0.0

    error_type = None
    if score < 1.0:
        error_type = (entry.error_type or "").strip() or (
            "Partially correct" if score >= CORRECT_THRESHOLD else "Incorrect answer"
        )

    return ItemEvaluation(
        item_id=item.id,
        item_order=item.item_order,
        score=score,
        is_correct=score >= CORRECT_THRESHOLD,
        error_type=error_type,
        concepts=[c for c in entry.concepts if c] or list(item.concepts),
        source="judge",
    )


def match_evaluations(
    entries: list[JudgeEvaluation], items: list[GradableItem]
) -> dict[str, JudgeEvaluation]:
    """Associate judge entries with items.

    Each pass runs over all remaining entries: exact item id first, then an
    "Item N" label against item order, then position. An item is claimed at most
    once, so a positional guess never takes an item some entry names exactly.
    """
    by_id = {item.id: item for item in items}
    by_order = {item.item_order: item for item in items}
    matched: dict[str, JudgeEvaluation] = {}

    def claim(item: GradableItem, index: int, entry: JudgeEvaluation) -> None:
        if item.id in matched:
            logger.warning(
                "Judge entry %r at index %d duplicates item %s, ignoring",
                entry.item_id, index, item.id,
            )
        else:
            matched[item.id] = entry

    without_id = []
    for index, entry in enumerate(entries):
        item = by_id.get(entry.item_id or "")
        if item is not None:
            claim(item, index, entry)
        else:
            without_id.append((index, entry))

    positional = []
    for index, entry in without_id:
        label = _ITEM_LABEL.match(entry.item_id or "")
        item = by_order.get(int(label.group(1))) if label else None
        if item is not None:
            claim(item, index, entry)
        else:
            positional.append((index, entry))

    for index, entry in positional:
        if index < len(items) and items[index].id not in matched:
            matched[items[index].id] = entry
        else:
            logger.warning("No free item for judge entry %r at index %d", entry.item_id, index)

    return matched


def collect_failed_concepts(evaluations: list[ItemEvaluation]) -> list[str]:
    failed: dict[str, None] = {}
    for evaluation in evaluations:
        if evaluation.score < CORRECT_THRESHOLD:
            for concept in evaluation.concepts:
                failed.setdefault(concept, None)
    return list(failed)


def build_grading_prompt(items: list[GradableItem]) -> str:
    blocks = []
    for item in items:
        blocks.append(
            f"Item {item.item_order} (ID: {item.id}, {item.item_type}): {item.question_text}\n"
            f"Concepts tested: {', '.join(item.concepts)}\n"
            f"Correct Answer: {item.correct_answer}\n"
            f"User Answer: {item.user_answer.strip() or NO_ANSWER}"
        )
    return "Assessment items and answers:\n\n" + "\n\n".join(blocks)


async def run_grading_judge(ctx: AgentContext, items: list[GradableItem]) -> JudgeOutput:
    prompt = build_grading_prompt(items)
    try:
        raw = await run_agent(
            ctx, grading_judge, "grading_judge", prompt,
            timeout=settings.grading_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise GradingDegraded(
            f"Grading timed out after {settings.grading_timeout_seconds}s"
        ) from e
    except Exception as e:
        raise GradingDegraded(f"Grading call failed: {e}") from e

    try:
        return parse_payload(raw, JudgeOutput)
    except PayloadParseError as e:
        raise GradingDegraded(str(e)) from e


async def grade_submission(ctx: AgentContext, items: list[GradableItem]) -> GradingResult:
    """Grade every item, producing exactly one evaluation per item in item order.

    Judge failures of any kind are recovered with deterministic grading.
    """
    degraded = False
    try:
        output = await run_grading_judge(ctx, items)
        matched = match_evaluations(output.evaluations, items)
    except GradingDegraded as e:
        logger.warning("Falling back to exact-match grading: %s", e)
        degraded = True
        matched = {}

    evaluations = []
    for item in items:
        entry = matched.get(item.id)
        if entry is None:
            if not degraded:
                logger.warning("Judge did not evaluate item %s, grading by exact match", item.id)
            evaluations.append(fallback_evaluate(item))
        else:
            evaluations.append(evaluation_from_judge(entry, item))

    return GradingResult(
        evaluations=evaluations,
        failed_concepts=collect_failed_concepts(evaluations),
        degraded=degraded,
    )
