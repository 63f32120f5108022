import asyncio

from pydantic_ai import Agent

from mentor.agents.logging import AgentContext, run_agent
from mentor.config import settings
from mentor.db.models import Assessment
from mentor.services.errors import GenerationFailed

assessment_summarizer = Agent(
    output_type=str,
    retries=1,
    system_prompt=(
        "You are an expert educational assessor. The student has just completed an "
        "assessment. Write a diagnostic summary that includes:\n"
        "1. A brief acknowledgment of completion\n"
        "2. The overall results (total questions, passed, failed, score, status)\n"
        "3. What the student demonstrated understanding of\n"
        "4. The concepts that need revision\n"
        "5. A brief explanation of what went wrong in failed items\n\n"
        "Do NOT include practice questions, 'Your Turn' sections, step-by-step revision "
        "content or detailed concept explanations.\n\n"
        "Be encouraging but clear about what needs improvement. Address the student as "
        "'You' or 'Your'."
    ),
)


def build_summary_prompt(assessment: Assessment, item_concepts: dict[str, list[str]]) -> str:
    items = assessment.items
    failed_items = [item for item in items if not item.is_correct]
    failed_concepts = (assessment.meta or {}).get("failed_concepts") or []

    score = assessment.overall_score if assessment.overall_score is not None else 0.0
    prompt = (
        "Assessment results:\n"
        f"- Total items: {len(items)}\n"
        f"- Passed: {len(items) - len(failed_items)}\n"
        f"- Failed: {len(failed_items)}\n"
        f"- Score: {score:.1f}%\n"
        f"- Status: {assessment.status}\n"
    )
    if failed_items:
        prompt += "\nFailed items:\n"
        for n, item in enumerate(failed_items, start=1):
            concepts = ", ".join(item_concepts.get(item.id, [])) or "Unknown"
            prompt += (
                f"\nItem {n}: {item.question_text}\n"
                f"  Correct Answer: {item.correct_answer}\n"
                f"  User Answer: {item.user_answer or 'No answer'}\n"
                f"  Error: {item.error_type or 'Incorrect'}\n"
                f"  Concepts: {concepts}\n"
            )
        prompt += f"\nFailed concepts that need revision: {', '.join(failed_concepts)}\n"
    return prompt


async def run_assessment_summarizer(
    ctx: AgentContext,
    assessment: Assessment,
    item_concepts: dict[str, list[str]],
) -> str:
    prompt = build_summary_prompt(assessment, item_concepts)
    try:
        summary = await run_agent(
            ctx, assessment_summarizer, "assessment_summarizer", prompt,
            timeout=settings.summary_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise GenerationFailed("Summary generation timed out") from e
    except Exception as e:
        raise GenerationFailed("Summary generation failed") from e

    if not summary or not summary.strip():
        raise GenerationFailed("Summary generation returned no text")
    return summary.strip()
