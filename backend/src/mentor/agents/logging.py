import asyncio
import logging
import time
from dataclasses import dataclass

from pydantic_ai import Agent
from sqlalchemy.ext.asyncio import AsyncSession

from mentor.config import settings
from mentor.db.models import AgentLog

logger = logging.getLogger(__name__)


@dataclass
class AgentContext:
    """Scope of a generative call: the session to log into and the learner/course it serves."""

    db: AsyncSession
    user_id: str
    course_id: str


async def log_agent_call(
    ctx: AgentContext,
    agent_name: str,
    prompt: str,
    output: str | None,
    status: str,
    duration_ms: int,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
) -> AgentLog:
    entry = AgentLog(
        user_id=ctx.user_id,
        course_id=ctx.course_id,
        agent_name=agent_name,
        prompt=prompt,
        output=output,
        status=status,
        duration_ms=duration_ms,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        model_name=settings.default_model,
    )
    ctx.db.add(entry)
    await ctx.db.flush()
    return entry


class AgentTimer:
    """Wall-clock timer; ``duration_ms`` is live inside the block and frozen after it."""

    def __enter__(self):
        self._start = time.monotonic()
        self._end = None
        return self

    def __exit__(self, *args):
        self._end = time.monotonic()

    @property
    def duration_ms(self) -> int:
        end = self._end if self._end is not None else time.monotonic()
        return int((end - self._start) * 1000)


async def run_agent(
    ctx: AgentContext,
    agent: Agent[None, str],
    agent_name: str,
    prompt: str,
    timeout: float | None = None,
) -> str:
    """Run a text agent and record the call in ``agent_logs``.

    The raw text is returned unparsed; callers validate it so that unusable
    output is still logged verbatim for later inspection. The timeout applies
    to the model call only, so a call that runs out of time is logged before
    ``TimeoutError`` reaches the caller.
    """
    with AgentTimer() as timer:
        try:
            result = await asyncio.wait_for(
                agent.run(prompt, model=settings.default_model), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%s call timed out after %ss for course %s", agent_name, timeout, ctx.course_id
            )
            await log_agent_call(
                ctx, agent_name, prompt, output=f"Timed out after {timeout}s",
                status="timeout", duration_ms=timer.duration_ms,
            )
            raise
        except Exception as e:
            logger.warning("%s call failed for course %s: %s", agent_name, ctx.course_id, e)
            await log_agent_call(
                ctx, agent_name, prompt, output=str(e), status="error", duration_ms=timer.duration_ms
            )
            raise

    usage = result.usage()
    await log_agent_call(
        ctx,
        agent_name,
        prompt,
        output=result.output,
        status="success",
        duration_ms=timer.duration_ms,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
    )
    logger.debug("%s finished in %dms", agent_name, timer.duration_ms)
    return result.output
