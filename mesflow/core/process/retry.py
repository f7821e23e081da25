"""Retry orchestration for action attempts.

``WorkflowExecutionEngine.execute_action`` performs exactly one attempt per
call. ``ActionRetryRunner`` is the invoking loop: it calls it again, with a
back-off delay, while the result says the failure is retryable and the
action's ``retry_count`` is not exhausted. Every attempt stays a separate
ActionLog row.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .workflow_engine import ActionExecutionResult, StepExecutionContext, WorkflowExecutionEngine

logger = logging.getLogger(__name__)


def compute_backoff(attempt: int, base: float = 1.0, factor: float = 2.0, jitter: float = 0.25, max_delay: float = 30.0) -> float:
    """Exponential back-off with jitter for the given (1-based) attempt"""
    delay = base * (factor ** max(0, attempt - 1))
    return min(max_delay, delay + random.uniform(0, jitter))


class ActionRetryRunner:
    """Runs an action until it succeeds or its retries are used up"""

    def __init__(
        self,
        engine: WorkflowExecutionEngine,
        base_delay: float = 1.0,
        jitter: float = 0.25,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.engine = engine
        self.base_delay = base_delay
        self.jitter = jitter
        self.max_delay = max_delay
        self._sleep = sleep

    async def run(
        self,
        context: StepExecutionContext,
        action_id: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> List[ActionExecutionResult]:
        """
        Execute an action with retries.

        Returns:
            One result per attempt, in order; the last one is final
        """
        attempts: List[ActionExecutionResult] = []
        while True:
            result = await self.engine.execute_action(context, action_id, parameters)
            attempts.append(result)
            if not result.should_retry:
                break
            delay = compute_backoff(
                len(attempts), base=self.base_delay, jitter=self.jitter, max_delay=self.max_delay
            )
            logger.info(
                f"Action {action_id} attempt {result.attempt} failed ({result.error_code}); "
                f"retrying in {delay:.2f}s, {result.retries_remaining} retries left"
            )
            await self._sleep(delay)
        return attempts
