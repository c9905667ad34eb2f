from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Union

from loguru import logger
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from swe_worker.errors import OutputOverflowError, ThrottlingError, ThrottlingExhaustedError
from swe_worker.model_catalog import ModelConfig
from swe_worker.models import ModelResponse

DEFAULT_REASONING_BUDGET = 2000
MAX_REASONING_BUDGET = 31_999


@dataclass(frozen=True)
class Ok:
    response: ModelResponse | None


@dataclass(frozen=True)
class Retryable:
    reason: str


@dataclass(frozen=True)
class Fatal:
    error: Exception


CallOutcome = Union[Ok, Retryable, Fatal]


@dataclass
class TurnRetryState:
    """Per-turn counter of responses cut off by the output token limit."""

    overflow_count: int = 0


@dataclass(frozen=True)
class OutputPlan:
    max_tokens: int
    thinking_budget: int | None


def plan_output(
    model: ModelConfig,
    base_tokens: int,
    overflow_count: int,
    *,
    reasoning: bool,
    ultrathink: bool,
) -> OutputPlan:
    max_tokens = min(model.max_output_tokens, base_tokens * 2**overflow_count)
    if not reasoning:
        return OutputPlan(max_tokens=max_tokens, thinking_budget=None)

    if ultrathink:
        budget = min(model.max_output_tokens // 2, MAX_REASONING_BUDGET)
    else:
        budget = DEFAULT_REASONING_BUDGET
    max_tokens = max(max_tokens, min(budget * 2, model.max_output_tokens))
    return OutputPlan(max_tokens=max_tokens, thinking_budget=budget)


def _is_retryable(outcome: CallOutcome) -> bool:
    return isinstance(outcome, Retryable)


def _log_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    outcome = retry_state.outcome.result() if retry_state.outcome else None
    reason = outcome.reason if isinstance(outcome, Retryable) else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.1f}s (attempt {attempt})...")


def _last_outcome(retry_state) -> CallOutcome:
    return retry_state.outcome.result()


class RetryPolicy:
    """Wraps one model call with throttling backoff and output-overflow widening.

    Every attempt is classified as ``Ok``, ``Retryable`` or ``Fatal``; the
    tenacity loop only ever inspects that tag.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 100,
        max_overflow_retries: int = 5,
        wait: wait_base | None = None,
    ):
        self._max_attempts = max_attempts
        self._max_overflow_retries = max_overflow_retries
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=5)

    @property
    def max_overflow_retries(self) -> int:
        return self._max_overflow_retries

    async def invoke(
        self,
        call: Callable[[int], Awaitable[ModelResponse]],
        state: TurnRetryState,
        *,
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> ModelResponse | None:
        """Run ``call(overflow_count)`` until it succeeds.

        Returns ``None`` when cancellation is observed before an attempt.
        Raises the error carried by a ``Fatal`` outcome.
        """
        retrying = AsyncRetrying(
            retry=retry_if_result(_is_retryable),
            wait=self._wait,
            stop=stop_after_attempt(self._max_attempts),
            before_sleep=_log_retry,
            retry_error_callback=_last_outcome,
        )
        outcome = await retrying(self._attempt, call, state, is_cancelled)

        if isinstance(outcome, Ok):
            return outcome.response
        if isinstance(outcome, Retryable):
            raise ThrottlingExhaustedError(self._max_attempts, outcome.reason)
        raise outcome.error

    async def _attempt(
        self,
        call: Callable[[int], Awaitable[ModelResponse]],
        state: TurnRetryState,
        is_cancelled: Callable[[], bool],
    ) -> CallOutcome:
        if is_cancelled():
            return Ok(None)
        if state.overflow_count > self._max_overflow_retries:
            return Fatal(OutputOverflowError(state.overflow_count))

        try:
            response = await call(state.overflow_count)
        except ThrottlingError as ex:
            return Retryable(f"ThrottlingError: {ex}")
        except Exception as ex:
            logger.error(f"Model call failed: {ex!r}")
            return Fatal(ex)

        if response.stop_reason == "max_tokens":
            state.overflow_count += 1
            if state.overflow_count > self._max_overflow_retries:
                return Fatal(OutputOverflowError(state.overflow_count))
            return Retryable(f"Output truncated by max_tokens ({state.overflow_count} time(s))")
        return Ok(response)
