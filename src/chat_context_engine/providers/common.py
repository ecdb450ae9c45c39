from __future__ import annotations

from loguru import logger
from tenacity import RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

DEFAULT_MAX_ATTEMPTS = 5


def _log_retry(max_attempts: int):
    def before_sleep(retry_state: RetryCallState) -> None:
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        reason = type(exc).__name__ if exc else "Unknown"
        logger.warning(
            f"{reason} from model API. Retrying in {wait:.0f}s "
            f"(attempt {retry_state.attempt_number}/{max_attempts})..."
        )

    return before_sleep


def default_retry_kwargs(
    exception_types: tuple[type[Exception], ...],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> dict:
    """tenacity ``retry`` arguments for rate limits and connection drops."""
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=10, min=10, max=320),
        "stop": stop_after_attempt(max_attempts),
        "before_sleep": _log_retry(max_attempts),
        "reraise": True,
    }
