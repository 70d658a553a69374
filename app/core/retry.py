import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying store operation",
        attempt=retry_state.attempt_number,
        error=type(exc).__name__ if exc else None,
        detail=str(exc) if exc else None,
    )


def store_retrying(
    retry_on: tuple[type[BaseException], ...],
    *,
    max_attempts: int,
    backoff_min: float,
    backoff_max: float,
) -> AsyncRetrying:
    """Bounded exponential backoff; the last error is re-raised at the ceiling."""
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_min, min=backoff_min, max=backoff_max),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )
