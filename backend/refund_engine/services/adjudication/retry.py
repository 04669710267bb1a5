"""
Bounded retry for collaborator calls.

Every registry, document store and sanctions list call runs under a
timeout and is retried with the configured backoff delays. Exhausted
retries raise InfrastructureError; the caller decides where to park
the request.

A call that times out is abandoned, not stopped: a running thread cannot
be interrupted, so it keeps its worker until the collaborator returns.
Abandoned calls are counted (see abandoned_calls(), reported on /health)
and, while every worker is held by one, new calls fail fast instead of
queueing behind them.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Tuple, TypeVar

from ...config import EngineConfig
from .errors import InfrastructureError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CALL_WORKERS = 8

_CALL_EXECUTOR = ThreadPoolExecutor(max_workers=CALL_WORKERS, thread_name_prefix="collaborator-call")
_abandoned = 0
_abandoned_guard = threading.Lock()


def abandoned_calls() -> int:
    """Timed-out collaborator calls still holding a worker."""
    with _abandoned_guard:
        return _abandoned


def _abandon(future: Future) -> None:
    global _abandoned
    with _abandoned_guard:
        _abandoned += 1
    future.add_done_callback(_reclaim)


def _reclaim(future: Future) -> None:
    global _abandoned
    with _abandoned_guard:
        _abandoned -= 1


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    delays: Tuple[float, ...] = (0.5, 1.0, 2.0)
    timeout: float = 10.0

    @classmethod
    def from_config(cls, config: EngineConfig) -> "RetryPolicy":
        return cls(
            attempts=max(1, config.retry_attempts),
            delays=config.retry_delays,
            timeout=config.external_call_timeout,
        )

    def delay_before(self, attempt: int) -> float:
        """Wait before the given attempt number (1-based)."""
        if attempt <= 1 or not self.delays:
            return 0.0
        return self.delays[min(attempt - 2, len(self.delays) - 1)]


def call_with_backoff(
    fn: Callable[..., T],
    *args,
    operation: str,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> T:
    """
    Call a collaborator with timeout and bounded retries.

    Retries on InfrastructureError, OSError (connection failures) and timeouts.
    Any other exception propagates immediately.
    """
    last_error = None

    for attempt in range(1, policy.attempts + 1):
        wait = policy.delay_before(attempt)
        if attempt > 1:
            logger.warning(f"Retrying {operation} (attempt {attempt}/{policy.attempts}) in {wait}s: {last_error}")
            if wait > 0:
                sleep(wait)

        stuck = abandoned_calls()
        if stuck >= CALL_WORKERS:
            last_error = InfrastructureError(f"All {stuck} collaborator workers held by timed-out calls", operation)
            continue

        future = _CALL_EXECUTOR.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=policy.timeout)
        except FutureTimeout:
            if not future.cancel():
                _abandon(future)
                logger.warning(f"{operation} still running after {policy.timeout}s; {abandoned_calls()} call(s) abandoned")
            last_error = InfrastructureError(f"{operation} timed out after {policy.timeout}s", operation)
        except (InfrastructureError, OSError) as e:
            last_error = e

    logger.error(f"{operation} failed after {policy.attempts} attempts: {last_error}")
    raise InfrastructureError(
        f"{operation} unavailable after {policy.attempts} attempts: {last_error}",
        operation,
    )
