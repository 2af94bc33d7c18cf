"""
Retry policy for relay submission and RPC reads.

A failed submission is retried inside the same cycle only when the cause
is plausibly gone a few seconds later (network blips, relay overload,
bundler mempool churn). Anything the chain or the paymaster has already
answered (revert, EntryPoint rejection, sponsorship refusal) is final for
this cycle and waits for the next cron run.
"""

import asyncio
import logging
import random
import re
from enum import Enum
from typing import Any, Optional

from .errors import RelayError

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"  # retried like TRANSIENT


# Relay errors already carry a verdict
_KIND_VERDICTS = {
    "relay_unavailable": ErrorType.TRANSIENT,
    "receipt_timeout": ErrorType.TRANSIENT,
    "reverted": ErrorType.PERMANENT,
    "sponsor_budget_exhausted": ErrorType.PERMANENT,
    "deployment_required": ErrorType.PERMANENT,
}

# Checked in order; the permanent groups come first so "reverted after
# timeout" is not retried
_MESSAGE_RULES: tuple[tuple[str, ErrorType, tuple[str, ...]], ...] = (
    ("onchain", ErrorType.PERMANENT, (
        "revert", "insufficient balance", "insufficient funds", "insufficient allowance",
    )),
    ("entrypoint", ErrorType.PERMANENT, ("prefund", "signature", "deployment")),
    ("sponsorship", ErrorType.PERMANENT, ("paymaster", "sponsor", "budget")),
    ("auth", ErrorType.PERMANENT, ("unauthorized", "forbidden", "401", "403")),
    ("request", ErrorType.PERMANENT, ("invalid", "malformed", "400")),
    ("network", ErrorType.TRANSIENT, (
        "connection", "connect", "timeout", "timed out", "network", "socket", "dns",
        "refused", "reset", "unreachable", "unavailable",
    )),
    ("throttled", ErrorType.TRANSIENT, ("rate limit", "too many requests", "throttl", "429")),
    ("upstream", ErrorType.TRANSIENT, ("bad gateway", "gateway timeout", "502", "503", "504")),
    ("mempool", ErrorType.TRANSIENT, ("replacement underpriced", "nonce too low")),
)

# EntryPoint validation codes AA10..AA59
_ENTRYPOINT_CODE = re.compile(r"\baa[1-5]\d\b")


def classify_error(error: Exception) -> ErrorType:
    """
    Decide whether ``error`` is worth another attempt this cycle.

    Relay errors are judged by their ``kind``. Everything else is matched
    against the exception message and class name; no match is UNKNOWN.
    """
    if isinstance(error, RelayError) and error.kind in _KIND_VERDICTS:
        return _KIND_VERDICTS[error.kind]

    text = str(error).lower()
    if _ENTRYPOINT_CODE.search(text):
        return ErrorType.PERMANENT

    haystacks = (text, type(error).__name__.lower())
    for _group, verdict, needles in _MESSAGE_RULES:
        if any(n in h for n in needles for h in haystacks):
            return verdict
    return ErrorType.UNKNOWN


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
) -> float:
    """Seconds to wait before attempt ``attempt + 1``: capped doubling, full jitter."""
    ceiling = min(base_delay * (2**attempt), max_delay)
    return random.uniform(0, ceiling) if jitter else ceiling


async def retry_with_backoff(
    func,
    *args,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    retry_on: tuple = (Exception,),
    **kwargs,
) -> tuple[bool, Any, Optional[Exception]]:
    """
    Await ``func(*args, **kwargs)`` up to ``max_attempts`` times.

    Returns ``(success, result, last_error)``. A permanent error ends the
    loop at once. Exceptions outside ``retry_on`` are not caught.
    """
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return True, await func(*args, **kwargs), None
        except retry_on as e:
            last_error = e

        if classify_error(last_error) is ErrorType.PERMANENT:
            logger.warning(f"Not retrying {type(last_error).__name__}: {last_error}")
            break

        if attempt < max_attempts:
            delay = calculate_backoff_delay(attempt - 1, base_delay, max_delay, jitter)
            logger.info(
                f"Attempt {attempt}/{max_attempts} failed ({last_error}); "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    return False, None, last_error
