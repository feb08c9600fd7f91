"""
Retry policy and error compaction for extraction calls.
"""

import re
from dataclasses import dataclass

_COMPACT_PATTERNS = [
    (r"\brate.?limit", "Rate limit hit, retry needed"),
    (r"\btime[sd]?.?out\b", "Operation timed out"),
    (r"\bjson.?decode|\binvalid.?json\b|\bnot a json\b", "Invalid JSON response"),
    (r"\bconnection.?(refused|error)\b", "Connection failed"),
    (r"\bauthentication\b|\bunauthori[sz]ed\b|\b403\b", "Authentication failed"),
    (r"\binvalid.?api.?key\b", "Invalid API key"),
    (r"\bcontext.?length\b|\btoken.?limit\b", "Context too long"),
    (r"\bmodel.?overloaded\b", "Model temporarily unavailable"),
]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling, backoff base and per-attempt timeout."""

    max_attempts: int = 3
    base_delay: float = 1.0
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    def delay_for(self, attempt: int) -> float:
        """
        Backoff to wait after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            base_delay * 2^(attempt - 1) seconds
        """
        return self.base_delay * (2 ** (attempt - 1))


def compact_error(error: BaseException, max_length: int = 200) -> str:
    """
    Create a concise, single-line error description for log lines.

    Recognisable causes (rate limits, timeouts, bad JSON...) collapse to a
    short phrase; anything else is truncated to ``max_length`` characters.
    Error ledgers use ``describe_error`` instead.
    """
    error_type = type(error).__name__
    error_msg = " ".join((getattr(error, "message", None) or str(error)).split())

    error_lower = error_msg.lower()
    for pattern, simplified in _COMPACT_PATTERNS:
        if re.search(pattern, error_lower):
            return f"{error_type}: {simplified}"

    if not error_msg:
        return error_type

    if len(error_msg) > max_length:
        return f"{error_type}: {error_msg[:max_length]}..."

    return f"{error_type}: {error_msg}"


def describe_error(error: BaseException, max_length: int = 500) -> str:
    """
    Single-line ``Type: message`` description that keeps the original text.

    Used for error ledgers, where the message must stay readable; only
    whitespace is collapsed and overlong text truncated.
    """
    error_type = type(error).__name__
    error_msg = " ".join((getattr(error, "message", None) or str(error)).split())
    if not error_msg:
        return error_type
    if len(error_msg) > max_length:
        error_msg = f"{error_msg[:max_length]}..."
    return f"{error_type}: {error_msg}"
