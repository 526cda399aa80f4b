import logging
import textwrap
import threading
import time
from typing import Any, Callable, Dict, Hashable, NamedTuple, Optional, Set

import requests
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from .controls import format_cash_flow
from .dcf_engine import ValuationParameters

logger = logging.getLogger(__name__)

PERSONA = (
    "You are an AI steeped in Warren Buffett's value-investing philosophy. "
    "Review the user's valuation assumptions in Buffett's voice: sharp, wise "
    "and professional, with a touch of humour. Focus on margin of safety, the "
    "sustainability of growth and the durability of the moat. Keep the reply "
    "under 300 words."
)

# Retrying will not fix a missing or rejected credential.
TERMINAL_STATUSES = frozenset({401, 403})


class NarrativeUnavailable(RuntimeError):
    """Raised when no commentary could be obtained from the upstream model."""

    def __init__(self, message: str, attempts: int = 0, status_code: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code


class NarrativePending(RuntimeError):
    """Raised when a narrative for the same trigger is already in flight."""
    pass


class RetryPolicy(NamedTuple):
    """Attempt budget and backoff base: waits are base_delay * 2**k."""

    max_attempts: int = 5
    base_delay: float = 1.0


class _AttemptFailed(Exception):
    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.status_code = status_code


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, _AttemptFailed) and exc.status_code not in TERMINAL_STATUSES


def build_prompt(params: ValuationParameters, valuation: Dict[str, Any]) -> str:
    total = valuation.get("totalIntrinsicValue") or 0.0
    prompt = f"""
    I am running a DCF valuation on a company with these parameters:
    - Current base free cash flow (FCF): {format_cash_flow(params.base_cash_flow)}
    - Growth rate for the next 10 years: {params.growth_rate * 100:g}%
    - Discount rate (required return): {params.discount_rate * 100:g}%
    - Perpetual growth rate: {params.terminal_growth_rate * 100:g}%
    - Computed intrinsic value: {total:.2f} 亿

    From Buffett's point of view, comment on how reasonable these assumptions
    are, the margin of safety, and the main risks.
    """
    return textwrap.dedent(prompt).strip()


def build_payload(prompt: str, persona: str = PERSONA) -> Dict[str, Any]:
    return {
        "contents": [{"parts": [{"text": prompt}]}],
        "systemInstruction": {"parts": [{"text": persona}]},
    }


def extract_text(data: Any) -> Optional[str]:
    """Pull candidates[0].content.parts[0].text out of a generateContent reply."""
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(text, str) or not text.strip():
        return None
    return text


def _attempt(session: Any, endpoint: str, payload: Dict[str, Any], timeout: float) -> str:
    try:
        response = session.post(endpoint, json=payload, timeout=timeout)
    except requests.RequestException as exc:
        raise _AttemptFailed(f"transport error: {exc}") from exc
    status = response.status_code
    if status < 200 or status >= 300:
        raise _AttemptFailed(f"upstream returned {status}", status_code=status)
    try:
        data = response.json()
    except ValueError as exc:
        raise _AttemptFailed("upstream returned invalid JSON", status_code=status) from exc
    text = extract_text(data)
    if text is None:
        raise _AttemptFailed("upstream reply had no text", status_code=status)
    return text


def fetch_narrative(
    prompt: str,
    endpoint: str,
    session: Optional[Any] = None,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
    timeout: float = 30.0,
) -> str:
    """POST the prompt and return the commentary, retrying with backoff.

    Non-2xx replies, transport errors and empty replies are retried up to
    policy.max_attempts times with exponential waits (1s, 2s, 4s, ... by
    default). 401/403 stop immediately. Raises NarrativeUnavailable when
    nothing usable came back.
    """
    policy = policy or RetryPolicy()
    session = session or requests.Session()
    payload = build_payload(prompt)
    attempts = 0

    def attempt() -> str:
        nonlocal attempts
        attempts += 1
        return _attempt(session, endpoint, payload, timeout)

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.base_delay),
        retry=retry_if_exception(_is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )
    try:
        return retrying(attempt)
    except _AttemptFailed as exc:
        if exc.status_code in TERMINAL_STATUSES:
            logger.warning("Narrative upstream rejected credentials (%s); not retrying", exc.status_code)
            message = "Narrative upstream rejected the API key"
        else:
            message = f"Narrative unavailable after {attempts} attempts"
        raise NarrativeUnavailable(message, attempts=attempts, status_code=exc.status_code) from exc


class SingleFlight:
    """Allows one in-flight call per key; a duplicate is refused, not queued."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Set[Hashable] = set()

    def run(self, key: Hashable, func: Callable[[], Any]) -> Any:
        with self._lock:
            if key in self._pending:
                raise NarrativePending("A narrative for these parameters is already being generated")
            self._pending.add(key)
        try:
            return func()
        finally:
            with self._lock:
                self._pending.discard(key)

    def is_pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._pending
