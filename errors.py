# errors.py — Error taxonomy, classification and user-facing messages.

import asyncio
import logging
from enum import Enum
from typing import Optional

import openai

logger = logging.getLogger(__name__)

DUPLICATE_CODE = "23505"
REFERENCE_CODE = "23503"
INTEGRITY_CODES = frozenset({DUPLICATE_CODE, REFERENCE_CODE})

SAFE_MESSAGE_LIMIT = 100


class ErrorKind(Enum):
    CONNECTION           = "connection"
    RATE_LIMITED         = "rate_limited"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    NO_DATA              = "no_data"
    RESOURCE_LIMIT       = "resource_limit"
    SERVER               = "server"
    VALIDATION           = "validation"
    INTEGRITY_CONFLICT   = "integrity_conflict"
    GENERIC              = "generic"


RETRYABLE_KINDS = frozenset({ErrorKind.CONNECTION, ErrorKind.RATE_LIMITED, ErrorKind.SERVER})


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class WizardError(Exception):
    """Base error carrying an ErrorKind and an optional store/provider code."""

    kind = ErrorKind.GENERIC

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None, code: Optional[str] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.code = code


class StoreError(WizardError):
    """Failure reported by the persistent record store."""

    def __init__(self, message: str = "", code: Optional[str] = None):
        kind = ErrorKind.INTEGRITY_CONFLICT if code in INTEGRITY_CODES else ErrorKind.GENERIC
        super().__init__(message, kind=kind, code=code)


class NoDataError(WizardError):
    kind = ErrorKind.NO_DATA


class AnalysisCancelled(Exception):
    """Raised when the user aborts an in-flight analysis. Not a failure."""


# ─────────────────────────────────────────────
# Classification
# ─────────────────────────────────────────────
def _kind_from_status(status: Optional[int]) -> Optional[ErrorKind]:
    if status is None:
        return None
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 402:
        return ErrorKind.INSUFFICIENT_CREDITS
    if status == 413:
        return ErrorKind.RESOURCE_LIMIT
    if status >= 500:
        return ErrorKind.SERVER
    return None


def _kind_from_message(message: str) -> ErrorKind:
    text = message.lower()

    if "429" in text or "rate limit" in text or "rate_limited" in text:
        return ErrorKind.RATE_LIMITED
    if "402" in text or "insufficient_credits" in text or "payment_required" in text:
        return ErrorKind.INSUFFICIENT_CREDITS
    if "413" in text or "payload too large" in text or "too large" in text:
        return ErrorKind.RESOURCE_LIMIT
    if "failed to fetch" in text or "network" in text or "timeout" in text or "timed out" in text:
        return ErrorKind.CONNECTION
    if "500" in text or "internal server error" in text or "edge function" in text:
        return ErrorKind.SERVER
    if "no analysis data" in text or "no data" in text:
        return ErrorKind.NO_DATA
    return ErrorKind.GENERIC


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, WizardError):
        return exc.kind

    if isinstance(exc, openai.RateLimitError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, openai.APIConnectionError):    # includes APITimeoutError
        return ErrorKind.CONNECTION
    if isinstance(exc, openai.APIStatusError):
        return _kind_from_status(exc.status_code) or ErrorKind.GENERIC

    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.CONNECTION

    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(status, int):
        kind = _kind_from_status(status)
        if kind is not None:
            return kind

    return _kind_from_message(str(exc))


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) in RETRYABLE_KINDS


# ─────────────────────────────────────────────
# User-facing messages
# ─────────────────────────────────────────────
ANALYSIS_MESSAGES = {
    ErrorKind.CONNECTION:           "Connection lost during the analysis. Check your network and try again.",
    ErrorKind.RATE_LIMITED:         "Too many requests. Wait a moment and try again.",
    ErrorKind.INSUFFICIENT_CREDITS: "Not enough credits for this analysis.",
    ErrorKind.NO_DATA:              "The analysis returned no data. Try another photo.",
    ErrorKind.RESOURCE_LIMIT:       "The photo is too large to analyze. Use a smaller image.",
    ErrorKind.SERVER:               "The analysis service is unavailable. Try again shortly.",
    ErrorKind.GENERIC:              "Could not analyze the photo. Try again or continue manually.",
}

SUBMISSION_MESSAGES = {
    ErrorKind.CONNECTION:   "Connection error while creating the case. Check your network.",
    ErrorKind.RATE_LIMITED: "Too many requests. Wait a moment and submit again.",
    ErrorKind.GENERIC:      "Could not create the case. Try again.",
}

DUPLICATE_MESSAGE = "A patient with this name already exists."
REFERENCE_MESSAGE = "Invalid reference while saving the case. Reload and try again."


def user_message(kind: ErrorKind, stage: str = "analysis") -> str:
    table = ANALYSIS_MESSAGES if stage == "analysis" else SUBMISSION_MESSAGES
    return table.get(kind, table[ErrorKind.GENERIC])


def safe_message(exc: BaseException, fallback: str, limit: int = SAFE_MESSAGE_LIMIT) -> str:
    text = str(exc).strip()
    if text and len(text) < limit:
        return f"Error: {text}"
    return fallback


def submission_error_message(exc: BaseException) -> tuple[str, bool]:
    """
    Message for an exception that escaped the submission phases, plus
    whether the user should be sent back to review.
    """
    kind = classify_error(exc)
    code = getattr(exc, "code", None)

    if code == DUPLICATE_CODE:
        return DUPLICATE_MESSAGE, True
    if code == REFERENCE_CODE:
        return REFERENCE_MESSAGE, True
    if kind is ErrorKind.RATE_LIMITED:
        return user_message(kind, "submission"), False
    if kind is ErrorKind.CONNECTION:
        return user_message(kind, "submission"), True
    return safe_message(exc, user_message(ErrorKind.GENERIC, "submission")), True
