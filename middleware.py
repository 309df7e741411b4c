"""
middleware.py — Cross-cutting helpers shared by the wizard stages.

Implements:
  - PIIMiddleware
  - ModelRetryMiddleware
  - CreditConfirmationMiddleware
  - FilesystemMiddleware
"""

import re
import json
import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from errors import AnalysisCancelled, RETRYABLE_KINDS, classify_error
from state import CreditConfirmation

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# PIIMiddleware
# ─────────────────────────────────────────────
class PIIMiddleware:
    """Masks sensitive patient data before logging."""

    DOB_RE   = re.compile(r"\d{4}-\d{2}-\d{2}")
    PHONE_RE = re.compile(r"\d{3}[-.\s]\d{3}[-.\s]\d{4}")
    EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+\.[a-z]{2,}")

    @classmethod
    def mask(cls, text: str, patient_name: Optional[str] = None) -> str:
        if not isinstance(text, str):
            text = str(text)

        if patient_name:
            text = text.replace(patient_name, "****")

        text = cls.DOB_RE.sub("****-**-**", text)
        text = cls.PHONE_RE.sub("***-***-****", text)
        text = cls.EMAIL_RE.sub("****@****.***", text)

        return text

    @staticmethod
    def mask_name(name: Optional[str]) -> str:
        if not name:
            return "<none>"
        return name[0] + "***"

    @classmethod
    def mask_state(cls, state: dict) -> dict:
        safe = dict(state)

        if safe.get("form"):
            form = dict(safe["form"])
            form["patient_name"]   = cls.mask_name(form.get("patient_name"))
            form["clinical_notes"] = cls.mask(form.get("clinical_notes", ""))
            safe["form"] = form

        if safe.get("patient"):
            patient = dict(safe["patient"])
            patient["birth_date"]          = "****-**-**" if patient.get("birth_date") else None
            patient["original_birth_date"] = "****-**-**" if patient.get("original_birth_date") else None
            safe["patient"] = patient

        if "captured_image" in safe:
            safe["captured_image"] = "<image>" if safe["captured_image"] else None

        return safe


# ─────────────────────────────────────────────
# ModelRetryMiddleware
# ─────────────────────────────────────────────
class ModelRetryMiddleware:
    """
    Auto-retries async remote calls with exponential backoff.

    max_retries counts the retries after the first attempt, so a call is
    made at most max_retries + 1 times. Only errors whose kind is in
    retry_on are retried; anything else is raised immediately.
    """

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 2.0,
        retry_on=RETRYABLE_KINDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay  = base_delay
        self.retry_on    = retry_on
        self._sleep      = sleep

    async def call(self, fn, *args, on_retry: Optional[Callable[[int, Exception], None]] = None, **kwargs):
        attempt = 0

        while True:
            try:
                return await fn(*args, **kwargs)

            except AnalysisCancelled:
                raise

            except Exception as e:
                kind = classify_error(e)

                if attempt >= self.max_retries or kind not in self.retry_on:
                    if attempt:
                        logger.error(
                            "[ModelRetryMiddleware] Giving up after %d attempts: %s",
                            attempt + 1, e
                        )
                    raise

                attempt += 1
                wait = self.base_delay * (2 ** (attempt - 1))

                logger.warning(
                    "[ModelRetryMiddleware] Attempt %d/%d failed (%s): %s, retrying in %.1fs",
                    attempt, self.max_retries + 1, kind.value, e, wait
                )

                if on_retry is not None:
                    on_retry(attempt, e)

                await self._sleep(wait)


# ─────────────────────────────────────────────
# CreditConfirmationMiddleware
# ─────────────────────────────────────────────
class CreditConfirmationMiddleware:
    """
    CLI-based confirm-before-spend prompt, used as the CreditGate prompt.
    """

    SEPARATOR = "─" * 60

    def __init__(self, input_fn: Callable[[str], str] = input):
        self._input = input_fn

    async def __call__(self, confirmation: CreditConfirmation) -> bool:
        return await asyncio.to_thread(self.review, confirmation)

    def review(self, confirmation: CreditConfirmation) -> bool:
        print(f"\n{self.SEPARATOR}")
        print("  💳  CREDIT CONFIRMATION")
        print(self.SEPARATOR)
        print(f"  Operation : {confirmation['label']}")
        print(f"  Cost      : {confirmation['cost']} credit(s)")
        print(f"  Balance   : {confirmation['remaining_balance']} credit(s)")
        print(self.SEPARATOR)

        while True:
            choice = self._input("\n  Use credits? (Y/N): ").strip().upper()

            if choice == "Y":
                print("  ✅ Confirmed.")
                return True

            elif choice == "N":
                print("  ❌ Declined.")
                return False

            else:
                print("  Please enter Y or N.")


# ─────────────────────────────────────────────
# FilesystemMiddleware
# ─────────────────────────────────────────────
class FilesystemMiddleware:
    """Safe JSON read/write helpers."""

    @staticmethod
    def read_json(path: str) -> dict:
        p = Path(path)

        if not p.exists():
            raise FileNotFoundError(
                f"[FilesystemMiddleware] File not found: {path}"
            )

        with open(p, "r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def write_json(path: str, data: dict) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)

        with open(p, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        logger.debug("[FilesystemMiddleware] Written: %s", path)

    @staticmethod
    def delete(path: str) -> bool:
        p = Path(path)

        if not p.exists():
            return False

        p.unlink()
        logger.debug("[FilesystemMiddleware] Deleted: %s", path)
        return True
