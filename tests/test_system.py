"""
tests/test_system.py — Verification suite for the wizard building blocks.

Run with:
  python -m pytest tests/ -v
  python tests/test_system.py        (standalone)
"""

import sys
import asyncio
import tempfile
from datetime import date
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

import httpx
import openai

from clinical import (
    SOFT_TISSUE, TREATMENT_ALIASES, TREATMENT_TYPES,
    age_from_birth_date, effective_treatment, full_region, generic_protocol,
    infer_cavity_class, infer_referral_specialty, normalize_treatment,
)
from errors import (
    ErrorKind, NoDataError, StoreError, WizardError,
    classify_error, safe_message, submission_error_message,
)
from events import NoticeEmitter, NoticeLevel
from middleware import FilesystemMiddleware, ModelRetryMiddleware, PIIMiddleware
from state import WizardStore
from support import check, make_state


# ─────────────────────────────────────────────
# TEST 1: PIIMiddleware
# ─────────────────────────────────────────────
def test_pii_middleware():
    print("\n[1] PIIMiddleware")
    text = "Maria Silva born 1985-03-22, phone 902-555-0101, maria@clinic.com"
    masked = PIIMiddleware.mask(text, "Maria Silva")
    check("name masked",  "Maria Silva" not in masked)
    check("DOB masked",   "****-**-**" in masked)
    check("phone masked", "***-***-****" in masked)
    check("email masked", "****@****.***" in masked)

    state = make_state(
        form={**make_state()["form"], "patient_name": "Maria Silva"},
        patient={"patient_id": "p1", "birth_date": "1985-03-22", "original_birth_date": None},
        captured_image=b"jpeg",
    )
    safe = PIIMiddleware.mask_state(state)
    check("form name masked",   safe["form"]["patient_name"] == "M***")
    check("birth date masked",  safe["patient"]["birth_date"] == "****-**-**")
    check("image elided",       safe["captured_image"] == "<image>")
    check("source untouched",   state["form"]["patient_name"] == "Maria Silva")


# ─────────────────────────────────────────────
# TEST 2: ModelRetryMiddleware
# ─────────────────────────────────────────────
def test_retry_middleware():
    print("\n[2] ModelRetryMiddleware")
    sleep = AsyncMock()
    mw = ModelRetryMiddleware(max_retries=2, base_delay=0.5, sleep=sleep)
    counter = {"n": 0}

    async def flaky():
        counter["n"] += 1
        if counter["n"] < 3:
            raise ConnectionError("network down")
        return "ok"

    on_retry = MagicMock()
    result = asyncio.run(mw.call(flaky, on_retry=on_retry))
    check("retries and succeeds",  result == "ok", f"after {counter['n']} attempts")
    check("exponential backoff",   [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0])
    check("on_retry per retry",    on_retry.call_count == 2)

    async def always_down():
        counter["n"] += 1
        raise TimeoutError("timed out")

    counter["n"] = 0
    try:
        asyncio.run(mw.call(always_down))
        check("raises after max retries", False)
    except TimeoutError:
        check("raises after max retries", counter["n"] == 3, f"{counter['n']} attempts")

    async def bad_request():
        counter["n"] += 1
        raise WizardError("bad input", kind=ErrorKind.VALIDATION)

    counter["n"] = 0
    try:
        asyncio.run(mw.call(bad_request))
        check("non-retryable raised at once", False)
    except WizardError:
        check("non-retryable raised at once", counter["n"] == 1)


# ─────────────────────────────────────────────
# TEST 3: Error classification
# ─────────────────────────────────────────────
def test_classify_error():
    print("\n[3] classify_error")
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

    rate = openai.RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)
    server = openai.InternalServerError("boom", response=httpx.Response(500, request=request), body=None)
    conn = openai.APIConnectionError(request=request)

    check("openai rate limit",    classify_error(rate) is ErrorKind.RATE_LIMITED)
    check("openai 5xx",           classify_error(server) is ErrorKind.SERVER)
    check("openai connection",    classify_error(conn) is ErrorKind.CONNECTION)
    check("builtin connection",   classify_error(ConnectionError("reset")) is ErrorKind.CONNECTION)
    check("duplicate store code", classify_error(StoreError("dup", code="23505")) is ErrorKind.INTEGRITY_CONFLICT)
    check("no data",              classify_error(NoDataError("empty")) is ErrorKind.NO_DATA)
    check("402 message",          classify_error(RuntimeError("HTTP 402 payment_required")) is ErrorKind.INSUFFICIENT_CREDITS)
    check("413 message",          classify_error(RuntimeError("413 payload too large")) is ErrorKind.RESOURCE_LIMIT)
    check("fetch message",        classify_error(RuntimeError("Failed to fetch")) is ErrorKind.CONNECTION)
    check("fallback generic",     classify_error(ValueError("odd")) is ErrorKind.GENERIC)


def test_user_facing_messages():
    print("\n[4] safe_message / submission_error_message")
    check("short message kept",   safe_message(ValueError("bad tooth"), "fallback") == "Error: bad tooth")
    check("long message capped",  safe_message(ValueError("x" * 150), "fallback") == "fallback")

    message, back = submission_error_message(StoreError("dup", code="23505"))
    check("duplicate → review",   back and "already exists" in message)
    message, back = submission_error_message(StoreError("fk", code="23503"))
    check("reference → review",   back and "reference" in message.lower())
    _, back = submission_error_message(WizardError("429", kind=ErrorKind.RATE_LIMITED))
    check("rate limit stays",     back is False)


# ─────────────────────────────────────────────
# TEST 5: Treatment normalization + fallback
# ─────────────────────────────────────────────
def test_normalize_treatment():
    print("\n[5] normalize_treatment")
    samples = list(TREATMENT_ALIASES) + list(TREATMENT_TYPES) + ["Mystery", "", "  PORCELAIN  "]
    check("idempotent", all(normalize_treatment(normalize_treatment(x)) == normalize_treatment(x) for x in samples))
    check("case-insensitive aliases", all(
        normalize_treatment(alias.upper()) == normalize_treatment(canonical.upper()) == canonical
        for alias, canonical in TREATMENT_ALIASES.items()
    ))
    check("unknown kept lowercase", normalize_treatment("Mystery") == "mystery")


def test_effective_treatment():
    print("\n[6] effective_treatment")
    form  = {**make_state()["form"], "treatment_type": "coroa"}
    items = [{"item_id": "21", "treatment_indication": "porcelana"}, {"item_id": "22"}]

    check("override wins",       effective_treatment("21", {"21": "implante"}, items, form) == "implante")
    check("AI suggestion next",  effective_treatment("21", {}, items, form) == "porcelana")
    check("form default next",   effective_treatment("22", {}, items, form) == "coroa")
    check("resin last", effective_treatment("22", {}, items, {**form, "treatment_type": ""}) == "resina")


# ─────────────────────────────────────────────
# TEST 7: Regions + lexical rules
# ─────────────────────────────────────────────
def test_regions():
    print("\n[7] full_region")
    check("11 anterior-superior",  full_region("11") == "anterior-superior")
    check("16 posterior-superior", full_region("16") == "posterior-superior")
    check("33 anterior-inferior",  full_region("33") == "anterior-inferior")
    check("46 posterior-inferior", full_region("46") == "posterior-inferior")
    check("virtual upper front",   full_region("GENGIVO") == "anterior-superior")


def test_lexical_rules():
    print("\n[8] lexical rules")
    reason = lambda text: {"item_id": "11", "indication_reason": text}
    check("contact lens first",  infer_cavity_class(reason("lente de contato"), "Class I", "resina") == "Contact Lens Veneer")
    check("diastema",            infer_cavity_class(reason("Diastema between 11 and 21"), "Class I", "resina") == "Diastema Closure")
    check("explicit class kept", infer_cavity_class({"cavity_class": "Class III"}, "Class I", "resina") == "Class III")
    check("porcelain default",   infer_cavity_class(reason(""), "Class I", "porcelana") == "Direct Veneer")
    check("fallback",            infer_cavity_class(reason("caries"), "Class II", "resina") == "Class II")

    check("orthodontics",  infer_referral_specialty("severe crowding") == "Orthodontics")
    check("endodontics",   infer_referral_specialty("periapical lesion") == "Endodontics")
    check("order matters", infer_referral_specialty("canal and gingival pocket") == "Endodontics")
    check("no match",      infer_referral_specialty("unclear") is None)


def test_generic_protocols():
    print("\n[9] generic_protocol")
    design = {"analysis": {"suggestions": [
        {"item_id": "12", "current_issue": "Gummy smile", "proposed_change": "Raise zenith"},
        {"item_id": "11", "current_issue": "Short", "proposed_change": "Add length"},
    ]}}
    soft = generic_protocol(SOFT_TISSUE, "GENGIVO", None, design)
    check("soft tissue teeth", soft["teeth"] == ["12"])

    referral = generic_protocol("encaminhamento", "36", {"indication_reason": "third molar extraction"})
    check("referral specialty", referral["specialty"] == "Oral and Maxillofacial Surgery")
    check("checklist copied",   len(referral["checklist"]) > 0)


def test_age_from_birth_date():
    print("\n[10] age_from_birth_date")
    check("day before birthday", age_from_birth_date("2000-06-15", date(2024, 6, 14)) == 23)
    check("on birthday",         age_from_birth_date("2000-06-15", date(2024, 6, 15)) == 24)
    check("leap day",            age_from_birth_date("2000-02-29", date(2023, 2, 28)) == 22)


# ─────────────────────────────────────────────
# TEST 11: WizardStore
# ─────────────────────────────────────────────
def test_store_direction_and_dispatch():
    print("\n[11] WizardStore")
    store = WizardStore(make_state(step=3))
    seen = []
    store.subscribe(lambda state, changed: seen.append(changed))

    store.update(step=5)
    check("forward on increase",  store["direction"] == "forward")
    store.update(step=2)
    check("backward on decrease", store["direction"] == "backward")

    before = len(seen)
    store.update(step=2, detected_items=list(store["detected_items"]))
    check("no-op write not dispatched", len(seen) == before)


def test_filesystem_and_notices():
    print("\n[12] FilesystemMiddleware + NoticeEmitter")
    with tempfile.TemporaryDirectory() as tmp:
        path = str(Path(tmp) / "nested" / "draft.json")
        FilesystemMiddleware.write_json(path, {"step": 3, "name": "Ção"})
        check("json readable",  FilesystemMiddleware.read_json(path)["name"] == "Ção")
        check("delete existing", FilesystemMiddleware.delete(path) is True)
        check("delete missing",  FilesystemMiddleware.delete(path) is False)

    notices = NoticeEmitter()
    received = []
    notices.subscribe(received.append)
    notices.warning("Low balance")
    check("notice fanned out", received[0].level is NoticeLevel.WARNING)
    check("history kept",      len(notices.of_level(NoticeLevel.WARNING)) == 1)


# ─────────────────────────────────────────────
# Run all tests
# ─────────────────────────────────────────────
if __name__ == "__main__":
    print("\n" + "═" * 60)
    print("  DENTAL CASE WIZARD — TEST SUITE")
    print("═" * 60)

    tests = [
        test_pii_middleware,
        test_retry_middleware,
        test_classify_error,
        test_user_facing_messages,
        test_normalize_treatment,
        test_effective_treatment,
        test_regions,
        test_lexical_rules,
        test_generic_protocols,
        test_age_from_birth_date,
        test_store_direction_and_dispatch,
        test_filesystem_and_notices,
    ]
    failed = 0
    for test in tests:
        try:
            test()
        except AssertionError:
            failed += 1

    print(f"\n{'═'*60}")
    print(f"  RESULTS: {len(tests) - failed}/{len(tests)} passed")
    print("═" * 60 + "\n")
    sys.exit(0 if failed == 0 else 1)
