"""
tests/support.py — Shared builders for the wizard test suite.
"""

import copy
from unittest.mock import AsyncMock, MagicMock

from config import Settings
from events import NoticeEmitter
from middleware import ModelRetryMiddleware
from orchestrator import WizardOrchestrator
from services import (
    Collaborators, InMemoryAssetStore, InMemoryDraftStore, InMemoryRecordStore,
    RecordingNavigator, StaticBalanceService,
)
from state import WizardState, WizardStore, init_state

PASS = "✅ PASS"
FAIL = "❌ FAIL"

PHOTO = b"\xff\xd8\xff\xe0fake-jpeg"

ANALYSIS_RESULT = {
    "detected_items": [
        {
            "item_id": "21",
            "region": "anterior",
            "cavity_class": "Class IV",
            "restoration_size": "medium",
            "substrate": "enamel",
            "substrate_condition": "healthy",
            "enamel_condition": "fractured",
            "depth": "shallow",
            "priority": "high",
            "treatment_indication": "resin",
            "indication_reason": "Fractured incisal edge",
        },
        {
            "item_id": "11",
            "region": "anterior",
            "cavity_class": None,
            "priority": "medium",
            "treatment_indication": "porcelain",
            "indication_reason": "Discolored veneer",
        },
    ],
    "primary_item_id": "21",
    "suggested_color": "A2",
    "treatment_indication": "resina",
}


class QuietSettings(Settings):
    SUBMIT_DELAY        = 0.0
    ANALYSIS_BASE_DELAY = 0.0
    PROTOCOL_BASE_DELAY = 0.0
    DRAFT_EXPIRY_DAYS   = 7


def check(name: str, condition: bool, detail: str = "") -> None:
    status = PASS if condition else FAIL
    print(f"  {status}  {name}" + (f" — {detail}" if detail else ""))
    assert condition, f"{name} {detail}".strip()


def make_state(**overrides) -> WizardState:
    base = init_state()
    base.update(overrides)
    return base


def make_store(**overrides) -> WizardStore:
    return WizardStore(make_state(**overrides))


def analysis_result() -> dict:
    return copy.deepcopy(ANALYSIS_RESULT)


def no_sleep_retry(max_retries: int = 2) -> ModelRetryMiddleware:
    return ModelRetryMiddleware(max_retries=max_retries, base_delay=0.0, sleep=AsyncMock())


def make_generators() -> MagicMock:
    generators = MagicMock()
    generators.generate_resin_protocol       = AsyncMock(return_value=None)
    generators.generate_cementation_protocol = AsyncMock(return_value=None)
    return generators


def make_services(remaining: int = 10, result=None, costs=None) -> Collaborators:
    analyzer = MagicMock()
    analyzer.analyze = AsyncMock(return_value=analysis_result() if result is None else result)
    return Collaborators(
        assets=InMemoryAssetStore(),
        analyzer=analyzer,
        generators=make_generators(),
        records=InMemoryRecordStore(),
        balance=StaticBalanceService(remaining, costs),
        drafts=InMemoryDraftStore(),
        navigation=RecordingNavigator(),
    )


def make_wizard(remaining: int = 10, result=None, accept: bool = True, services=None, store=None) -> WizardOrchestrator:
    return WizardOrchestrator(
        "owner-1",
        services or make_services(remaining, result),
        settings=QuietSettings(),
        prompt=AsyncMock(return_value=accept),
        store=store,
        analysis_retry=no_sleep_retry(),
        protocol_retry=no_sleep_retry(),
    )


def levels(notices: NoticeEmitter) -> list:
    return [n.level.value for n in notices.history]
