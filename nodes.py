"""
nodes.py — LangGraph node functions for the case submission pipeline.
"""

import logging
import types
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from clinical import (
    PORCELAIN, RESIN, GENERIC_TREATMENTS, build_cementation_params, build_evaluation_payload, build_resin_params,
    effective_treatment, find_item, generic_protocol, normalize_treatment,
)
from errors import DUPLICATE_CODE, ErrorKind, StoreError, classify_error
from events import NoticeEmitter
from middleware import ModelRetryMiddleware, PIIMiddleware
from services import ProtocolGenerator, RecordStore
from state import SubmissionState

logger = logging.getLogger(__name__)

PHASE_PATIENT  = 1
PHASE_ITEMS    = 2
PHASE_SYNC     = 3
PHASE_FINALIZE = 4

Progress = Callable[..., None]


# ─────────────────────────────────────────────
# Outcome + bucket state machine
# ─────────────────────────────────────────────
@dataclass(frozen=True)
class FailedItem:
    item_id: str
    error: str
    kind: ErrorKind = ErrorKind.GENERIC


@dataclass(frozen=True)
class SubmissionOutcome:
    session_id: str
    succeeded_item_ids: Tuple[str, ...]
    failed_items: Tuple[FailedItem, ...]
    treatment_counts: types.MappingProxyType = field(default_factory=lambda: types.MappingProxyType({}))

    @property
    def total(self) -> int:
        return len(self.succeeded_item_ids) + len(self.failed_items)

    @property
    def all_failed(self) -> bool:
        return not self.succeeded_item_ids

    @property
    def is_partial(self) -> bool:
        return bool(self.succeeded_item_ids) and bool(self.failed_items)

    @property
    def failed_item_ids(self) -> Tuple[str, ...]:
        return tuple(f.item_id for f in self.failed_items)


class TreatmentBucket:
    """
    Items sharing one AI-protocol treatment type. Only the primary makes the
    remote call; a failed primary promotes the next sibling until one succeeds.
    """

    def __init__(self, treatment: str, primary_item_id: str):
        self.treatment       = treatment
        self.primary_item_id = primary_item_id
        self.primary_failed  = False
        self.protocol_source: Optional[str] = None

    def needs_remote_call(self, item_id: str) -> bool:
        return item_id == self.primary_item_id or self.primary_failed

    def record_success(self, item_id: str) -> None:
        if self.needs_remote_call(item_id):
            self.protocol_source = item_id
            if item_id != self.primary_item_id:
                logger.info("[submission] %s: promoted sibling %s succeeded", self.treatment, item_id)
            self.primary_failed = False

    def record_failure(self, item_id: str) -> None:
        if self.needs_remote_call(item_id):
            self.primary_failed = True


def build_buckets(items: List[str], treatment_of: Callable[[str], str]) -> Dict[str, TreatmentBucket]:
    buckets: Dict[str, TreatmentBucket] = {}
    for item_id in items:
        treatment = treatment_of(item_id)
        if treatment not in buckets:
            buckets[treatment] = TreatmentBucket(treatment, item_id)
    return buckets


# ─────────────────────────────────────────────
# Protocol dispatch
# ─────────────────────────────────────────────
async def dispatch_protocol(
    treatment: str,
    evaluation_id: str,
    payload: dict,
    state: SubmissionState,
    generators: ProtocolGenerator,
    records: RecordStore,
) -> None:
    item = find_item(state["detected_items"], payload["tooth"])

    if treatment == RESIN:
        await generators.generate_resin_protocol(
            build_resin_params(evaluation_id, state["owner_id"], payload, item, state["form"])
        )
    elif treatment == PORCELAIN:
        await generators.generate_cementation_protocol(
            build_cementation_params(evaluation_id, payload, item, state["form"])
        )
    elif treatment in GENERIC_TREATMENTS:
        protocol = generic_protocol(treatment, payload["tooth"], item, state["design_result"])
        await records.update_evaluation_protocol(evaluation_id, protocol)
    else:
        logger.warning("[submission] No protocol strategy for treatment '%s'", treatment)


# ─────────────────────────────────────────────
# NODE 1: resolve_patient
# ─────────────────────────────────────────────
async def resolve_patient(state: SubmissionState, records: RecordStore, progress: Progress) -> SubmissionState:
    path = state["path_taken"] + ["resolve_patient"]
    progress(PHASE_PATIENT)

    form    = state["form"]
    patient = state["patient"]
    name    = (form.get("patient_name") or "").strip()
    patient_id = patient.get("patient_id")
    created_now = False

    if name and not patient_id:
        try:
            created = await records.create_patient(state["owner_id"], name, patient.get("birth_date"))
            patient_id = created["id"]
            created_now = True
        except StoreError as e:
            if e.code != DUPLICATE_CODE:
                raise
            existing = await records.find_patient_by_name(state["owner_id"], name)
            if existing is None:
                raise
            patient_id = existing["id"]
            logger.info("[resolve_patient] Reusing existing patient %s", PIIMiddleware.mask_name(name))

    # A birth date typed for an existing patient that had none is persisted.
    if patient_id and not created_now and patient.get("birth_date") and not patient.get("original_birth_date"):
        try:
            await records.update_patient_birth_date(patient_id, patient["birth_date"])
        except Exception as e:
            logger.warning("[resolve_patient] Birth date update failed: %s", PIIMiddleware.mask(str(e)))

    return {**state, "patient_id": patient_id, "path_taken": path}


# ─────────────────────────────────────────────
# NODE 2: process_items
# ─────────────────────────────────────────────
async def process_items(
    state: SubmissionState,
    records: RecordStore,
    generators: ProtocolGenerator,
    retry: ModelRetryMiddleware,
    progress: Progress,
) -> SubmissionState:
    path = state["path_taken"] + ["process_items"]

    def treatment_of(item_id: str) -> str:
        return normalize_treatment(effective_treatment(
            item_id, state["item_treatments"], state["detected_items"], state["form"]
        ))

    buckets = build_buckets(state["items"], treatment_of)

    succeeded:   List[str] = []
    evaluations: List[str] = []
    failed:      List[FailedItem] = []
    counts:      Dict[str, int] = {}

    for index, item_id in enumerate(state["items"]):
        progress(PHASE_ITEMS, index)

        treatment = treatment_of(item_id)
        bucket    = buckets[treatment]
        evaluation_id = None

        try:
            payload = build_evaluation_payload(
                owner_id=state["owner_id"],
                session_id=state["session_id"],
                item_id=item_id,
                item=find_item(state["detected_items"], item_id),
                treatment=treatment,
                form=state["form"],
                preferences=state["preferences"],
                patient_id=state["patient_id"],
                asset_ref=state["uploaded_asset_ref"],
                analysis_result=state["analysis_result"],
            )
            evaluation = await records.create_evaluation(payload)
            evaluation_id = evaluation["id"]

            if treatment in GENERIC_TREATMENTS or bucket.needs_remote_call(item_id):
                await retry.call(dispatch_protocol, treatment, evaluation_id, payload, state, generators, records)
            else:
                logger.info("[process_items] %s: protocol synced from %s", item_id, bucket.protocol_source)

            await records.update_evaluation_status(evaluation_id, "draft")

            bucket.record_success(item_id)
            succeeded.append(item_id)
            evaluations.append(evaluation_id)
            counts[treatment] = counts.get(treatment, 0) + 1

        except Exception as e:
            kind = classify_error(e)
            logger.error("[process_items] Item %s failed (%s): %s", item_id, kind.value, e)
            bucket.record_failure(item_id)
            failed.append(FailedItem(item_id=item_id, error=str(e), kind=kind))

            if evaluation_id:
                try:
                    await records.update_evaluation_status(evaluation_id, "error")
                except Exception as status_err:
                    logger.warning("[process_items] Could not flag %s as errored: %s", evaluation_id, status_err)

    logger.info("[process_items] %d succeeded, %d failed", len(succeeded), len(failed))

    return {
        **state,
        "succeeded_item_ids":       succeeded,
        "succeeded_evaluation_ids": evaluations,
        "failed_items":             failed,
        "treatment_counts":         counts,
        "path_taken":               path,
    }


# ─────────────────────────────────────────────
# NODE 3: sync_protocols
# ─────────────────────────────────────────────
async def sync_protocols(state: SubmissionState, records: RecordStore, progress: Progress) -> SubmissionState:
    path = state["path_taken"] + ["sync_protocols"]
    progress(PHASE_SYNC)

    try:
        await records.sync_group_protocols(state["session_id"], state["succeeded_evaluation_ids"])
    except Exception as e:
        logger.warning("[sync_protocols] Non-critical sync failure: %s", e)

    return {**state, "path_taken": path}


# ─────────────────────────────────────────────
# NODE 4: save_pending
# ─────────────────────────────────────────────
async def save_pending(state: SubmissionState, records: RecordStore, progress: Progress) -> SubmissionState:
    path = state["path_taken"] + ["save_pending"]
    progress(PHASE_FINALIZE)

    chosen = set(state["items"])
    rows = [
        {
            "owner_id":             state["owner_id"],
            "session_id":           state["session_id"],
            "item_id":              item["item_id"],
            "priority":             item.get("priority") or "medium",
            "treatment_type":       normalize_treatment(item.get("treatment_indication")) or None,
            "indication_reason":    item.get("indication_reason"),
            "region":               item.get("region"),
        }
        for item in state["detected_items"]
        if item.get("item_id") and item["item_id"] not in chosen
    ]

    if rows:
        try:
            await records.save_pending_items(rows)
            logger.info("[save_pending] %d unselected item(s) kept for later", len(rows))
        except Exception as e:
            logger.error("[save_pending] Could not save pending items: %s", e)

    return {**state, "path_taken": path}


# ─────────────────────────────────────────────
# NODE 5: finalize
# ─────────────────────────────────────────────
async def finalize(state: SubmissionState, notices: NoticeEmitter, clear_draft: Callable[[], None]) -> SubmissionState:
    path = state["path_taken"] + ["finalize"]

    outcome = SubmissionOutcome(
        session_id=state["session_id"],
        succeeded_item_ids=tuple(state["succeeded_item_ids"]),
        failed_items=tuple(state["failed_items"]),
        treatment_counts=types.MappingProxyType(dict(state["treatment_counts"])),
    )

    if outcome.all_failed:
        if outcome.failed_items and all(f.kind is ErrorKind.CONNECTION for f in outcome.failed_items):
            notices.error("Connection error. No item could be processed.")
        else:
            notices.error(
                "No item could be processed.",
                description="Check your connection and try again.",
            )
        logger.error("[finalize] Session %s: all %d item(s) failed", outcome.session_id, outcome.total)
        return {**state, "outcome": outcome, "path_taken": path}

    clear_draft()

    if outcome.is_partial:
        notices.warning(
            f"{len(outcome.succeeded_item_ids)} of {outcome.total} item(s) processed.",
            description=f"Failed: {', '.join(outcome.failed_item_ids)}",
        )
    else:
        notices.success(f"Case created with {outcome.total} item(s).")

    logger.info("[finalize] Session %s complete: %s", outcome.session_id, dict(outcome.treatment_counts))
    return {**state, "outcome": outcome, "path_taken": path}
