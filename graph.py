# graph.py — Builds the LangGraph StateGraph for case submission and the
# SubmissionPipeline that runs it once per click.

import uuid
import asyncio
import logging
from functools import partial
from typing import Awaitable, Callable, List, Optional, Tuple

from langgraph.graph import StateGraph, END

from clinical import SOFT_TISSUE, SOFT_TISSUE_ITEM_ID, TREATMENT_LABELS, effective_treatment, normalize_treatment
from errors import submission_error_message
from events import NoticeEmitter
from middleware import ModelRetryMiddleware, PIIMiddleware
from services import ProtocolGenerator, RecordStore
from state import STEP_REVIEW, STEP_SUBMIT, SubmissionProgress, SubmissionState, WizardStore
import nodes as n

logger = logging.getLogger(__name__)

IDLE_PROGRESS = SubmissionProgress(phase=0, item_index=-1)


def build_submission_graph(
    records: RecordStore,
    generators: ProtocolGenerator,
    notices: NoticeEmitter,
    retry: ModelRetryMiddleware,
    progress: n.Progress,
    clear_draft: Callable[[], None],
):
    node_resolve_patient = partial(n.resolve_patient, records=records, progress=progress)
    node_process_items   = partial(n.process_items,   records=records, generators=generators, retry=retry, progress=progress)
    node_sync_protocols  = partial(n.sync_protocols,  records=records, progress=progress)
    node_save_pending    = partial(n.save_pending,    records=records, progress=progress)
    node_finalize        = partial(n.finalize,        notices=notices, clear_draft=clear_draft)

    builder = StateGraph(SubmissionState)

    builder.add_node("resolve_patient", node_resolve_patient)
    builder.add_node("process_items",   node_process_items)
    builder.add_node("sync_protocols",  node_sync_protocols)
    builder.add_node("save_pending",    node_save_pending)
    builder.add_node("finalize",        node_finalize)

    builder.set_entry_point("resolve_patient")
    builder.add_edge("resolve_patient", "process_items")

    def route_items(state: SubmissionState) -> str:
        if len(state["succeeded_evaluation_ids"]) >= 2:
            return "sync_protocols"
        return "save_pending"

    builder.add_conditional_edges("process_items", route_items, {
        "sync_protocols": "sync_protocols",
        "save_pending":   "save_pending",
    })

    builder.add_edge("sync_protocols", "save_pending")
    builder.add_edge("save_pending",   "finalize")
    builder.add_edge("finalize",       END)

    return builder.compile()


class SubmissionPipeline:
    """
    Runs the submission graph against a snapshot of the wizard state.
    At most one submission is in flight; a second call while one runs is ignored.
    """

    def __init__(
        self,
        store: WizardStore,
        owner_id: str,
        records: RecordStore,
        generators: ProtocolGenerator,
        notices: NoticeEmitter,
        clear_draft: Callable[[], None],
        retry: Optional[ModelRetryMiddleware] = None,
        submit_delay: float = 1.5,
        default_patient_age: str = "30",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store    = store
        self.owner_id = owner_id
        self.notices  = notices
        self.submit_delay        = submit_delay
        self.default_patient_age = default_patient_age
        self._sleep = sleep

        self._in_flight = False
        self._items: List[str] = []
        self.last_outcome: Optional[n.SubmissionOutcome] = None

        self.graph = build_submission_graph(
            records=records,
            generators=generators,
            notices=notices,
            retry=retry or ModelRetryMiddleware(max_retries=2, base_delay=2.0),
            progress=self._report_progress,
            clear_draft=clear_draft,
        )

    # ─────────────────────────────────────────
    # Validation
    # ─────────────────────────────────────────
    def items_to_process(self) -> List[str]:
        state = self.store.state
        items = list(state["selected_item_ids"])
        if not items and state["form"].get("tooth"):
            items = [state["form"]["tooth"]]

        if SOFT_TISSUE_ITEM_ID in items:
            items = [
                i for i in items
                if i == SOFT_TISSUE_ITEM_ID
                or normalize_treatment(effective_treatment(
                    i, state["item_treatments"], state["detected_items"], state["form"]
                )) != SOFT_TISSUE
            ]
        return items

    def validate(self) -> Optional[List[str]]:
        items = self.items_to_process()
        if not items:
            self.notices.error("Select at least one tooth to continue.")
            return None

        state = self.store.state
        if not state["patient"].get("birth_date"):
            if state["form"].get("patient_age"):
                self.notices.warning("Patient birth date not provided.")
            else:
                self.notices.warning(
                    "Patient birth date not provided.",
                    description=f"Using a default age of {self.default_patient_age}.",
                )
                self.store.update(form={**state["form"], "patient_age": self.default_patient_age})

        return items

    # ─────────────────────────────────────────
    # Submit / reset
    # ─────────────────────────────────────────
    async def submit(self) -> Optional[n.SubmissionOutcome]:
        if self._in_flight:
            logger.warning("[submission] Ignored: a submission is already in flight")
            return None

        items = self.validate()
        if items is None:
            return None

        self._in_flight = True
        self._items = items
        session_id = str(uuid.uuid4())

        self.store.update(
            is_submitting=True,
            step=STEP_SUBMIT,
            submission_progress=IDLE_PROGRESS,
            submission_complete=False,
            completed_session_id=None,
        )
        logger.info(
            "[submission] Session %s: %d item(s) | %s",
            session_id, len(items), PIIMiddleware.mask_state(self.store.state)["form"]["patient_name"],
        )

        try:
            final = await self.graph.ainvoke(self._initial_state(session_id, items))
            outcome: n.SubmissionOutcome = final["outcome"]
            self.last_outcome = outcome

            if outcome.all_failed:
                self.store.update(step=STEP_REVIEW, submission_progress=IDLE_PROGRESS)
                return outcome

            self.store.update(completed_session_id=session_id, submission_complete=True)
            await self._sleep(self.submit_delay)
            return outcome

        except Exception as e:
            message, back_to_review = submission_error_message(e)
            logger.error("[submission] Aborted before items were processed: %s", PIIMiddleware.mask(str(e)))
            self.notices.error(message)
            if back_to_review:
                self.store.update(step=STEP_REVIEW, submission_progress=IDLE_PROGRESS)
            return None

        finally:
            self._in_flight = False
            self.store.update(is_submitting=False)

    def reset(self) -> None:
        self.last_outcome = None
        self._items = []
        self.store.update(
            submission_complete=False,
            completed_session_id=None,
            submission_progress=IDLE_PROGRESS,
        )

    # ─────────────────────────────────────────
    # Progress
    # ─────────────────────────────────────────
    def _report_progress(self, phase: int, item_index: int = -1) -> None:
        if phase != n.PHASE_ITEMS:
            item_index = self.store["submission_progress"]["item_index"] if phase > n.PHASE_ITEMS else -1
        self.store.update(submission_progress=SubmissionProgress(phase=phase, item_index=item_index))

    def progress_rows(self) -> List[Tuple[str, bool]]:
        state    = self.store.state
        phase    = state["submission_progress"]["phase"]
        index    = state["submission_progress"]["item_index"]
        complete = state["submission_complete"]

        rows = [("Preparing patient", phase > n.PHASE_PATIENT or complete)]

        for i, item_id in enumerate(self._items):
            if item_id == SOFT_TISSUE_ITEM_ID:
                label = TREATMENT_LABELS[SOFT_TISSUE]
            else:
                label = f"Tooth {item_id}"
            active = phase == n.PHASE_ITEMS and i == index
            if active:
                label += " · generating protocol"
            done = complete or phase > n.PHASE_ITEMS or (phase == n.PHASE_ITEMS and i < index)
            rows.append((label, done))

        rows.append(("Finalizing", complete))
        return rows

    def _initial_state(self, session_id: str, items: List[str]) -> SubmissionState:
        state = self.store.state
        return SubmissionState(
            session_id=session_id,
            owner_id=self.owner_id,
            items=list(items),
            form=dict(state["form"]),
            preferences=dict(state["preferences"] or {}),
            patient=dict(state["patient"]),
            detected_items=list(state["detected_items"]),
            item_treatments=dict(state["item_treatments"]),
            analysis_result=state["analysis_result"],
            design_result=state["design_result"],
            uploaded_asset_ref=state["uploaded_asset_ref"],

            patient_id=state["patient"].get("patient_id"),
            succeeded_item_ids=[],
            succeeded_evaluation_ids=[],
            failed_items=[],
            treatment_counts={},
            outcome=None,
            path_taken=[],
        )
