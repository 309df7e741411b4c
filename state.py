# state.py — WizardState TypedDict definition and the shared store around it
import logging
from typing import Callable, Dict, List, Optional

from typing_extensions import TypedDict

logger = logging.getLogger(__name__)

STEP_CAPTURE     = 1
STEP_PREFERENCES = 2
STEP_ANALYZING   = 3
STEP_DESIGN      = 4
STEP_REVIEW      = 5
STEP_SUBMIT      = 6

MODE_FULL  = "full"
MODE_QUICK = "quick"

WHITENING_NATURAL = "natural"


class DetectedItem(TypedDict, total=False):
    item_id:              str             # FDI tooth number ("11", "36") or a virtual sentinel
    region:               Optional[str]   # e.g. "anterior-superior"
    cavity_class:         Optional[str]
    restoration_size:     Optional[str]
    substrate:            Optional[str]
    substrate_condition:  Optional[str]
    enamel_condition:     Optional[str]
    depth:                Optional[str]
    priority:             str             # "high" | "medium" | "low"
    notes:                Optional[str]
    treatment_indication: Optional[str]   # AI-suggested treatment type
    indication_reason:    Optional[str]
    tooth_bounds:         Optional[dict]


class FormFields(TypedDict):
    patient_name:          str
    patient_age:           str
    tooth:                 str
    tooth_region:          str
    cavity_class:          str
    restoration_size:      str
    vita_shade:            str
    substrate:             str
    substrate_condition:   str
    enamel_condition:      str
    depth:                 str
    bruxism:               bool
    aesthetic_level:       str
    budget:                str
    longevity_expectation: str
    clinical_notes:        str
    treatment_type:        str


class PatientIdentity(TypedDict):
    patient_id:          Optional[str]   # selected existing patient, None for a new one
    birth_date:          Optional[str]   # YYYY-MM-DD
    original_birth_date: Optional[str]   # birth date on record when the patient was selected


class SubmissionProgress(TypedDict):
    phase:      int    # 0 idle, 1 patient, 2 items, 3 sync, 4 finalizing
    item_index: int    # -1 before the item loop starts


class CreditConfirmation(TypedDict):
    operation_key:     str
    label:             str
    cost:              int
    remaining_balance: int


class Draft(TypedDict, total=False):
    step:                     int
    mode:                     str
    form:                     FormFields
    preferences:              dict
    detected_items:           List[DetectedItem]
    selected_item_ids:        List[str]
    item_treatments:          Dict[str, str]
    original_item_treatments: Dict[str, str]
    analysis_result:          Optional[dict]
    design_result:            Optional[dict]
    uploaded_asset_ref:       Optional[str]
    patient:                  PatientIdentity
    last_saved_at:            str
    manual_shade_override:    bool


class WizardState(TypedDict):
    # ── Navigation (owner: StepNavigator) ─────────────
    step:                     int
    direction:                str            # "forward" | "backward", derived by WizardStore
    mode:                     str            # "full" | "quick"

    # ── Capture (owner: orchestrator / DraftPersistence) ─
    captured_image:           Optional[bytes]

    # ── Working form (owners: ReviewStage, PhotoAnalysisStage merge) ─
    form:                     FormFields
    preferences:              dict           # {"whitening_level": "natural" | "white" | "hollywood"}

    # ── Items (owners: PhotoAnalysisStage, DesignIntegrationStage, ReviewStage) ─
    detected_items:           List[DetectedItem]
    selected_item_ids:        List[str]
    item_treatments:          Dict[str, str]
    original_item_treatments: Dict[str, str]

    # ── Stage results ─────────────────────────────────
    analysis_result:          Optional[dict]
    design_result:            Optional[dict]
    uploaded_asset_ref:       Optional[str]

    # ── Patient (owner: ReviewStage) ──────────────────
    patient:                  PatientIdentity

    # ── Analysis signals (owner: PhotoAnalysisStage; navigator clears on back/cancel) ─
    analysis_loading:         bool
    analysis_error:           Optional[str]
    analysis_aborted:         bool
    reanalyzing:              bool

    # ── Cross-stage flags ─────────────────────────────
    credits_preconfirmed:     bool           # set by StepNavigator.go_to_preferences and draft resume
    shade_manually_set:       bool           # set by ReviewStage.update_form
    needs_reanalysis:         bool           # one-shot, set by WizardOrchestrator.restore_draft
    soft_tissue_notified:     bool           # set by DesignIntegrationStage
    credit_warning_shown:     bool           # set once by CreditGate.check_low_balance

    # ── Submission (owner: SubmissionPipeline) ────────
    submission_progress:      SubmissionProgress
    is_submitting:            bool
    submission_complete:      bool
    completed_session_id:     Optional[str]

    # ── Draft bookkeeping (owner: DraftPersistence) ───
    last_saved_at:            Optional[str]


class SubmissionState(TypedDict):
    session_id:                str
    owner_id:                  str
    items:                     List[str]
    form:                      FormFields
    preferences:               dict
    patient:                   PatientIdentity
    detected_items:            List[DetectedItem]
    item_treatments:           Dict[str, str]
    analysis_result:           Optional[dict]
    design_result:             Optional[dict]
    uploaded_asset_ref:        Optional[str]

    patient_id:                Optional[str]
    succeeded_item_ids:        List[str]
    succeeded_evaluation_ids:  List[str]
    failed_items:              List[dict]
    treatment_counts:          Dict[str, int]
    outcome:                   Optional[object]
    path_taken:                List[str]


INITIAL_FORM = FormFields(
    patient_name="",
    patient_age="",
    tooth="",
    tooth_region="anterior",
    cavity_class="Class I",
    restoration_size="medium",
    vita_shade="A2",
    substrate="enamel_dentin",
    substrate_condition="healthy",
    enamel_condition="intact",
    depth="medium",
    bruxism=False,
    aesthetic_level="high",
    budget="moderate",
    longevity_expectation="medium",
    clinical_notes="",
    treatment_type="resina",
)


def init_state() -> WizardState:
    return WizardState(
        step=STEP_CAPTURE,
        direction="forward",
        mode=MODE_FULL,

        captured_image=None,

        form=dict(INITIAL_FORM),
        preferences={"whitening_level": WHITENING_NATURAL},

        detected_items=[],
        selected_item_ids=[],
        item_treatments={},
        original_item_treatments={},

        analysis_result=None,
        design_result=None,
        uploaded_asset_ref=None,

        patient=PatientIdentity(patient_id=None, birth_date=None, original_birth_date=None),

        analysis_loading=False,
        analysis_error=None,
        analysis_aborted=False,
        reanalyzing=False,

        credits_preconfirmed=False,
        shade_manually_set=False,
        needs_reanalysis=False,
        soft_tissue_notified=False,
        credit_warning_shown=False,

        submission_progress=SubmissionProgress(phase=0, item_index=-1),
        is_submitting=False,
        submission_complete=False,
        completed_session_id=None,

        last_saved_at=None,
    )


Listener = Callable[[WizardState, dict], None]


class WizardStore:
    """
    Holds the single WizardState record shared by every stage.

    Writes are whole-field replacements through update(); listeners receive
    the new state plus the dict of fields that actually changed. A write
    that changes nothing is not dispatched.
    """

    def __init__(self, state: Optional[WizardState] = None):
        self._state: WizardState = state if state is not None else init_state()
        self._listeners: List[Listener] = []

    @property
    def state(self) -> WizardState:
        return self._state

    def __getitem__(self, key: str):
        return self._state[key]

    def update(self, **changes) -> dict:
        prev_step = self._state["step"]
        new_step  = changes.get("step", prev_step)
        if new_step != prev_step and "direction" not in changes:
            changes["direction"] = "forward" if new_step > prev_step else "backward"

        changed = {
            key: value
            for key, value in changes.items()
            if key not in self._state or self._state[key] is not value and self._state[key] != value
        }
        if not changed:
            return {}

        self._state = {**self._state, **changed}
        logger.debug("[store] updated: %s", sorted(changed))

        for listener in list(self._listeners):
            listener(self._state, changed)
        return changed

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
