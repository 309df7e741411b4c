"""
orchestrator.py — Composes the wizard components into one state/action surface.
"""

import logging
from typing import Optional

from analysis import PhotoAnalysisStage
from config import Settings, settings as default_settings
from credits import CreditGate, Prompt
from design import DesignIntegrationStage
from drafts import DraftPersistence
from events import NoticeEmitter
from graph import SubmissionPipeline
from middleware import ModelRetryMiddleware
from navigation import ActionCell, StepNavigator
from nodes import SubmissionOutcome
from review import ReviewStage
from services import Collaborators
from state import STEP_ANALYZING, STEP_SUBMIT, WizardState, WizardStore

logger = logging.getLogger(__name__)


class WizardOrchestrator:
    def __init__(
        self,
        owner_id: str,
        services: Collaborators,
        settings: Settings = default_settings,
        prompt: Optional[Prompt] = None,
        store: Optional[WizardStore] = None,
        analysis_retry: Optional[ModelRetryMiddleware] = None,
        protocol_retry: Optional[ModelRetryMiddleware] = None,
    ):
        self.owner_id = owner_id
        self.services = services
        self.store    = store or WizardStore()
        self.notices  = NoticeEmitter()

        self.credits = CreditGate(self.store, services.balance, self.notices, prompt=prompt)

        # The navigator triggers analysis and the analysis stage moves the step,
        # so both actions are bound once the stage exists.
        analyze_cell = ActionCell("analyze")
        abort_cell   = ActionCell("abort_analysis")

        self.navigator = StepNavigator(
            self.store, self.credits, self.notices, services.navigation, analyze_cell, abort_cell,
        )
        self.analysis = PhotoAnalysisStage(
            self.store, owner_id, services.assets, services.analyzer, self.credits, self.notices,
            retry=analysis_retry or ModelRetryMiddleware(settings.ANALYSIS_RETRIES, settings.ANALYSIS_BASE_DELAY),
        )
        analyze_cell.bind(self.analysis.analyze)
        abort_cell.bind(self.analysis.request_cancel)

        self.design = DesignIntegrationStage(self.store, self.notices)
        self.review = ReviewStage(self.store)

        self.drafts = DraftPersistence(
            self.store, owner_id, services.drafts, services.assets, self.notices,
            expiry_days=settings.DRAFT_EXPIRY_DAYS,
        )
        self.submission = SubmissionPipeline(
            self.store, owner_id, services.records, services.generators, self.notices,
            clear_draft=self.drafts.clear,
            retry=protocol_retry or ModelRetryMiddleware(settings.PROTOCOL_RETRIES, settings.PROTOCOL_BASE_DELAY),
            submit_delay=settings.SUBMIT_DELAY,
            default_patient_age=settings.DEFAULT_PATIENT_AGE,
        )

    @property
    def state(self) -> WizardState:
        return self.store.state

    # ─────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────
    def start(self) -> Optional[dict]:
        """Runs the once-per-session checks and returns a restorable draft, if any."""
        self.credits.check_low_balance()
        return self.drafts.load_pending()

    async def set_captured_image(self, image: Optional[bytes]) -> None:
        self.store.update(captured_image=image)
        await self.resume_interrupted_analysis()

    async def restore_draft(self) -> Optional[dict]:
        draft = await self.drafts.restore()
        if draft is None:
            return None

        if draft.get("step") == STEP_ANALYZING and not draft.get("analysis_result"):
            logger.info("[orchestrator] Draft was saved mid-analysis, re-running once the photo is back")
            self.store.update(needs_reanalysis=True)

        await self.resume_interrupted_analysis()
        return draft

    def discard_draft(self) -> None:
        self.drafts.discard()

    async def resume_interrupted_analysis(self) -> bool:
        state = self.store.state
        if not state["needs_reanalysis"] or not state["captured_image"] or state["analysis_loading"]:
            return False

        self.store.update(needs_reanalysis=False, credits_preconfirmed=True)
        await self.analysis.analyze()
        return True

    # ─────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────
    def go_to_step(self, target: int) -> None:
        leaving_submit = self.store["step"] == STEP_SUBMIT
        self.navigator.go_to_step(target)
        if leaving_submit and self.store["step"] != STEP_SUBMIT:
            self.submission.reset()

    async def go_to_preferences(self) -> bool:
        return await self.navigator.go_to_preferences()

    async def go_to_quick_case(self) -> None:
        await self.navigator.go_to_quick_case()

    async def continue_from_preferences(self) -> None:
        await self.navigator.continue_from_preferences()

    def set_preferences(self, **preferences) -> None:
        self.store.update(preferences={**(self.store["preferences"] or {}), **preferences})

    def handle_back(self) -> None:
        if self.store["step"] == STEP_SUBMIT:
            self.submission.reset()
        self.navigator.handle_back()

    def cancel_analysis(self) -> None:
        self.navigator.cancel_analysis()

    async def retry_analysis(self) -> None:
        await self.navigator.retry_analysis()

    def skip_to_review(self) -> None:
        self.navigator.skip_to_review()

    # ─────────────────────────────────────────
    # Stages
    # ─────────────────────────────────────────
    async def reanalyze(self) -> None:
        await self.analysis.reanalyze()

    def integrate_design(self, design_result: Optional[dict]) -> None:
        self.design.integrate(design_result)

    def skip_design(self) -> None:
        self.design.skip()

    async def submit(self) -> Optional[SubmissionOutcome]:
        return await self.submission.submit()

    def reset_submission(self) -> None:
        self.submission.reset()
