# navigation.py — Step state machine for the full and quick wizard paths.

import logging
from typing import Callable, Optional

from credits import CASE_ANALYSIS, DESIGN_SIMULATION, FULL_ANALYSIS, VIEW_PLANS, CreditGate
from events import NoticeEmitter
from services import Navigation
from state import (
    MODE_FULL, MODE_QUICK, WHITENING_NATURAL,
    STEP_CAPTURE, STEP_PREFERENCES, STEP_ANALYZING, STEP_DESIGN, STEP_REVIEW, STEP_SUBMIT,
    WizardStore,
)

logger = logging.getLogger(__name__)

DASHBOARD_PATH = "/dashboard"


class ActionCell:
    """Late-bound callable, filled in once the component that owns it exists."""

    def __init__(self, name: str):
        self.name = name
        self._fn: Optional[Callable] = None

    @property
    def is_bound(self) -> bool:
        return self._fn is not None

    def bind(self, fn: Callable) -> None:
        self._fn = fn

    def __call__(self, *args, **kwargs):
        if self._fn is None:
            raise RuntimeError(f"action '{self.name}' called before it was bound")
        return self._fn(*args, **kwargs)


class StepNavigator:
    def __init__(
        self,
        store: WizardStore,
        credits: CreditGate,
        notices: NoticeEmitter,
        navigation: Navigation,
        analyze: ActionCell,
        abort_analysis: ActionCell,
    ):
        self.store          = store
        self.credits        = credits
        self.notices        = notices
        self.navigation     = navigation
        self.analyze        = analyze
        self.abort_analysis = abort_analysis

    @property
    def step(self) -> int:
        return self.store["step"]

    @property
    def is_quick(self) -> bool:
        return self.store["mode"] == MODE_QUICK

    def set_step(self, step: int) -> None:
        self.store.update(step=step)

    def go_to_step(self, target: int) -> None:
        """Back-navigation only. Forward moves go through the transition actions."""
        current = self.step

        if not (1 <= target < current):
            return
        if current == STEP_SUBMIT and target != STEP_REVIEW:
            return
        if self.is_quick and target in (STEP_PREFERENCES, STEP_DESIGN):
            return

        if target == STEP_ANALYZING:
            target = STEP_CAPTURE if self.is_quick else STEP_PREFERENCES

        logger.info("[navigator] go_to_step %d → %d", current, target)
        self.set_step(target)

    async def go_to_preferences(self) -> bool:
        total = self.credits.combined_cost(CASE_ANALYSIS, DESIGN_SIMULATION)

        if self.credits.remaining < total:
            logger.info("[navigator] Insufficient balance for full analysis (%d < %d)", self.credits.remaining, total)
            self.notices.error(
                "Not enough credits for a full analysis.",
                description=f"A full analysis costs {total} credits.",
                action=VIEW_PLANS,
            )
            return False

        confirmed = await self.credits.confirm_use(FULL_ANALYSIS, "AI analysis + smile design", total)
        if not confirmed:
            return False

        self.store.update(credits_preconfirmed=True, mode=MODE_FULL, step=STEP_PREFERENCES)
        return True

    async def go_to_quick_case(self) -> None:
        self.store.update(mode=MODE_QUICK, preferences={"whitening_level": WHITENING_NATURAL})
        await self.analyze()

    async def continue_from_preferences(self) -> None:
        await self.analyze()

    async def retry_analysis(self) -> None:
        self.store.update(analysis_error=None)
        await self.analyze()

    def skip_to_review(self) -> None:
        self.store.update(analysis_error=None, analysis_loading=False, step=STEP_REVIEW)
        self.notices.info("Continuing with manual entry.")

    def handle_back(self) -> None:
        step = self.step

        if step == STEP_CAPTURE:
            self.navigation.navigate_to(DASHBOARD_PATH)
        elif step == STEP_PREFERENCES:
            self.store.update(step=STEP_CAPTURE, credits_preconfirmed=False)
        elif step == STEP_ANALYZING:
            if self.is_quick:
                self.store.update(step=STEP_CAPTURE, mode=MODE_FULL, analysis_error=None, analysis_loading=False)
            else:
                self.store.update(step=STEP_PREFERENCES, analysis_error=None, analysis_loading=False)
        elif step == STEP_DESIGN:
            self.set_step(STEP_PREFERENCES)
        elif step == STEP_REVIEW:
            self.set_step(STEP_ANALYZING if self.is_quick else STEP_DESIGN)
        elif step == STEP_SUBMIT:
            self.set_step(STEP_REVIEW)

    def cancel_analysis(self) -> None:
        self.store.update(analysis_aborted=True)
        if self.abort_analysis.is_bound:
            self.abort_analysis()

        changes = dict(analysis_loading=False, analysis_error=None)
        if self.is_quick:
            changes.update(step=STEP_CAPTURE, mode=MODE_FULL)
        else:
            changes.update(step=STEP_PREFERENCES)
        self.store.update(**changes)
        logger.info("[navigator] Analysis cancelled by user")
