# credits.py — Confirm-before-spend gate over the balance service.

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from events import NoticeAction, NoticeEmitter
from services import BalanceService
from state import CreditConfirmation, WizardStore

logger = logging.getLogger(__name__)

CASE_ANALYSIS     = "case_analysis"
DESIGN_SIMULATION = "dsd_simulation"
FULL_ANALYSIS     = "full_analysis"

PRICING_PATH = "/pricing"
VIEW_PLANS   = NoticeAction(label="View plans", path=PRICING_PATH)

Prompt = Callable[[CreditConfirmation], Awaitable[bool]]


class CreditGate:
    """
    Suspends a gated operation until the user accepts or declines its cost.

    With a prompt coroutine the gate awaits it directly. Without one the
    confirmation stays in `pending` until respond() resolves it, which is
    how a UI answering asynchronously drives the gate.
    """

    def __init__(
        self,
        store: WizardStore,
        balance: BalanceService,
        notices: NoticeEmitter,
        prompt: Optional[Prompt] = None,
    ):
        self.store   = store
        self.balance = balance
        self.notices = notices
        self.prompt  = prompt

        self.pending: Optional[CreditConfirmation] = None
        self._decision: Optional[asyncio.Future] = None

    # ── Balance helpers ───────────────────────────
    @property
    def remaining(self) -> int:
        return self.balance.get_remaining_balance()

    def cost(self, operation_key: str) -> int:
        return self.balance.get_operation_cost(operation_key)

    def combined_cost(self, *operation_keys: str) -> int:
        return sum(self.cost(k) for k in operation_keys)

    def full_workflow_cost(self) -> int:
        return self.combined_cost(CASE_ANALYSIS, DESIGN_SIMULATION)

    def can_use(self, operation_key: str, cost: Optional[int] = None) -> bool:
        needed = self.cost(operation_key) if cost is None else cost
        return self.remaining >= needed

    def refresh(self) -> None:
        self.balance.refresh()

    # ── Confirmation ──────────────────────────────
    async def confirm_use(self, operation_key: str, label: str, cost_override: Optional[int] = None) -> bool:
        cost = self.cost(operation_key) if cost_override is None else cost_override
        confirmation = CreditConfirmation(
            operation_key=operation_key,
            label=label,
            cost=cost,
            remaining_balance=self.remaining,
        )
        self.pending = confirmation
        logger.info("[credits] Confirmation requested: %s (%d credits)", operation_key, cost)

        try:
            if self.prompt is not None:
                accepted = await self.prompt(confirmation)
            else:
                self._decision = asyncio.get_running_loop().create_future()
                accepted = await self._decision
        finally:
            self.pending   = None
            self._decision = None

        logger.info("[credits] %s %s", operation_key, "accepted" if accepted else "declined")
        return bool(accepted)

    def respond(self, accepted: bool) -> None:
        if self._decision is None or self._decision.done():
            logger.warning("[credits] respond(%s) with no pending confirmation", accepted)
            return
        self._decision.set_result(accepted)

    # ── Low-balance warning ───────────────────────
    def check_low_balance(self) -> None:
        if self.store["credit_warning_shown"]:
            return
        self.store.update(credit_warning_shown=True)

        remaining = self.remaining
        full_cost = self.full_workflow_cost()

        if remaining == 0:
            self.notices.error(
                "You have no credits left.",
                description="Buy more credits to analyze new cases.",
                action=VIEW_PLANS,
            )
        elif remaining < full_cost:
            self.notices.warning(
                f"Low balance: {remaining} credit(s) left.",
                description=f"A full analysis costs {full_cost} credits.",
            )
