"""
tests/test_credits.py — Credit gate: confirmation protocol, cost sums, low-balance latch.
"""

import asyncio
from itertools import product
from unittest.mock import AsyncMock

import pytest

from credits import CASE_ANALYSIS, DESIGN_SIMULATION, CreditGate
from events import NoticeEmitter, NoticeLevel
from services import StaticBalanceService
from support import check, make_store

COSTS = {"case_analysis": 1, "dsd_simulation": 2, "reanalysis": 5, "export": 0}


def make_gate(remaining: int = 10, prompt=None) -> CreditGate:
    return CreditGate(make_store(), StaticBalanceService(remaining, COSTS), NoticeEmitter(), prompt=prompt)


def test_combined_cost_is_exact_sum():
    gate = make_gate()
    for a, b in product(COSTS, repeat=2):
        assert gate.combined_cost(a, b) == gate.cost(a) + gate.cost(b)
    check("full workflow cost", gate.full_workflow_cost() == 3)


def test_can_use():
    gate = make_gate(remaining=1)
    check("enough for analysis",  gate.can_use(CASE_ANALYSIS))
    check("not enough for design", not gate.can_use(DESIGN_SIMULATION))
    check("explicit cost", not gate.can_use(CASE_ANALYSIS, cost=2))


@pytest.mark.asyncio
async def test_confirm_use_with_prompt():
    prompt = AsyncMock(return_value=True)
    gate = make_gate(remaining=7, prompt=prompt)

    ok = await gate.confirm_use(CASE_ANALYSIS, "AI analysis")

    confirmation = prompt.await_args.args[0]
    check("accepted",              ok is True)
    check("cost from service",     confirmation["cost"] == 1)
    check("balance shown",         confirmation["remaining_balance"] == 7)
    check("pending cleared",       gate.pending is None)

    ok = await gate.confirm_use("full_analysis", "Full", cost_override=3)
    check("override cost", prompt.await_args.args[0]["cost"] == 3 and ok)


@pytest.mark.asyncio
async def test_confirm_use_resolved_by_respond():
    gate = make_gate()

    task = asyncio.ensure_future(gate.confirm_use(CASE_ANALYSIS, "AI analysis"))
    await asyncio.sleep(0)
    check("confirmation pending", gate.pending is not None and gate.pending["operation_key"] == CASE_ANALYSIS)

    gate.respond(False)
    ok = await task
    check("declined",        ok is False)
    check("pending cleared", gate.pending is None)

    gate.respond(True)    # nothing pending: ignored


def test_low_balance_warning_fires_once():
    gate = make_gate(remaining=2)
    gate.check_low_balance()
    gate.check_low_balance()
    warnings = gate.notices.of_level(NoticeLevel.WARNING)
    check("one soft warning", len(warnings) == 1 and len(gate.notices.history) == 1)
    check("latched in state", gate.store["credit_warning_shown"] is True)


def test_low_balance_zero_is_hard():
    gate = make_gate(remaining=0)
    gate.check_low_balance()
    notice = gate.notices.history[0]
    check("hard warning",    notice.level is NoticeLevel.ERROR)
    check("redirect action", notice.action.path == "/pricing")


def test_enough_balance_no_warning():
    gate = make_gate(remaining=3)
    gate.check_low_balance()
    check("no notice at exact full cost", gate.notices.history == [])
