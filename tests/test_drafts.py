"""
tests/test_drafts.py — Draft autosave, expiry, restore and discard.
"""

from datetime import datetime, timedelta, timezone

import pytest

from drafts import DraftPersistence, is_draft_expired
from events import NoticeEmitter
from services import InMemoryAssetStore, InMemoryDraftStore
from support import PHOTO, check, levels, make_state, make_store

NOW = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


def make_persistence(store=None, drafts=None, assets=None):
    return DraftPersistence(
        store or make_store(),
        "owner-1",
        drafts or InMemoryDraftStore(),
        assets or InMemoryAssetStore(),
        NoticeEmitter(),
        expiry_days=7,
        clock=lambda: NOW,
    )


def saved_draft(step: int = 4, saved_at: datetime = NOW, **overrides) -> dict:
    state = make_state()
    draft = {
        "step": step,
        "mode": state["mode"],
        "form": {**state["form"], "patient_name": "Ana Souza", "vita_shade": "B1"},
        "preferences": state["preferences"],
        "detected_items": [{"item_id": "21"}],
        "selected_item_ids": ["21"],
        "item_treatments": {"21": "resina"},
        "original_item_treatments": {"21": "resina"},
        "analysis_result": {"detected_items": [{"item_id": "21"}]},
        "design_result": None,
        "uploaded_asset_ref": None,
        "patient": state["patient"],
        "last_saved_at": saved_at.isoformat(),
        "manual_shade_override": False,
    }
    draft.update(overrides)
    return draft


# ─────────────────────────────────────────────
# Expiry
# ─────────────────────────────────────────────
def test_expiry_boundary():
    print("\n[drafts] expiry")
    check("exactly 7 days is valid", not is_draft_expired((NOW - timedelta(days=7)).isoformat(), NOW))
    check("one second more expires", is_draft_expired((NOW - timedelta(days=7, seconds=1)).isoformat(), NOW))
    check("naive timestamp as UTC",  not is_draft_expired("2026-05-09T12:00:00", NOW))


def test_expired_draft_dropped_on_load():
    drafts = InMemoryDraftStore()
    drafts.save("owner-1", saved_draft(saved_at=NOW - timedelta(days=8)))
    persistence = make_persistence(drafts=drafts)

    check("nothing offered", persistence.load_pending() is None)
    check("draft removed",   drafts.load("owner-1") is None)


def test_capture_step_draft_not_offered():
    drafts = InMemoryDraftStore()
    drafts.save("owner-1", saved_draft(step=1))
    check("step 1 not offered", make_persistence(drafts=drafts).load_pending() is None)

    drafts.save("owner-1", saved_draft(step=2))
    check("step 2 offered", make_persistence(drafts=drafts).load_pending()["step"] == 2)


# ─────────────────────────────────────────────
# Autosave
# ─────────────────────────────────────────────
def test_autosave_conditions():
    persistence = make_persistence(store=make_store(step=2))
    check("no photo → no save",   persistence.autosave() is False)

    persistence = make_persistence(store=make_store(step=6, captured_image=PHOTO))
    check("result step → no save", persistence.autosave() is False)

    persistence = make_persistence(store=make_store(step=1, captured_image=PHOTO))
    check("capture step saves",    persistence.autosave() is True)


def test_autosave_on_change():
    store = make_store(step=2, captured_image=PHOTO)
    drafts = InMemoryDraftStore()
    make_persistence(store=store, drafts=drafts)

    store.update(form={**store["form"], "vita_shade": "C2"}, shade_manually_set=True)
    draft = drafts.load("owner-1")

    check("saved on change",       draft is not None and draft["form"]["vita_shade"] == "C2")
    check("manual flag persisted", draft["manual_shade_override"] is True)
    check("timestamp in state",    store["last_saved_at"] == NOW.isoformat())
    check("photo bytes excluded",  "captured_image" not in draft)


def test_unrelated_change_does_not_save():
    store = make_store(step=2, captured_image=PHOTO)
    drafts = InMemoryDraftStore()
    make_persistence(store=store, drafts=drafts)

    store.update(analysis_loading=True)
    check("transient flag ignored", drafts.load("owner-1") is None)


# ─────────────────────────────────────────────
# Restore + discard
# ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_restore_brings_back_fields_and_photo():
    assets = InMemoryAssetStore()
    ref = await assets.upload("owner-1", PHOTO)
    drafts = InMemoryDraftStore()
    drafts.save("owner-1", saved_draft(uploaded_asset_ref=ref, manual_shade_override=True))

    store = make_store()
    persistence = make_persistence(store=store, drafts=drafts, assets=assets)
    persistence.load_pending()
    draft = await persistence.restore()

    check("draft returned",       draft["step"] == 4)
    check("step restored",        store["step"] == 4)
    check("form restored",        store["form"]["vita_shade"] == "B1")
    check("manual shade restored", store["shade_manually_set"] is True)
    check("photo downloaded",     store["captured_image"] == PHOTO)
    check("success notice",       levels(persistence.notices) == ["success"])
    check("offer consumed",       persistence.pending_draft is None)


@pytest.mark.asyncio
async def test_restore_without_photo():
    drafts = InMemoryDraftStore()
    drafts.save("owner-1", saved_draft(uploaded_asset_ref="owner-1/missing.jpg"))
    store = make_store(shade_manually_set=False)
    persistence = make_persistence(store=store, drafts=drafts)
    persistence.load_pending()
    await persistence.restore()

    check("fields still restored", store["selected_item_ids"] == ["21"])
    check("no photo",              store["captured_image"] is None)
    check("manual flag untouched", store["shade_manually_set"] is False)


@pytest.mark.asyncio
async def test_restore_without_offer_is_noop():
    persistence = make_persistence()
    check("nothing to restore", await persistence.restore() is None)


def test_discard_resets_but_keeps_session_flags():
    drafts = InMemoryDraftStore()
    drafts.save("owner-1", saved_draft())
    store = make_store(step=4, captured_image=PHOTO, credit_warning_shown=True, selected_item_ids=["21"])
    persistence = make_persistence(store=store, drafts=drafts)
    persistence.load_pending()

    persistence.discard()

    check("draft removed",         drafts.load("owner-1") is None)
    check("state reset",           store["step"] == 1 and store["selected_item_ids"] == [])
    check("photo cleared",         store["captured_image"] is None)
    check("warning latch kept",    store["credit_warning_shown"] is True)
    check("offer cleared",         persistence.pending_draft is None)


def test_malformed_timestamp_dropped():
    drafts = InMemoryDraftStore()
    drafts.save("owner-1", saved_draft(last_saved_at="yesterday-ish"))
    persistence = make_persistence(drafts=drafts)

    check("nothing offered", persistence.load_pending() is None)
    check("draft removed",   drafts.load("owner-1") is None)
