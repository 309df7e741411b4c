"""
drafts.py — Draft persistence and restore.

Autosaves a serializable snapshot of the wizard while 1 <= step < 6 and a
photo is loaded. Drafts older than the expiry window are dropped on load;
exactly the window is still valid.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from events import NoticeEmitter
from middleware import PIIMiddleware
from services import AssetStore, DraftStore
from state import STEP_CAPTURE, STEP_SUBMIT, Draft, WizardState, WizardStore, init_state

logger = logging.getLogger(__name__)

DRAFT_FIELDS = (
    "step",
    "mode",
    "form",
    "preferences",
    "detected_items",
    "selected_item_ids",
    "item_treatments",
    "original_item_treatments",
    "analysis_result",
    "design_result",
    "uploaded_asset_ref",
    "patient",
)

# Flags that live for the whole session and survive a discard.
SESSION_FLAGS = ("credit_warning_shown",)

MIN_OFFER_STEP = 2


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_draft_expired(saved_at: str, now: Optional[datetime] = None, expiry_days: int = 7) -> bool:
    saved = datetime.fromisoformat(saved_at)
    if saved.tzinfo is None:
        saved = saved.replace(tzinfo=timezone.utc)
    now = now or _now()
    return now - saved > timedelta(days=expiry_days)


class DraftPersistence:
    def __init__(
        self,
        store: WizardStore,
        owner_id: str,
        drafts: DraftStore,
        assets: AssetStore,
        notices: NoticeEmitter,
        expiry_days: int = 7,
        clock: Callable[[], datetime] = _now,
    ):
        self.store       = store
        self.owner_id    = owner_id
        self.drafts      = drafts
        self.assets      = assets
        self.notices     = notices
        self.expiry_days = expiry_days
        self.clock       = clock

        self.pending_draft: Optional[Draft] = None
        self._unsubscribe = store.subscribe(self._on_change)

    # ─────────────────────────────────────────
    # Autosave
    # ─────────────────────────────────────────
    def _on_change(self, state: WizardState, changed: dict) -> None:
        if "last_saved_at" in changed and len(changed) == 1:
            return
        if any(k in changed for k in DRAFT_FIELDS) or "captured_image" in changed or "shade_manually_set" in changed:
            self.autosave()

    def on_visibility_hidden(self) -> None:
        self.autosave()

    def autosave(self) -> bool:
        state = self.store.state
        if not (STEP_CAPTURE <= state["step"] < STEP_SUBMIT) or not state["captured_image"]:
            return False

        saved_at = self.clock().isoformat()
        draft = Draft(**{k: state[k] for k in DRAFT_FIELDS})
        draft["last_saved_at"]         = saved_at
        draft["manual_shade_override"] = state["shade_manually_set"]

        try:
            self.drafts.save(self.owner_id, draft)
        except Exception as e:
            logger.error("[drafts] Autosave failed: %s", e)
            return False

        self.store.update(last_saved_at=saved_at)
        logger.debug("[drafts] Saved at step %d", state["step"])
        return True

    # ─────────────────────────────────────────
    # Load / restore / discard
    # ─────────────────────────────────────────
    def load_pending(self) -> Optional[Draft]:
        draft = self.drafts.load(self.owner_id)
        if not draft:
            return None

        saved_at = draft.get("last_saved_at")
        try:
            expired = not saved_at or is_draft_expired(saved_at, self.clock(), self.expiry_days)
        except (TypeError, ValueError) as e:
            logger.warning("[drafts] Unreadable draft timestamp %r: %s", saved_at, e)
            expired = True

        if expired:
            logger.info("[drafts] Dropping expired draft (saved %s)", saved_at)
            self.drafts.clear(self.owner_id)
            return None

        if draft.get("step", STEP_CAPTURE) >= MIN_OFFER_STEP:
            self.pending_draft = draft
        return self.pending_draft

    async def restore(self) -> Optional[Draft]:
        draft = self.pending_draft
        if draft is None:
            return None

        changes = {k: draft[k] for k in DRAFT_FIELDS if k in draft}
        if draft.get("manual_shade_override"):
            changes["shade_manually_set"] = True
        changes["last_saved_at"] = draft.get("last_saved_at")
        self.store.update(**changes)

        asset_ref = draft.get("uploaded_asset_ref")
        if asset_ref:
            try:
                image = await self.assets.download(asset_ref)
                self.store.update(captured_image=image)
            except Exception as e:
                logger.error("[drafts] Could not reload photo %s: %s", asset_ref, e)

        self.pending_draft = None
        logger.info(
            "[drafts] Restored draft at step %s for %s",
            draft.get("step"), PIIMiddleware.mask_state(changes).get("form", {}).get("patient_name"),
        )
        self.notices.success("Draft restored.")
        return draft

    def discard(self) -> None:
        self.drafts.clear(self.owner_id)
        self.pending_draft = None

        fresh = init_state()
        del fresh["direction"]
        for key in SESSION_FLAGS:
            fresh[key] = self.store[key]
        self.store.update(**fresh)
        logger.info("[drafts] Draft discarded")

    def clear(self) -> None:
        self.drafts.clear(self.owner_id)
        self.pending_draft = None

    def close(self) -> None:
        self._unsubscribe()
