# design.py — Merges smile-design suggestions into the detected items.

import logging
from typing import Dict, List, Optional

from clinical import (
    DEFAULT_TREATMENT, SOFT_TISSUE, SOFT_TISSUE_ITEM_ID,
    find_item, full_region, is_gingival_text, item_sort_key, normalize_treatment,
)
from events import NoticeEmitter
from state import STEP_REVIEW, DetectedItem, WizardStore

logger = logging.getLogger(__name__)


def _suggestion_text(suggestion: dict) -> str:
    return f"{suggestion.get('current_issue') or ''} {suggestion.get('proposed_change') or ''}"


def is_soft_tissue_suggestion(suggestion: dict) -> bool:
    if normalize_treatment(suggestion.get("treatment_indication")) == SOFT_TISSUE:
        return True
    return is_gingival_text(_suggestion_text(suggestion))


def wants_soft_tissue(design_result: Optional[dict]) -> bool:
    if not design_result:
        return False
    if design_result.get("gingivoplasty_approved") is False:
        return False

    suggestions = (design_result.get("analysis") or {}).get("suggestions") or []
    if any(is_soft_tissue_suggestion(s) for s in suggestions):
        return True

    layers = design_result.get("layers") or []
    return any(layer.get("includes_gengivoplasty") for layer in layers)


def synthesize_item(suggestion: dict) -> DetectedItem:
    item_id = str(suggestion["item_id"])
    return DetectedItem(
        item_id=item_id,
        region=full_region(item_id),
        cavity_class=None,
        restoration_size=None,
        substrate=None,
        substrate_condition=None,
        enamel_condition=None,
        depth=None,
        priority="medium",
        notes=f"Design: {suggestion.get('current_issue') or ''} → {suggestion.get('proposed_change') or ''}",
        treatment_indication=normalize_treatment(suggestion.get("treatment_indication")) or DEFAULT_TREATMENT,
        indication_reason=suggestion.get("proposed_change"),
    )


def merge_suggestions(detected: List[DetectedItem], suggestions: List[dict]) -> Optional[List[DetectedItem]]:
    """Returns the merged, id-sorted list, or None when nothing new was added."""
    known = {i.get("item_id") for i in detected}
    added: List[DetectedItem] = []

    for s in suggestions:
        item_id = s.get("item_id")
        if not item_id or is_soft_tissue_suggestion(s):
            continue
        if str(item_id) in known:
            continue
        known.add(str(item_id))
        added.append(synthesize_item(s))

    if not added:
        return None
    return sorted([*detected, *added], key=item_sort_key)


def upgrade_treatments(treatments: Dict[str, str], suggestions: List[dict], item_ids) -> Dict[str, str]:
    upgraded = dict(treatments)
    for s in suggestions:
        item_id = str(s.get("item_id") or "")
        suggested = normalize_treatment(s.get("treatment_indication"))
        if item_id not in item_ids or not suggested or suggested == DEFAULT_TREATMENT:
            continue
        current = upgraded.get(item_id)
        if current is None or current == DEFAULT_TREATMENT:
            upgraded[item_id] = suggested
    return upgraded


class DesignIntegrationStage:
    def __init__(self, store: WizardStore, notices: NoticeEmitter):
        self.store   = store
        self.notices = notices

    def integrate(self, design_result: Optional[dict]) -> None:
        state = self.store.state
        changes: dict = {"design_result": design_result}

        suggestions = ((design_result or {}).get("analysis") or {}).get("suggestions") or []
        detected    = state["detected_items"]
        selected    = list(state["selected_item_ids"])
        treatments  = dict(state["item_treatments"])

        if suggestions and detected:
            merged = merge_suggestions(detected, suggestions)
            if merged is not None:
                new_ids = [i["item_id"] for i in merged if i["item_id"] not in {d.get("item_id") for d in detected}]
                logger.info("[design] %d item(s) added from suggestions: %s", len(new_ids), new_ids)
                changes["detected_items"] = merged
                if state["analysis_result"] is not None:
                    changes["analysis_result"] = {**state["analysis_result"], "detected_items": merged}
                for item_id in new_ids:
                    if item_id not in selected:
                        selected.append(item_id)
                    treatments.setdefault(item_id, find_item(merged, item_id).get("treatment_indication") or DEFAULT_TREATMENT)
                detected = merged

            treatments = upgrade_treatments(treatments, suggestions, {i.get("item_id") for i in detected})

        if wants_soft_tissue(design_result):
            if SOFT_TISSUE_ITEM_ID not in selected:
                selected.append(SOFT_TISSUE_ITEM_ID)
            treatments[SOFT_TISSUE_ITEM_ID] = SOFT_TISSUE
            if not state["soft_tissue_notified"]:
                self.notices.info(
                    "Gingivoplasty added to the case.",
                    description="The smile design suggests soft-tissue recontouring.",
                )
                changes["soft_tissue_notified"] = True

        changes["selected_item_ids"] = selected
        changes["item_treatments"]   = treatments
        changes["step"]              = STEP_REVIEW
        self.store.update(**changes)

    def skip(self) -> None:
        self.store.update(design_result=None, step=STEP_REVIEW)

    def update_result(self, design_result: Optional[dict]) -> None:
        """Keeps an in-progress design result in state so it is autosaved."""
        self.store.update(design_result=design_result)

