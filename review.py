# review.py — Synchronous mutation helpers used on the review step.

import logging
from datetime import date
from typing import List, Optional

from clinical import age_from_birth_date, effective_treatment, normalize_treatment
from middleware import PIIMiddleware
from state import PatientIdentity, WizardStore

logger = logging.getLogger(__name__)


class ReviewStage:
    def __init__(self, store: WizardStore):
        self.store = store

    def update_form(self, **fields) -> None:
        form = {**self.store["form"], **fields}
        changes = {"form": form}
        if "vita_shade" in fields:
            changes["shade_manually_set"] = True
        self.store.update(**changes)

    def set_selected_items(self, item_ids: List[str]) -> None:
        self.store.update(selected_item_ids=list(item_ids))

    def set_item_treatment(self, item_id: str, treatment: str) -> None:
        treatments = {**self.store["item_treatments"], item_id: normalize_treatment(treatment)}
        self.store.update(item_treatments=treatments)

    def restore_suggestion(self, item_id: str) -> None:
        original = self.store["original_item_treatments"].get(item_id)
        if original is None:
            return
        self.set_item_treatment(item_id, original)

    def effective_treatment(self, item_id: str) -> str:
        state = self.store.state
        return effective_treatment(item_id, state["item_treatments"], state["detected_items"], state["form"])

    def select_patient(
        self,
        name: Optional[str],
        patient_id: Optional[str],
        birth_date: Optional[str],
        today: Optional[date] = None,
    ) -> None:
        form = dict(self.store["form"])
        if name is not None:
            form["patient_name"] = name
        form["patient_age"] = str(age_from_birth_date(birth_date, today)) if birth_date else ""

        patient = PatientIdentity(patient_id=patient_id, birth_date=birth_date, original_birth_date=birth_date)
        self.store.update(form=form, patient=patient)
        logger.info("[review] Patient selected: %s", PIIMiddleware.mask_name(name))

    def set_birth_date(self, birth_date: Optional[str], today: Optional[date] = None) -> None:
        patient = {**self.store["patient"], "birth_date": birth_date}
        form = {**self.store["form"], "patient_age": str(age_from_birth_date(birth_date, today)) if birth_date else ""}
        self.store.update(patient=patient, form=form)
