"""
analysis.py — Photo Analysis Stage.

Uploads the capture, calls the remote analyzer under ModelRetryMiddleware,
and merges the primary detected item into the working form. A user abort
wins the race against the in-flight call and its late result is dropped.
"""

import asyncio
import logging
from typing import Optional

from clinical import DEFAULT_TREATMENT, find_item, is_anterior, normalize_treatment
from credits import CASE_ANALYSIS, VIEW_PLANS, CreditGate
from errors import AnalysisCancelled, ErrorKind, NoDataError, classify_error, user_message
from events import NoticeEmitter
from middleware import ModelRetryMiddleware
from services import AssetStore, PhotoAnalyzer
from state import MODE_QUICK, STEP_ANALYZING, STEP_DESIGN, STEP_REVIEW, WHITENING_NATURAL, WizardStore

logger = logging.getLogger(__name__)

# Descriptor fields copied from the primary item into the form.
MERGED_FIELDS = (
    ("cavity_class",        "cavity_class"),
    ("restoration_size",    "restoration_size"),
    ("substrate",           "substrate"),
    ("substrate_condition", "substrate_condition"),
    ("enamel_condition",    "enamel_condition"),
    ("depth",               "depth"),
)


class PhotoAnalysisStage:
    def __init__(
        self,
        store: WizardStore,
        owner_id: str,
        assets: AssetStore,
        analyzer: PhotoAnalyzer,
        credits: CreditGate,
        notices: NoticeEmitter,
        retry: Optional[ModelRetryMiddleware] = None,
    ):
        self.store    = store
        self.owner_id = owner_id
        self.assets   = assets
        self.analyzer = analyzer
        self.credits  = credits
        self.notices  = notices
        self.retry    = retry or ModelRetryMiddleware(max_retries=2, base_delay=3.0)

        self._abort: Optional[asyncio.Event] = None

    # ─────────────────────────────────────────
    # Public actions
    # ─────────────────────────────────────────
    async def analyze(self) -> None:
        state = self.store.state
        image = state["captured_image"]
        if not image:
            return

        if not state["credits_preconfirmed"]:
            if not self.credits.can_use(CASE_ANALYSIS):
                self.notices.error("Not enough credits for the analysis.", action=VIEW_PLANS)
                return
            if not await self.credits.confirm_use(CASE_ANALYSIS, "AI analysis"):
                return

        abort = asyncio.Event()
        self._abort = abort
        self.store.update(
            step=STEP_ANALYZING,
            analysis_loading=True,
            analysis_error=None,
            analysis_aborted=False,
        )

        try:
            await self._upload(image)

            result = await self.retry.call(self._dispatch, image, abort, on_retry=self._on_retry)

            if abort.is_set() or self.store["analysis_aborted"]:
                logger.info("[analysis] Result discarded after user abort")
                return

            if not result:
                raise NoDataError("no analysis data")

            self._apply_result(result)
            self.store.update(analysis_loading=False)
            self.notices.success(
                "Analysis complete.",
                description=f"{len(result.get('detected_items') or [])} item(s) detected.",
            )
            self.credits.refresh()
            self.store.update(step=STEP_REVIEW if self.store["mode"] == MODE_QUICK else STEP_DESIGN)

        except AnalysisCancelled:
            logger.info("[analysis] Cancelled")

        except Exception as e:
            if abort.is_set():
                logger.info("[analysis] Error after abort ignored: %s", e)
                return

            kind = classify_error(e)
            logger.error("[analysis] Failed (%s): %s", kind.value, e)
            if kind is ErrorKind.INSUFFICIENT_CREDITS:
                self.credits.refresh()
            self.store.update(analysis_error=user_message(kind, "analysis"), analysis_loading=False)

        finally:
            if self._abort is abort:
                self._abort = None

    async def reanalyze(self) -> None:
        image = self.store["captured_image"]
        if not image:
            return

        if not self.credits.can_use(CASE_ANALYSIS):
            self.notices.error("Not enough credits to reanalyze.", action=VIEW_PLANS)
            return

        self.store.update(reanalyzing=True)
        try:
            result = await self.retry.call(self._dispatch, image, asyncio.Event(), on_retry=self._on_retry)
            if not result:
                raise NoDataError("no analysis data")

            self._apply_result(result)
            self.credits.refresh()
            self.notices.success("Photo reanalyzed.")

        except Exception as e:
            kind = classify_error(e)
            logger.error("[analysis] Reanalysis failed (%s): %s", kind.value, e)
            self.notices.error(user_message(kind, "analysis"))

        finally:
            self.store.update(reanalyzing=False)

    def request_cancel(self) -> None:
        if self._abort is not None:
            self._abort.set()

    # ─────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────
    async def _upload(self, image: bytes) -> Optional[str]:
        try:
            ref = await self.assets.upload(self.owner_id, image)
        except Exception as e:
            logger.error("[analysis] Upload failed, continuing without asset: %s", e)
            return None

        self.store.update(uploaded_asset_ref=ref)
        return ref

    async def _dispatch(self, image: bytes, abort: asyncio.Event) -> Optional[dict]:
        if abort.is_set():
            raise AnalysisCancelled()

        call    = asyncio.ensure_future(self.analyzer.analyze(image))
        aborted = asyncio.ensure_future(abort.wait())

        done, _ = await asyncio.wait({call, aborted}, return_when=asyncio.FIRST_COMPLETED)

        if call in done:
            aborted.cancel()
            return call.result()

        call.cancel()
        raise AnalysisCancelled()

    def _on_retry(self, attempt: int, exc: Exception) -> None:
        self.notices.info("Reconnecting…", description=f"Attempt {attempt + 1} of {self.retry.max_retries + 1}")

    def _apply_result(self, result: dict) -> None:
        state = self.store.state
        items = [dict(i) for i in result.get("detected_items") or []]

        primary = next((i for i in items if i.get("item_id") == result.get("primary_item_id")), None)
        if primary is None and items:
            primary = items[0]

        form = dict(state["form"])
        if primary is not None:
            item_id = primary.get("item_id") or form["tooth"]
            form["tooth"] = item_id
            form["tooth_region"] = primary.get("region") or ("anterior" if is_anterior(item_id) else "posterior")
            for form_key, item_key in MERGED_FIELDS:
                form[form_key] = primary.get(item_key) or form[form_key]

        whitening = (state["preferences"] or {}).get("whitening_level", WHITENING_NATURAL)
        shade = result.get("suggested_color")
        if shade and not state["shade_manually_set"] and whitening == WHITENING_NATURAL:
            form["vita_shade"] = shade

        if result.get("treatment_indication"):
            form["treatment_type"] = normalize_treatment(result["treatment_indication"])

        ids = [i["item_id"] for i in items if i.get("item_id")]
        treatments = {
            item_id: state["item_treatments"].get(item_id)
            or normalize_treatment((find_item(items, item_id) or {}).get("treatment_indication"))
            or DEFAULT_TREATMENT
            for item_id in ids
        }

        changes = dict(
            analysis_result={**result, "detected_items": items},
            detected_items=items,
            selected_item_ids=ids,
            item_treatments=treatments,
            form=form,
        )
        if not state["original_item_treatments"]:
            changes["original_item_treatments"] = dict(treatments)

        self.store.update(**changes)
        logger.info("[analysis] Merged %d item(s), primary=%s", len(items), (primary or {}).get("item_id"))
