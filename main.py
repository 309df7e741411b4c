"""
main.py — Dental Case Wizard CLI
Flow: photo → (preferences) → AI analysis → (smile design) → review → submit
"""
import sys
import asyncio
import argparse
import logging
from pathlib import Path

from dotenv import load_dotenv
from openai import AsyncOpenAI

load_dotenv()

from config import settings
from events import Notice, NoticeLevel
from middleware import CreditConfirmationMiddleware, FilesystemMiddleware
from orchestrator import WizardOrchestrator
from services import (
    Collaborators, InMemoryAssetStore, InMemoryRecordStore, JsonDraftStore,
    OpenAIPhotoAnalyzer, OpenAIProtocolGenerator, StaticBalanceService,
)
from state import (
    STEP_CAPTURE, STEP_PREFERENCES, STEP_ANALYZING, STEP_DESIGN, STEP_REVIEW, STEP_SUBMIT,
)
from clinical import TREATMENT_LABELS

BANNER = """
╔══════════════════════════════════════════════════════════════╗
║            DENTAL CASE WIZARD  ·  LangGraph pipeline         ║
║     Photo analysis · Smile design · Protocol generation      ║
╚══════════════════════════════════════════════════════════════╝
"""

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.WARNING),
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

NOTICE_ICONS = {
    NoticeLevel.INFO:    "ℹ️ ",
    NoticeLevel.SUCCESS: "✅",
    NoticeLevel.WARNING: "⚠️ ",
    NoticeLevel.ERROR:   "❌",
}


def ask(prompt: str) -> str:
    """Ask a question and exit gracefully on quit."""
    val = input(prompt).strip()
    if val.lower() in ("quit", "exit", "q"):
        print("\n  Goodbye!\n")
        raise SystemExit(0)
    return val


def print_notice(notice: Notice) -> None:
    print(f"  {NOTICE_ICONS[notice.level]} {notice.message}")
    if notice.description:
        print(f"     {notice.description}")
    if notice.action:
        print(f"     → {notice.action.label}: {notice.action.path}")


class CliNavigator:
    def navigate_to(self, path: str) -> None:
        print(f"\n  ↪  Leaving the wizard ({path})\n")
        raise SystemExit(0)


def read_photo(path: str) -> bytes:
    p = Path(path).expanduser()
    if not p.exists():
        print(f"\n❌  Photo not found: {path}\n")
        sys.exit(1)
    return p.read_bytes()


def select_whitening() -> str:
    print("  ── Whitening Preference ──────────────────────────────")
    print("  [1] Natural")
    print("  [2] White (BL2/BL3)")
    print("  [3] Hollywood (BL1)")
    print("  ──────────────────────────────────────────────────────")
    levels = {"1": "natural", "2": "white", "3": "hollywood"}
    while True:
        choice = ask("  Select (1/2/3): ")
        if choice in levels:
            return levels[choice]
        print("  Please enter 1, 2, or 3.")


def print_review(wizard: WizardOrchestrator) -> None:
    state = wizard.state
    form  = state["form"]
    print("\n  ── Review ────────────────────────────────────────────")
    print(f"  Shade        : {form['vita_shade']}")
    print(f"  Cavity class : {form['cavity_class']}")
    for item_id in state["selected_item_ids"]:
        treatment = wizard.review.effective_treatment(item_id)
        print(f"  [{item_id:>7}]  {TREATMENT_LABELS.get(treatment, treatment)}")
    print("  ──────────────────────────────────────────────────────")


def print_outcome(wizard: WizardOrchestrator) -> None:
    outcome = wizard.submission.last_outcome
    if outcome is None:
        return
    print("\n" + "═" * 64)
    print(f"  Session   : {outcome.session_id}")
    print(f"  Succeeded : {', '.join(outcome.succeeded_item_ids) or '-'}")
    print(f"  Failed    : {', '.join(outcome.failed_item_ids) or '-'}")
    for treatment, count in outcome.treatment_counts.items():
        print(f"  {TREATMENT_LABELS.get(treatment, treatment):<20} × {count}")
    print("═" * 64)


def build_services(model: str, credits: int) -> Collaborators:
    client  = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
    records = InMemoryRecordStore()
    return Collaborators(
        assets=InMemoryAssetStore(),
        analyzer=OpenAIPhotoAnalyzer(client, model=model),
        generators=OpenAIProtocolGenerator(client, records, model=model),
        records=records,
        balance=StaticBalanceService(credits),
        drafts=JsonDraftStore(settings.DRAFT_DIR),
        navigation=CliNavigator(),
    )


async def run_session(args: argparse.Namespace) -> None:
    try:
        settings.validate()
    except ValueError as e:
        print(f"\n❌  {e}\n")
        sys.exit(1)

    wizard = WizardOrchestrator(
        args.owner,
        build_services(args.model, args.credits),
        prompt=CreditConfirmationMiddleware(),
    )
    wizard.notices.subscribe(print_notice)

    # ── Resume a previous case? ─────────────────────────
    draft = wizard.start()
    if draft is not None:
        print(f"  A draft from {draft.get('last_saved_at')} (step {draft.get('step')}) is available.")
        if ask("  Restore it? (Y/N): ").upper() == "Y":
            await wizard.restore_draft()
        else:
            wizard.discard_draft()

    if not wizard.state["captured_image"]:
        photo = args.photo or ask("  Path to intraoral photo: ")
        await wizard.set_captured_image(read_photo(photo))

    # ── Step loop ───────────────────────────────────────
    while True:
        step = wizard.state["step"]

        if step == STEP_CAPTURE:
            if args.quick:
                await wizard.go_to_quick_case()
                if wizard.state["step"] == STEP_CAPTURE:
                    print("\n  Analysis not started. Goodbye!\n")
                    return
            elif not await wizard.go_to_preferences():
                print("\n  Nothing to do without confirmed credits. Goodbye!\n")
                return

        elif step == STEP_PREFERENCES:
            wizard.set_preferences(whitening_level=select_whitening())
            await wizard.continue_from_preferences()

        elif step == STEP_ANALYZING:
            if not wizard.state["analysis_error"]:
                logger.warning("Analysis step reached with no result or error")
                return
            print(f"\n  {wizard.state['analysis_error']}")
            choice = ask("  [R] Retry   [S] Skip to manual review   [B] Back: ").upper()
            if choice == "R":
                await wizard.retry_analysis()
            elif choice == "S":
                wizard.skip_to_review()
            else:
                wizard.handle_back()

        elif step == STEP_DESIGN:
            if args.design:
                wizard.integrate_design(FilesystemMiddleware.read_json(args.design))
            else:
                wizard.skip_design()

        elif step == STEP_REVIEW:
            print_review(wizard)
            name = ask("  Patient name (blank to skip): ")
            if name:
                wizard.review.update_form(patient_name=name)
            if ask("  Submit case? (Y/N): ").upper() != "Y":
                wizard.drafts.on_visibility_hidden()
                print("\n  Draft saved. Goodbye!\n")
                return
            await wizard.submit()

        elif step == STEP_SUBMIT:
            print_outcome(wizard)
            return


def main():
    parser = argparse.ArgumentParser(description="Dental Case Wizard")
    parser.add_argument("--owner",   default="local", help="Owner id used for drafts and records")
    parser.add_argument("--photo",   default=None,    help="Path to the intraoral photo")
    parser.add_argument("--quick",   action="store_true", help="Quick case: skip preferences and smile design")
    parser.add_argument("--design",  default=None,    help="Path to a smile-design result JSON")
    parser.add_argument("--credits", type=int, default=10, help="Starting credit balance")
    parser.add_argument("--model",   default=settings.OPENAI_MODEL)
    args = parser.parse_args()

    print(BANNER)
    asyncio.run(run_session(args))


if __name__ == "__main__":
    main()
