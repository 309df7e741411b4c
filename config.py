"""
Application Settings

Loads environment variables from the project's .env file and exposes every
wizard tunable through one Settings object.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent
load_dotenv(PROJECT_ROOT / ".env")


class Settings:
    """
    Centralized settings read from the environment.
    Usage:
        from config import settings
        delay = settings.SUBMIT_DELAY
    """

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "WARNING")

    # OpenAI (photo analyzer + protocol generator)
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_MODEL: str   = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    # Drafts
    DRAFT_DIR: str         = os.getenv("WIZARD_DRAFT_DIR", str(PROJECT_ROOT / "outputs" / "drafts"))
    DRAFT_EXPIRY_DAYS: int = int(os.getenv("WIZARD_DRAFT_EXPIRY_DAYS", "7"))

    # Submission
    SUBMIT_DELAY: float        = float(os.getenv("WIZARD_SUBMIT_DELAY", "1.5"))
    DEFAULT_PATIENT_AGE: str   = os.getenv("WIZARD_DEFAULT_PATIENT_AGE", "30")

    # Retry policy
    ANALYSIS_RETRIES: int      = int(os.getenv("WIZARD_ANALYSIS_RETRIES", "2"))
    ANALYSIS_BASE_DELAY: float = float(os.getenv("WIZARD_ANALYSIS_BASE_DELAY", "3.0"))
    PROTOCOL_RETRIES: int      = int(os.getenv("WIZARD_PROTOCOL_RETRIES", "2"))
    PROTOCOL_BASE_DELAY: float = float(os.getenv("WIZARD_PROTOCOL_BASE_DELAY", "2.0"))

    @classmethod
    def validate(cls, require_openai: bool = True) -> None:
        """Validate that the required environment variables are set."""
        errors = []

        if require_openai and not cls.OPENAI_API_KEY:
            errors.append("OPENAI_API_KEY is not set in .env file")

        if cls.DRAFT_EXPIRY_DAYS < 1:
            errors.append("WIZARD_DRAFT_EXPIRY_DAYS must be at least 1")

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


settings = Settings()
