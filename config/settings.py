"""
Configuration Management

Loads environment variables and provides settings for the cleaning pipeline.
Uses python-dotenv for local development and environment variables for production.
"""

import os
from dotenv import load_dotenv

# Load .env file for local development
load_dotenv()

TIE_BREAKERS = ("id", "none")


class Settings:
    """
    Application settings loaded from environment variables.

    Every database setting has a default so the tool can run against a
    local workshop database without any .env file.
    """

    # Database Configuration
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: str = os.getenv("DB_PORT", "5432")
    DB_NAME: str = os.getenv("DB_NAME", "workshop_db")
    DB_USER: str = os.getenv("DB_USER", "postgres")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "password")

    # Cleaning Configuration
    DEDUP_TIE_BREAKER: str = os.getenv("DEDUP_TIE_BREAKER", "id")

    # Logging Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "logs/etl.log")

    def __init__(self):
        """Validate settings on initialization."""
        self._validate_settings()

    def _validate_settings(self) -> None:
        """
        Validate setting values that cannot be checked by a default.

        Raises:
            ValueError: If a setting has an unusable value
        """
        try:
            self.DB_PORT = int(self.DB_PORT)
        except (TypeError, ValueError):
            raise ValueError(f"DB_PORT must be an integer, got: {self.DB_PORT}")

        self.DEDUP_TIE_BREAKER = str(self.DEDUP_TIE_BREAKER).strip().lower()
        if self.DEDUP_TIE_BREAKER not in TIE_BREAKERS:
            raise ValueError(
                f"DEDUP_TIE_BREAKER must be one of {', '.join(TIE_BREAKERS)}, "
                f"got: {self.DEDUP_TIE_BREAKER}"
            )

    def __repr__(self) -> str:
        """Return string representation (excluding sensitive data)."""
        return (
            f"Settings("
            f"DB_HOST={self.DB_HOST}, "
            f"DB_PORT={self.DB_PORT}, "
            f"DB_NAME={self.DB_NAME}, "
            f"DB_USER={self.DB_USER}, "
            f"DEDUP_TIE_BREAKER={self.DEDUP_TIE_BREAKER}"
            f")"
        )
