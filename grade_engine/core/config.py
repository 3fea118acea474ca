from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Dict, Optional


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Grade Computation & Reconciliation Engine"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Local durable queue (pending grade writes, curve history)
    DATABASE_URL: str = "sqlite+aiosqlite:///./grade_engine.db"
    DATABASE_ECHO: bool = False

    # Remote document store
    REMOTE_STORE_URL: Optional[str] = None
    REMOTE_STORE_TIMEOUT: float = 15.0

    # Grading policy
    PERIOD_WEIGHTS: Dict[str, float] = {
        "PRELIM": 0.30,
        "MIDTERM": 0.30,
        "FINAL": 0.40,
    }
    PASSING_THRESHOLD: float = 75.0
    MINIMUM_PERIODS_FOR_AVERAGE: int = 1

    # Validation policy
    PERCENTAGE_TOLERANCE: float = 0.1
    SIGNIFICANT_SCORE_CHANGE: float = 20.0

    # Reconciliation policy
    SYNC_MAX_RETRIES: int = 5

    # Curve defaults
    CURVE_DEFAULT_MAX_GRADE: float = 100.0
    CURVE_DEFAULT_MIN_GRADE: float = 0.0

    @field_validator("PERIOD_WEIGHTS")
    @classmethod
    def validate_period_weights(cls, v):
        allowed = {"PRELIM", "MIDTERM", "FINAL"}
        normalized = {str(key).upper(): float(weight) for key, weight in v.items()}
        unknown = set(normalized) - allowed
        if unknown:
            raise ValueError(f"Unknown grade periods in PERIOD_WEIGHTS: {sorted(unknown)}")
        if any(weight < 0 for weight in normalized.values()):
            raise ValueError("PERIOD_WEIGHTS must be non-negative")
        return normalized

    @field_validator("MINIMUM_PERIODS_FOR_AVERAGE")
    @classmethod
    def validate_minimum_periods(cls, v):
        if v < 1 or v > 3:
            raise ValueError("MINIMUM_PERIODS_FOR_AVERAGE must be between 1 and 3")
        return v

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
