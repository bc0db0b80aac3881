import os

from dotenv import load_dotenv

load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_optional_hour(value: str | None, default: int | None) -> int | None:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"", "off", "none", "false"}:
        return None
    hour = int(normalized)
    if not 0 <= hour <= 23:
        raise RuntimeError("BASE_DATE_ROLLOVER_HOUR must be between 0 and 23.")
    return hour


def _get_set(value: str | None, default: str) -> frozenset[str]:
    raw = default if value is None else value
    return frozenset(item.strip().lower() for item in raw.split(",") if item.strip())


APP_ENV = os.getenv("APP_ENV", "development")
SQL_ECHO = _get_bool(os.getenv("SQL_ECHO"), default=False)

CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "UTC")

TODAY_BUFFER_MINUTES = _get_int(os.getenv("TODAY_BUFFER_MINUTES"), 30)
BASE_DATE_ROLLOVER_HOUR = _get_optional_hour(os.getenv("BASE_DATE_ROLLOVER_HOUR"), 18)

DEFAULT_DURATION_MINUTES = _get_int(os.getenv("DEFAULT_DURATION_MINUTES"), 30)
MIN_DURATION_MINUTES = 5
MAX_DURATION_MINUTES = 480

DEFAULT_MAX_SLOTS_PER_DAY = _get_int(os.getenv("DEFAULT_MAX_SLOTS_PER_DAY"), 10)
MAX_SLOTS_PER_DAY_LIMIT = 50
NEXT_AVAILABLE_COUNT = _get_int(os.getenv("NEXT_AVAILABLE_COUNT"), 5)
DAY_GRID_STEP_MINUTES = _get_int(os.getenv("DAY_GRID_STEP_MINUTES"), 30)

DEFAULT_SUGGESTION_TYPE = "next_week"
SUGGESTION_RANGE_DAYS = {
    "next_week": 7,
    "two_weeks": 14,
    "month": 30,
}

STRICT_SCHEDULE_PROVIDER_KINDS = _get_set(
    os.getenv("STRICT_SCHEDULE_PROVIDER_KINDS"),
    "doctor,member",
)
OVERBOOKING_ROLES = _get_set(
    os.getenv("OVERBOOKING_ROLES"),
    "admin_tenant,receptionist,staff",
)
RESERVATION_ATTEMPTS = _get_int(os.getenv("RESERVATION_ATTEMPTS"), 3)

MAX_APPOINTMENT_NOTES_LENGTH = 600

RECURRENCE_TYPES = ("daily", "weekly", "biweekly", "monthly", "custom")
MAX_RECURRENCE_INTERVAL = 12
MAX_SERIES_OCCURRENCES = 100
MAX_SERIES_SPAN_DAYS = _get_int(os.getenv("MAX_SERIES_SPAN_DAYS"), 365)
SERIES_MAX_CONFLICT_RATIO = float(os.getenv("SERIES_MAX_CONFLICT_RATIO", "0.2"))


def validate_runtime_config() -> None:
    if DEFAULT_DURATION_MINUTES < MIN_DURATION_MINUTES or DEFAULT_DURATION_MINUTES > MAX_DURATION_MINUTES:
        raise RuntimeError("DEFAULT_DURATION_MINUTES must be between 5 and 480.")
    if not 1 <= DEFAULT_MAX_SLOTS_PER_DAY <= MAX_SLOTS_PER_DAY_LIMIT:
        raise RuntimeError("DEFAULT_MAX_SLOTS_PER_DAY must be between 1 and 50.")
    if RESERVATION_ATTEMPTS < 1:
        raise RuntimeError("RESERVATION_ATTEMPTS must be at least 1.")
    if not 0 <= SERIES_MAX_CONFLICT_RATIO <= 1:
        raise RuntimeError("SERIES_MAX_CONFLICT_RATIO must be between 0 and 1.")
