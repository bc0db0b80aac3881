import logging
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.core import config

logger = logging.getLogger(__name__)


def clinic_timezone() -> ZoneInfo:
    try:
        return ZoneInfo(config.CLINIC_TIMEZONE)
    except ZoneInfoNotFoundError:
        logger.warning('Invalid CLINIC_TIMEZONE %r, using UTC', config.CLINIC_TIMEZONE)
        return ZoneInfo('UTC')


def clinic_now() -> datetime:
    """Current wall-clock time in the clinic's timezone, returned naive.

    Every stored date and time-of-day is clinic-local, so comparisons are done
    on naive values after this conversion.
    """
    return datetime.now(clinic_timezone()).replace(tzinfo=None, second=0, microsecond=0)
