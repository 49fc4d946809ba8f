"""
Interest-rate settings: an append-only history in the "interest" collection
whose most recent entry is the current rate.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, List

from pymongo import DESCENDING

from schemas import InterestSetting

logger = logging.getLogger(__name__)

DEFAULT_INTEREST = 10.0
HISTORY_LIMIT = 10


class InterestValidationError(ValueError):
    pass


def parse_interest_rate(value: Any) -> float:
    """Validate a rate entered as a number or text; must be a percentage 0-100."""
    if value is None or isinstance(value, bool) or (isinstance(value, str) and not value.strip()):
        raise InterestValidationError("Please enter a valid interest rate")
    try:
        rate = float(value)
    except (TypeError, ValueError):
        raise InterestValidationError("Please enter a valid interest rate")
    if math.isnan(rate) or rate < 0 or rate > 100:
        raise InterestValidationError("Interest rate must be between 0 and 100")
    return round(rate, 2)


def interest_history(db, limit: int = HISTORY_LIMIT) -> List[InterestSetting]:
    """Most recent entries, newest first."""
    docs = db["interest"].find({}).sort("timestamp", DESCENDING).limit(limit)
    return [InterestSetting.model_validate(d) for d in docs]


def current_interest(history: List[InterestSetting]) -> float:
    return history[0].interest if history else DEFAULT_INTEREST


def save_interest(db, value: Any) -> InterestSetting:
    """Validate and append a new rate; nothing is written when validation fails."""
    setting = InterestSetting(interest=parse_interest_rate(value), timestamp=datetime.now(timezone.utc))
    db["interest"].insert_one(setting.model_dump())
    logger.info("Interest rate set to %.2f%%", setting.interest)
    return setting
