"""
Deposit and loan approval workflows
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Type

from bson import ObjectId
from pymongo import DESCENDING

from schemas import ACCEPTED, DENIED, PENDING, Deposit, User, parse_documents

logger = logging.getLogger(__name__)

ALL_STATUSES = "all"
DECISIONS = (ACCEPTED, DENIED)


class TransitionError(Exception):
    """A record can not move to the requested status."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def id_filter(record_id: str) -> dict:
    """Match an `_id` stored either as ObjectId or as a plain string."""
    if ObjectId.is_valid(record_id):
        return {"_id": {"$in": [ObjectId(record_id), record_id]}}
    return {"_id": record_id}


def list_records(db, collection_name: str, model: Type):
    return parse_documents(db[collection_name].find({}).sort("timestamp", DESCENDING), model)


def users_by_id(db) -> Dict[str, User]:
    return {user.id: user for user in parse_documents(db["users"].find({}), User)}


def _note(record) -> Optional[str]:
    return record.message if isinstance(record, Deposit) else record.reason


def filter_records(records: List, users: Dict[str, User], search: str = "",
                   status: str = ALL_STATUSES) -> List:
    """Search by owner name/email or the record's message/reason, and filter by status."""
    term = (search or "").strip().lower()
    status = (status or ALL_STATUSES).lower()
    result = []
    for record in records:
        if status != ALL_STATUSES and record.status != status:
            continue
        if term:
            user = users.get(record.user_id)
            fields = (user.name if user else None, user.email if user else None, _note(record))
            if not any(f and term in f.lower() for f in fields):
                continue
        result.append(record)
    return result


def record_stats(records: List) -> dict:
    return {
        "count": len(records),
        "total_amount": round(sum(r.amount for r in records), 2),
        "pending": sum(1 for r in records if r.status == PENDING),
        "accepted": sum(1 for r in records if r.status == ACCEPTED),
        "denied": sum(1 for r in records if r.status == DENIED),
    }


def serialize_record(record, users: Dict[str, User]) -> dict:
    item = record.model_dump()
    user = users.get(record.user_id)
    item["user"] = {
        "name": user.name if user else "Unknown user",
        "email": user.email if user else "",
    }
    return item


def decide(db, collection_name: str, record_id: str, status: str, extra: Optional[dict] = None) -> dict:
    """Move a pending deposit/loan to accepted or denied."""
    if status not in DECISIONS:
        raise TransitionError(400, "Invalid status")
    doc = db[collection_name].find_one(id_filter(record_id))
    if doc is None:
        raise TransitionError(404, f"{collection_name[:-1].capitalize()} not found")
    if doc.get("status", PENDING) != PENDING:
        raise TransitionError(409, f"Already {doc.get('status')}")

    update = {"status": status, "updated_at": datetime.now(timezone.utc)}
    update.update(extra or {})
    db[collection_name].update_one({"_id": doc["_id"]}, {"$set": update})
    logger.info("%s %s -> %s", collection_name, record_id, status)
    return update


def set_payment_status(db, loan_id: str, payment_status: str) -> bool:
    """Record a loan's payment status; False when the loan does not exist."""
    res = db["loans"].update_one(
        id_filter(loan_id),
        {"$set": {"payment_status": payment_status, "updated_at": datetime.now(timezone.utc)}},
    )
    if res.matched_count:
        logger.info("loans %s payment -> %s", loan_id, payment_status)
    return bool(res.matched_count)
