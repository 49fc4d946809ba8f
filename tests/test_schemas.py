from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from bson.timestamp import Timestamp
from pydantic import ValidationError

from schemas import Deposit, Loan, User, to_instant

MOMENT = datetime(2024, 3, 15, 12, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", [
    MOMENT,
    MOMENT.replace(tzinfo=None),
    MOMENT.astimezone(timezone(timedelta(hours=2))),
    "2024-03-15T12:30:00Z",
    "2024-03-15T14:30:00+02:00",
    MOMENT.timestamp(),
    int(MOMENT.timestamp() * 1000),
    {"seconds": int(MOMENT.timestamp()), "nanoseconds": 0},
    Timestamp(int(MOMENT.timestamp()), 1),
])
def test_to_instant_normalises_timestamp_shapes(value):
    assert to_instant(value) == MOMENT
    assert to_instant(value).tzinfo is not None


def test_to_instant_rejects_unknown_values():
    assert to_instant(None) is None
    with pytest.raises(ValueError):
        to_instant(["2024"])
    with pytest.raises(ValueError):
        to_instant("not a date")


def test_deposit_from_mongo_document():
    oid = ObjectId()
    deposit = Deposit.model_validate({
        "_id": oid,
        "user_id": ObjectId("65f000000000000000000001"),
        "amount": 250,
        "timestamp": {"seconds": int(MOMENT.timestamp()), "nanoseconds": 500_000_000},
        "unexpected": "ignored",
    })

    assert deposit.id == str(oid)
    assert deposit.user_id == "65f000000000000000000001"
    assert deposit.timestamp == MOMENT + timedelta(milliseconds=500)
    assert deposit.status == "pending"


def test_negative_amounts_are_rejected():
    with pytest.raises(ValidationError):
        Loan.model_validate({"_id": "l1", "user_id": "u1", "amount": -5})


def test_loan_is_paid_only_when_approved():
    loan = Loan.model_validate({"_id": "l1", "user_id": "u1", "amount": 5, "payment_status": "approved"})
    assert loan.is_paid
    assert not loan.model_copy(update={"payment_status": "Approved"}).is_paid


def test_user_defaults():
    user = User.model_validate({"_id": ObjectId("65f000000000000000000002")})

    assert user.role == "member"
    assert not user.is_blocked
    assert user.last_active is None
