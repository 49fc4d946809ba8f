from datetime import datetime

import pytest

import interest


@pytest.mark.parametrize("value", [None, "", "   ", "abc", "nan", True, [5]])
def test_invalid_rates_are_rejected(value):
    with pytest.raises(interest.InterestValidationError):
        interest.parse_interest_rate(value)


@pytest.mark.parametrize("value", [-0.01, 100.5, "101"])
def test_rates_outside_percentage_range_are_rejected(value):
    with pytest.raises(interest.InterestValidationError, match="between 0 and 100"):
        interest.parse_interest_rate(value)


@pytest.mark.parametrize("value, expected", [("12.5", 12.5), (0, 0.0), (100, 100.0), (" 7.125 ", 7.12)])
def test_valid_rates(value, expected):
    assert interest.parse_interest_rate(value) == expected


def test_default_rate_when_nothing_saved(db):
    history = interest.interest_history(db)

    assert history == []
    assert interest.current_interest(history) == interest.DEFAULT_INTEREST


def test_invalid_rate_writes_nothing(db):
    with pytest.raises(interest.InterestValidationError):
        interest.save_interest(db, "150")

    assert db["interest"].count_documents({}) == 0


def test_history_is_newest_first_and_limited(db):
    for day in range(1, 13):
        db["interest"].insert_one({"interest": float(day), "timestamp": datetime(2024, 1, day)})

    history = interest.interest_history(db)

    assert len(history) == interest.HISTORY_LIMIT
    assert [h.interest for h in history[:2]] == [12.0, 11.0]
    assert interest.current_interest(history) == 12.0


def test_save_appends_entry(db):
    db["interest"].insert_one({"interest": 5.0, "timestamp": datetime(2020, 1, 1)})

    saved = interest.save_interest(db, "8.5")

    assert saved.interest == 8.5
    assert db["interest"].count_documents({}) == 2
    assert interest.current_interest(interest.interest_history(db)) == 8.5
