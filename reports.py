"""
Annual report pipeline

Fetches deposits and loans for every user inside a report window, folds them
into per-user reports, month buckets and a previous-year comparison, and keeps
the latest snapshot per admin for paging and exports.
"""
import logging
import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar
from zoneinfo import ZoneInfo

from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.errors import OperationFailure, PyMongoError

from database import RECORD_INDEX_NAME
from schemas import Deposit, Loan, PAYMENT_APPROVED, User, parse_documents

logger = logging.getLogger(__name__)

REPORT_TIMEZONE = ZoneInfo(os.getenv("REPORT_TIMEZONE", "UTC"))
MAX_IDS_PER_QUERY = 10
FETCH_WORKERS = int(os.getenv("REPORT_FETCH_WORKERS", "8"))
REPORT_MAX_AGE = timedelta(seconds=int(os.getenv("REPORT_MAX_AGE_SECONDS", "300")))
REPORT_PAGE_SIZE = 20
DETAIL_PAGE_SIZE = 5
FIRST_REPORT_YEAR = 2022
MONTH_LABELS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

RecordT = TypeVar("RecordT", Deposit, Loan)


class ReportFetchError(RuntimeError):
    """Reading report data from the database failed."""


# ----------------------
# Report window
# ----------------------

def month_bounds(year: int, month: int, tz: ZoneInfo = REPORT_TIMEZONE) -> Tuple[datetime, datetime]:
    """First and last instant of a calendar month in the report timezone."""
    start = datetime(year, month, 1, tzinfo=tz)
    if month == 12:
        next_start = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        next_start = datetime(year, month + 1, 1, tzinfo=tz)
    return start, next_start - timedelta(microseconds=1)


@dataclass(frozen=True)
class ReportWindow:
    year: int
    month: Optional[int] = None

    def __post_init__(self):
        if self.month is not None and not 1 <= self.month <= 12:
            raise ValueError(f"month must be 1-12, got {self.month}")

    @property
    def bounds(self) -> Tuple[datetime, datetime]:
        if self.month is None:
            return month_bounds(self.year, 1)[0], month_bounds(self.year, 12)[1]
        return month_bounds(self.year, self.month)

    def previous_year(self) -> "ReportWindow":
        return ReportWindow(self.year - 1, self.month)


def available_years(today: Optional[date] = None) -> List[int]:
    today = today or datetime.now(REPORT_TIMEZONE).date()
    return list(range(today.year, FIRST_REPORT_YEAR - 1, -1))


# ----------------------
# Data fetcher
# ----------------------

def chunked(ids: Sequence[str], size: int = MAX_IDS_PER_QUERY) -> List[List[str]]:
    return [list(ids[i:i + size]) for i in range(0, len(ids), size)]


# MongoDB rejects a hint naming a missing index with BadValue (code 2).
BAD_HINT_CODE = 2
BAD_HINT_MESSAGE = "hint provided does not correspond to an existing index"


def is_missing_index_error(exc: OperationFailure) -> bool:
    return exc.code == BAD_HINT_CODE and BAD_HINT_MESSAGE in str(exc).lower()


def _as_query_time(value: datetime) -> datetime:
    # pymongo stores naive datetimes as UTC
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _group_by_user(records: Iterable[RecordT]) -> Dict[str, List[RecordT]]:
    grouped: Dict[str, List[RecordT]] = {}
    for record in records:
        grouped.setdefault(record.user_id, []).append(record)
    return grouped


@dataclass
class ChunkResult:
    records: Dict[str, list]
    index_warning: Optional[str] = None


def fetch_chunk(collection, user_ids: List[str], start: datetime, end: datetime,
                model: Type[RecordT]) -> ChunkResult:
    """Records of `user_ids` with start <= timestamp <= end, newest first.

    Runs the indexed range query; when the backend rejects it for lack of an
    index, re-queries by user only and filters and sorts in memory.
    """
    query = {
        "user_id": {"$in": user_ids},
        "timestamp": {"$gte": _as_query_time(start), "$lte": _as_query_time(end)},
    }
    try:
        cursor = collection.find(query).sort("timestamp", DESCENDING).hint(RECORD_INDEX_NAME)
        return ChunkResult(_group_by_user(parse_documents(cursor, model)))
    except OperationFailure as e:
        if not is_missing_index_error(e):
            raise
        logger.warning("Index not found for %s query, using fallback: %s", collection.name, e)
        warning = str(e)

    records = [
        r for r in parse_documents(collection.find({"user_id": {"$in": user_ids}}), model)
        if r.timestamp is not None and start <= r.timestamp <= end
    ]
    records.sort(key=lambda r: r.timestamp, reverse=True)
    return ChunkResult(_group_by_user(records), warning)


@dataclass
class WindowRecords:
    deposits: Dict[str, List[Deposit]] = field(default_factory=dict)
    loans: Dict[str, List[Loan]] = field(default_factory=dict)
    index_warnings: Dict[str, str] = field(default_factory=dict)

    def all_deposits(self) -> List[Deposit]:
        return [d for items in self.deposits.values() for d in items]

    def all_loans(self) -> List[Loan]:
        return [l for items in self.loans.values() for l in items]


def fetch_window_records(db, user_ids: Sequence[str], window: ReportWindow) -> WindowRecords:
    """Fetch deposits and loans of all users for a window.

    Every chunk of both collections is queried concurrently; a failing chunk
    fails the whole fetch.
    """
    start, end = window.bounds
    chunks = chunked(list(user_ids))
    jobs = [(name, model, chunk)
            for name, model in (("deposits", Deposit), ("loans", Loan))
            for chunk in chunks]
    result = WindowRecords()
    if not jobs:
        return result

    with ThreadPoolExecutor(max_workers=min(FETCH_WORKERS, len(jobs))) as pool:
        futures = [(name, pool.submit(fetch_chunk, db[name], chunk, start, end, model))
                   for name, model, chunk in jobs]
        for name, future in futures:
            try:
                chunk_result = future.result()
            except PyMongoError as e:
                logger.error("Error fetching %s for %s: %s", name, window, e)
                raise ReportFetchError(f"Failed to fetch {name} data") from e
            target = result.deposits if name == "deposits" else result.loans
            target.update(chunk_result.records)
            if chunk_result.index_warning:
                result.index_warnings[name] = chunk_result.index_warning
    return result


# ----------------------
# Aggregator
# ----------------------

def calculate_user_totals(deposits: Sequence[Deposit], loans: Sequence[Loan]) -> dict:
    paid = sum(1 for loan in loans if loan.payment_status == PAYMENT_APPROVED)
    return {
        "total_deposits": sum(d.amount for d in deposits),
        "total_loans": sum(l.amount for l in loans),
        "paid_loans_count": paid,
        "unpaid_loans_count": len(loans) - paid,
    }


def loan_status_label(payment_status: Optional[str]) -> str:
    if payment_status == PAYMENT_APPROVED:
        return "PAID"
    return payment_status.upper() if payment_status else "UNPAID"


def group_by_month(deposits: Iterable[Deposit], loans: Iterable[Loan], year: int,
                   tz: ZoneInfo = REPORT_TIMEZONE) -> List[dict]:
    """Twelve month buckets of summed amounts, empty months included."""
    buckets = [{"month": label, "deposits": 0.0, "loans": 0.0} for label in MONTH_LABELS]
    for key, records in (("deposits", deposits), ("loans", loans)):
        for record in records:
            if record.timestamp is None:
                continue
            local = record.timestamp.astimezone(tz)
            if local.year == year:
                buckets[local.month - 1][key] += record.amount
    return buckets


def chart_data(monthly: List[dict]) -> dict:
    return {
        "labels": [m["month"] for m in monthly],
        "datasets": [
            {"label": "Deposits", "data": [m["deposits"] for m in monthly]},
            {"label": "Loans", "data": [m["loans"] for m in monthly]},
        ],
    }


class UserReport(BaseModel):
    user: User
    deposits: List[Deposit] = []
    loans: List[Loan] = []
    total_deposits: float = 0.0
    total_loans: float = 0.0
    paid_loans_count: int = 0
    unpaid_loans_count: int = 0

    @classmethod
    def build(cls, user: User, deposits: List[Deposit], loans: List[Loan]) -> "UserReport":
        return cls(user=user, deposits=deposits, loans=loans, **calculate_user_totals(deposits, loans))

    def summary(self) -> dict:
        return {
            "user": self.user.model_dump(include={"id", "name", "email", "phone"}),
            "total_deposits": self.total_deposits,
            "total_loans": self.total_loans,
            "paid_loans_count": self.paid_loans_count,
            "unpaid_loans_count": self.unpaid_loans_count,
        }


def build_user_reports(users: Iterable[User], records: WindowRecords) -> Dict[str, UserReport]:
    return {
        user.id: UserReport.build(user, records.deposits.get(user.id, []), records.loans.get(user.id, []))
        for user in users
    }


def filter_reports(reports: Iterable[UserReport], search: str = "",
                   only_unpaid: bool = False) -> List[UserReport]:
    """Case-insensitive search over name, email and phone; optionally unpaid only."""
    query = (search or "").strip().lower()
    result = []
    for report in reports:
        if only_unpaid and report.unpaid_loans_count <= 0:
            continue
        if query:
            fields = (report.user.name, report.user.email, report.user.phone)
            if not any(f and query in f.lower() for f in fields):
                continue
        result.append(report)
    return result


# ----------------------
# Pagination
# ----------------------

@dataclass
class Page:
    items: list
    page: int
    page_size: int
    total_pages: int
    total_items: int


def paginate(items: Sequence, page: int, page_size: int) -> Page:
    """1-based page slice; out of range pages clamp to the first/last page."""
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    total_pages = math.ceil(len(items) / page_size)
    page = max(1, min(page, max(total_pages, 1)))
    start = (page - 1) * page_size
    return Page(list(items[start:start + page_size]), page, page_size, total_pages, len(items))


# ----------------------
# Snapshot & store
# ----------------------

@dataclass
class ReportSnapshot:
    window: ReportWindow
    reports: Dict[str, UserReport]
    monthly: List[dict]
    comparison: dict
    index_warnings: Dict[str, str]
    generated_at: datetime

    def ordered_reports(self) -> List[UserReport]:
        return list(self.reports.values())


def _totals(deposits: Iterable[Deposit], loans: Iterable[Loan]) -> dict:
    return {
        "total_deposits": sum(d.amount for d in deposits),
        "total_loans": sum(l.amount for l in loans),
    }


def load_users(db) -> List[User]:
    return parse_documents(db["users"].find({}), User)


def build_report_snapshot(db, window: ReportWindow) -> ReportSnapshot:
    """Rebuild every user report for a window, plus chart and comparison data."""
    try:
        users = load_users(db)
    except PyMongoError as e:
        logger.error("Error fetching users: %s", e)
        raise ReportFetchError("Failed to fetch users data") from e

    user_ids = [u.id for u in users]
    current = fetch_window_records(db, user_ids, window)
    previous_window = window.previous_year()
    previous = fetch_window_records(db, user_ids, previous_window)

    current_deposits, current_loans = current.all_deposits(), current.all_loans()
    previous_deposits, previous_loans = previous.all_deposits(), previous.all_loans()
    monthly = group_by_month(current_deposits, current_loans, window.year)
    comparison = {
        "current_year": {
            **_totals(current_deposits, current_loans),
            "monthly_data": monthly,
        },
        "previous_year": {
            **_totals(previous_deposits, previous_loans),
            "monthly_data": group_by_month(previous_deposits, previous_loans, previous_window.year),
        },
    }
    logger.info("Built annual report for %s: %d users, %d deposits, %d loans",
                window, len(users), len(current_deposits), len(current_loans))
    return ReportSnapshot(
        window=window,
        reports=build_user_reports(users, current),
        monthly=monthly,
        comparison=comparison,
        index_warnings={**previous.index_warnings, **current.index_warnings},
        generated_at=datetime.now(timezone.utc),
    )


class ReportStore:
    """Latest report snapshot of one admin.

    Every build takes a generation number from `begin()`; `commit()` only
    accepts the snapshot of the most recent generation, so a slow build can
    not overwrite a newer one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._generation = 0
        self._snapshot: Optional[ReportSnapshot] = None

    def begin(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def commit(self, generation: int, snapshot: ReportSnapshot) -> bool:
        with self._lock:
            if generation != self._generation:
                logger.info("Discarding stale report build %d (latest is %d)", generation, self._generation)
                return False
            self._snapshot = snapshot
            return True

    def current(self, window: Optional[ReportWindow] = None) -> Optional[ReportSnapshot]:
        with self._lock:
            if self._snapshot is None or (window is not None and self._snapshot.window != window):
                return None
            return self._snapshot


_stores: Dict[str, ReportStore] = {}
_stores_lock = threading.Lock()


def get_report_store(owner_id: str) -> ReportStore:
    with _stores_lock:
        return _stores.setdefault(owner_id, ReportStore())


def reset_report_stores() -> None:
    with _stores_lock:
        _stores.clear()


def load_snapshot(db, store: ReportStore, window: ReportWindow, refresh: bool = False,
                  max_age: timedelta = REPORT_MAX_AGE) -> ReportSnapshot:
    """Snapshot for `window`.

    The stored snapshot is reused for paging and exports while it is younger
    than `max_age`; it is rebuilt when missing, older, for another window, or
    when `refresh` is set (clients pass it when the report view is opened).
    """
    if not refresh:
        snapshot = store.current(window)
        if snapshot is not None and datetime.now(timezone.utc) - snapshot.generated_at < max_age:
            return snapshot
    generation = store.begin()
    snapshot = build_report_snapshot(db, window)
    store.commit(generation, snapshot)
    return snapshot
