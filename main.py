import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import anyio
from fastapi import (Depends, FastAPI, File, Form, HTTPException, Query, UploadFile, WebSocket,
                     status)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

import approvals
import exports
import interest
import media
import reports
from database import create_document, db, ensure_indexes, get_documents
from realtime import SNAPSHOT_SORTS, PresenceSession, SnapshotSubscription, online_users, set_presence
from schemas import (ACCEPTED, PAYMENT_STATUSES, Deposit, Loan, Message, Session, StoredMessage, User,
                     parse_documents)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    ensure_indexes()
    yield


app = FastAPI(title="Community Savings Admin API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

bearer_scheme = HTTPBearer()


# Helpers

def require_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def user_for_token(token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    s = require_db()["sessions"].find_one({"token": token})
    if not s:
        return None
    session = Session.model_validate(s)
    u = db["users"].find_one(approvals.id_filter(session.user_id))
    return User.model_validate(u) if u else None


def backend_error(message: str, exc: Exception) -> HTTPException:
    logger.error("%s: %s", message, exc)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=message)


# Dependencies resolving the session token to a user

def get_session_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> User:
    user = user_for_token(credentials.credentials)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def get_current_user(user: User = Depends(get_session_user)) -> User:
    if user.is_blocked:
        raise HTTPException(status_code=403, detail="Account blocked")
    return user


def get_current_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return user


# User Management
@app.get("/users")
def list_users(current: User = Depends(get_current_admin)):
    try:
        require_db()
        docs = get_documents("users", sort=[("created_at", DESCENDING)])
        return [u.model_dump() for u in parse_documents(docs, User)]
    except PyMongoError as e:
        raise backend_error("Failed to fetch users", e)


@app.get("/users/me/status")
def my_status(current: User = Depends(get_session_user)):
    return {"id": current.id, "is_blocked": current.is_blocked}


@app.post("/users/{user_id}/block")
def toggle_user_block(user_id: str, current: User = Depends(get_current_admin)):
    try:
        u = require_db()["users"].find_one(approvals.id_filter(user_id))
    except PyMongoError as e:
        raise backend_error("Failed to fetch user", e)
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    is_blocked = not u.get("is_blocked")
    try:
        db["users"].update_one({"_id": u["_id"]}, {"$set": {"is_blocked": is_blocked}})
    except PyMongoError as e:
        raise backend_error("Failed to update user status", e)
    logger.info("Admin %s set user %s blocked=%s", current.id, user_id, is_blocked)
    return {"id": user_id, "is_blocked": is_blocked}


# Deposit Management
@app.get("/deposits")
def list_deposits(search: str = "", status: str = approvals.ALL_STATUSES,
                  current: User = Depends(get_current_admin)):
    try:
        deposits = approvals.list_records(require_db(), "deposits", Deposit)
        users = approvals.users_by_id(db)
    except PyMongoError as e:
        raise backend_error("Failed to load deposits", e)
    items = approvals.filter_records(deposits, users, search, status)
    return {
        "items": [approvals.serialize_record(d, users) for d in items],
        "stats": approvals.record_stats(deposits),
    }


@app.post("/deposits/{deposit_id}/status")
def update_deposit_status(deposit_id: str, status: str, current: User = Depends(get_current_admin)):
    try:
        update = approvals.decide(require_db(), "deposits", deposit_id, status)
    except approvals.TransitionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    except PyMongoError as e:
        raise backend_error("Failed to update deposit status", e)
    return {"ok": True, "status": update["status"]}


# Loans Management
@app.get("/loans")
def list_loans(search: str = "", status: str = approvals.ALL_STATUSES,
               current: User = Depends(get_current_admin)):
    try:
        loans = approvals.list_records(require_db(), "loans", Loan)
        users = approvals.users_by_id(db)
    except PyMongoError as e:
        raise backend_error("Failed to load loans", e)
    items = approvals.filter_records(loans, users, search, status)
    return {
        "items": [approvals.serialize_record(l, users) for l in items],
        "stats": approvals.record_stats(loans),
    }


@app.post("/loans/{loan_id}/decision")
async def loan_decision(
    loan_id: str,
    decision: str = Form(...),
    receipt: UploadFile = File(None),
    current: User = Depends(get_current_admin),
):
    if decision not in approvals.DECISIONS:
        raise HTTPException(status_code=400, detail="Invalid decision")
    extra = {}
    if decision == ACCEPTED:
        extra = {"approved_by": current.id, "approved_at": datetime.now(timezone.utc)}
        if receipt is not None:
            content = await receipt.read()
            try:
                extra["receipt_url"] = await anyio.to_thread.run_sync(
                    media.upload_image, receipt.filename, content, receipt.content_type)
            except media.MediaUploadError as e:
                raise HTTPException(status_code=400, detail=str(e))
    try:
        update = await anyio.to_thread.run_sync(approvals.decide, require_db(), "loans", loan_id, decision, extra)
    except approvals.TransitionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    except PyMongoError as e:
        raise backend_error("Failed to update loan status", e)
    return {"ok": True, "status": update["status"], "receipt_url": update.get("receipt_url")}


@app.post("/loans/{loan_id}/payment")
def update_loan_payment(loan_id: str, status: str, current: User = Depends(get_current_admin)):
    if status not in PAYMENT_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid payment status")
    try:
        found = approvals.set_payment_status(require_db(), loan_id, status)
    except PyMongoError as e:
        raise backend_error("Failed to update payment status", e)
    if not found:
        raise HTTPException(status_code=404, detail="Loan not found")
    return {"ok": True, "payment_status": status}


# Chat
@app.get("/messages")
def list_messages(current: User = Depends(get_current_user)):
    require_db()
    try:
        docs = get_documents("messages", sort=[("timestamp", ASCENDING)])
        return [m.model_dump() for m in parse_documents(docs, StoredMessage)]
    except PyMongoError as e:
        raise backend_error("Failed to load messages", e)


@app.post("/messages")
async def send_message(
    text: str = Form(""),
    image: UploadFile = File(None),
    current: User = Depends(get_current_user),
):
    if not text.strip() and image is None:
        raise HTTPException(status_code=400, detail="Message is empty")
    image_url = None
    if image is not None:
        content = await image.read()
        try:
            image_url = await anyio.to_thread.run_sync(media.upload_image, image.filename, content, image.content_type)
        except media.MediaUploadError as e:
            raise HTTPException(status_code=400, detail=str(e))

    msg = Message(
        text=text,
        image_url=image_url,
        user_id=current.id,
        user_name=current.email.split("@")[0] if current.email else "Anonymous",
        timestamp=datetime.now(timezone.utc),
    )
    require_db()
    try:
        message_id = await anyio.to_thread.run_sync(create_document, "messages", msg)
    except PyMongoError as e:
        raise backend_error("Failed to send message", e)
    return {"id": message_id, "image_url": image_url}


@app.get("/chat/online")
def chat_online_users(current: User = Depends(get_current_user)):
    try:
        users = approvals.users_by_id(require_db()).values()
    except PyMongoError as e:
        raise backend_error("Failed to load online users", e)
    return online_users(users)


@app.post("/presence/heartbeat")
def presence_heartbeat(current: User = Depends(get_current_user)):
    try:
        set_presence(current.id, True)
    except PyMongoError as e:
        raise backend_error("Failed to update presence", e)
    return {"ok": True}


# Interest Settings
class InterestRequest(BaseModel):
    interest: Any = None


def interest_response(history) -> dict:
    return {
        "current": interest.current_interest(history),
        "history": [
            {"date": h.timestamp.date().isoformat(), "rate": h.interest}
            for h in reversed(history)
        ],
    }


@app.get("/interest")
def get_interest(current: User = Depends(get_current_admin)):
    try:
        return interest_response(interest.interest_history(require_db()))
    except PyMongoError as e:
        raise backend_error("Failed to fetch interest rate", e)


@app.post("/interest")
def save_interest(payload: InterestRequest, current: User = Depends(get_current_admin)):
    try:
        interest.save_interest(require_db(), payload.interest)
        return interest_response(interest.interest_history(db))
    except interest.InterestValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PyMongoError as e:
        raise backend_error("Failed to save interest rate", e)


# Annual Reports
def report_window(year: Optional[int], month: Optional[int]) -> reports.ReportWindow:
    year = year or datetime.now(reports.REPORT_TIMEZONE).year
    return reports.ReportWindow(year, month)


def report_snapshot(current: User, window: reports.ReportWindow, refresh: bool = False) -> reports.ReportSnapshot:
    store = reports.get_report_store(current.id)
    try:
        return reports.load_snapshot(require_db(), store, window, refresh=refresh)
    except reports.ReportFetchError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@app.get("/reports/years")
def report_years(current: User = Depends(get_current_admin)):
    return reports.available_years()


@app.get("/reports/annual")
def annual_report(
    year: Optional[int] = Query(None, ge=1970, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    search: str = "",
    unpaid_only: bool = False,
    page: int = 1,
    refresh: bool = False,
    current: User = Depends(get_current_admin),
):
    snapshot = report_snapshot(current, report_window(year, month), refresh)
    filtered = reports.filter_reports(snapshot.ordered_reports(), search, unpaid_only)
    result = reports.paginate(filtered, page, reports.REPORT_PAGE_SIZE)
    return {
        "year": snapshot.window.year,
        "month": snapshot.window.month,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
        "total_items": result.total_items,
        "items": [r.summary() for r in result.items],
        "chart": reports.chart_data(snapshot.monthly),
        "comparison": snapshot.comparison,
        "index_warnings": snapshot.index_warnings,
        "generated_at": snapshot.generated_at,
    }


@app.get("/reports/annual/users/{user_id}")
def annual_report_user(
    user_id: str,
    year: Optional[int] = Query(None, ge=1970, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    deposits_page: int = 1,
    loans_page: int = 1,
    current: User = Depends(get_current_admin),
):
    snapshot = report_snapshot(current, report_window(year, month))
    report = snapshot.reports.get(user_id)
    if report is None:
        raise HTTPException(status_code=404, detail="User not found")
    deposits = reports.paginate(report.deposits, deposits_page, reports.DETAIL_PAGE_SIZE)
    loans = reports.paginate(report.loans, loans_page, reports.DETAIL_PAGE_SIZE)
    return {
        **report.summary(),
        "deposits": {**vars(deposits), "items": [d.model_dump() for d in deposits.items]},
        "loans": {
            **vars(loans),
            "items": [
                {**l.model_dump(), "status_label": reports.loan_status_label(l.payment_status)}
                for l in loans.items
            ],
        },
    }


def export_response(result: exports.ExportResult) -> Response:
    if not result.success:
        raise HTTPException(status_code=500, detail=f"Export failed: {result.error}")
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@app.get("/reports/annual/export.csv")
def export_annual_csv(
    year: Optional[int] = Query(None, ge=1970, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    current: User = Depends(get_current_admin),
):
    snapshot = report_snapshot(current, report_window(year, month))
    return export_response(exports.export_csv(snapshot.ordered_reports(), snapshot.window.year))


@app.get("/reports/annual/export.pdf")
def export_annual_pdf(
    year: Optional[int] = Query(None, ge=1970, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    current: User = Depends(get_current_admin),
):
    snapshot = report_snapshot(current, report_window(year, month))
    return export_response(exports.export_pdf(snapshot.ordered_reports(), snapshot.window.year))


# Realtime
@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket):
    user = await anyio.to_thread.run_sync(user_for_token, websocket.query_params.get("token"))
    if user is None or user.is_blocked:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    async with PresenceSession(user.id) as presence:
        await SnapshotSubscription(websocket, "messages", on_message=presence.heartbeat).run()


@app.websocket("/ws/{collection}")
async def collection_ws(websocket: WebSocket, collection: str):
    user = await anyio.to_thread.run_sync(user_for_token, websocket.query_params.get("token"))
    if user is None or user.is_blocked or user.role != "admin" or collection not in SNAPSHOT_SORTS:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    await SnapshotSubscription(websocket, collection).run()


@app.get("/")
def root():
    return {"name": "Community Savings Admin API", "ok": True}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except PyMongoError as e:
        response["database"] = f"Error: {str(e)[:50]}"

    response["database_url"] = "Set" if os.getenv("DATABASE_URL") else "Not Set"
    response["database_name"] = "Set" if os.getenv("DATABASE_NAME") else "Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
