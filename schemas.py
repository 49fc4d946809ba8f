"""
Database Schemas for the Community Savings admin API

Each Pydantic model mirrors a MongoDB collection:

- User -> "users"
- Session -> "sessions"
- Deposit -> "deposits"
- Loan -> "loans"
- Message / StoredMessage -> "messages"
- InterestSetting -> "interest"

Documents coming back from the database are validated through these models,
which is also where every timestamp shape is normalised to an aware UTC
datetime.
"""
import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Iterable, List, Optional, Type, TypeVar

from bson import ObjectId
from bson.timestamp import Timestamp
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

PENDING = "pending"
ACCEPTED = "accepted"
DENIED = "denied"
RECORD_STATUSES = (PENDING, ACCEPTED, DENIED)

# Loans count as paid only when payment_status is exactly this value.
PAYMENT_APPROVED = "approved"
PAYMENT_STATUSES = ("pending", PAYMENT_APPROVED, "denied")


def to_instant(value: Any) -> Optional[datetime]:
    """Normalise the timestamp shapes found in stored documents.

    Accepts datetimes (naive ones are UTC), ISO-8601 strings, epoch seconds or
    milliseconds, BSON timestamps and ``{"seconds": .., "nanoseconds": ..}``
    mappings.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, Timestamp):
        return value.as_datetime().astimezone(timezone.utc)
    if isinstance(value, dict) and "seconds" in value:
        seconds = value["seconds"] + value.get("nanoseconds", 0) / 1_000_000_000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # anything past year ~5000 in seconds is really milliseconds
        seconds = value / 1000 if abs(value) > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return to_instant(parsed)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def _object_id_str(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    return value


Instant = Annotated[datetime, BeforeValidator(to_instant)]
DocumentId = Annotated[str, BeforeValidator(_object_id_str)]


class Document(BaseModel):
    """Base for models read back from a collection (carries the `_id`)."""
    model_config = ConfigDict(extra='ignore', populate_by_name=True)
    id: DocumentId = Field(..., alias="_id")


class User(Document):
    name: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: str = Field('member', description="'member' or 'admin'")
    created_at: Optional[Instant] = None
    is_blocked: bool = False
    is_online: bool = False
    last_active: Optional[Instant] = None


class Session(BaseModel):
    model_config = ConfigDict(extra='ignore')
    user_id: str
    token: str
    created_at: Instant


class Deposit(Document):
    user_id: DocumentId
    amount: float = Field(..., ge=0)
    timestamp: Optional[Instant] = None
    status: str = Field(PENDING, description="pending|accepted|denied")
    message: Optional[str] = None
    proof_image_url: Optional[str] = None
    updated_at: Optional[Instant] = None


class Loan(Document):
    user_id: DocumentId
    amount: float = Field(..., ge=0)
    timestamp: Optional[Instant] = None
    status: str = Field(PENDING, description="pending|accepted|denied")
    payment_status: Optional[str] = Field(None, description="paid iff 'approved'")
    reason: Optional[str] = None
    receipt_url: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[Instant] = None
    updated_at: Optional[Instant] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PAYMENT_APPROVED


class Message(BaseModel):
    model_config = ConfigDict(extra='ignore')
    text: str = ''
    image_url: Optional[str] = None
    user_id: str
    user_name: str
    timestamp: Instant


class StoredMessage(Message):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)
    id: DocumentId = Field(..., alias="_id")


class InterestSetting(BaseModel):
    model_config = ConfigDict(extra='ignore')
    interest: float = Field(..., ge=0, le=100, description="percentage")
    timestamp: Instant


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_documents(docs: Iterable[dict], model: Type[ModelT]) -> List[ModelT]:
    """Validate stored documents, skipping (and logging) malformed ones."""
    parsed = []
    for doc in docs:
        try:
            parsed.append(model.model_validate(doc))
        except ValidationError as e:
            logger.warning("Skipping malformed %s %s: %s", model.__name__, doc.get("_id"), e)
    return parsed
