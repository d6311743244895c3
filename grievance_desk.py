# Citizen Grievance Desk
# FastAPI + MongoDB + OpenAI-compatible classification

import os
import re
import json
import uuid
import asyncio
import logging
import mimetypes
import threading
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any, Iterable
from enum import Enum
from dataclasses import dataclass, field
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor

import gridfs
import httpx
import uvicorn
from fastapi import APIRouter, FastAPI, Depends, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from openai import AsyncOpenAI
from jose import jwt
from passlib.context import CryptContext
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
from dotenv import load_dotenv
# Try multiple .env locations: next to this file, one level up, then cwd
_script_dir = Path(__file__).resolve().parent
_env_candidates = [
    _script_dir / ".env",
    _script_dir.parent / ".env",
    Path.cwd() / ".env",
]
for _env_path in _env_candidates:
    if _env_path.is_file():
        load_dotenv(_env_path)
        break
else:
    load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "grievance_system")
REPOSITORY_BACKEND = os.getenv("REPOSITORY_BACKEND", "mongo").lower()
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-5-mini")
CLASSIFIER_TIMEOUT = float(os.getenv("CLASSIFIER_TIMEOUT", "15"))
JWT_SECRET = os.getenv("JWT_SECRET", "")
if not JWT_SECRET or len(JWT_SECRET) < 32:
    raise RuntimeError(
        "FATAL: JWT_SECRET must be set in the environment and be at least 32 characters. "
        "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
    )
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "2"))
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
MEDIA_PUBLIC_BASE_URL = os.getenv("MEDIA_PUBLIC_BASE_URL", "").rstrip("/")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
executor = ThreadPoolExecutor(max_workers=10)

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class GrievanceDeskError(Exception):
    """Base error; ``status_code`` is the HTTP status it surfaces as."""
    status_code = 500

    def __init__(self, detail: str = "An unknown error occurred"):
        super().__init__(detail)
        self.detail = detail

class ValidationError(GrievanceDeskError):
    status_code = 400

class ConflictError(GrievanceDeskError):
    status_code = 400

class NotFoundError(GrievanceDeskError):
    status_code = 404

class AuthError(GrievanceDeskError):
    status_code = 401

class UpstreamServiceError(GrievanceDeskError):
    status_code = 500

class PersistenceError(GrievanceDeskError):
    status_code = 500

class IdentityError(GrievanceDeskError):
    status_code = 500

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

class GrievanceStatus(str, Enum):
    NEW = "New"
    OPEN = "Open"
    IN_PROGRESS = "In-Progress"
    RESOLVED = "Resolved"
    COMPLETED = "Completed"

class ClassificationOutcome(str, Enum):
    OK = "ok"
    FALLBACK = "fallback"

PRIORITY_VALUES = [p.value for p in Priority]
STATUS_VALUES = [s.value for s in GrievanceStatus]
DEFAULT_LABEL = "General"

# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class GrievanceCreate(BaseModel):
    # Presence is checked by IntakeOrchestrator so a missing field is a 400, not a 422
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    department: Optional[str] = Field(None, max_length=200)
    anonymity: Optional[bool] = None
    contact_identifier: Optional[str] = Field(
        None, max_length=64,
        validation_alias=AliasChoices("contactIdentifier", "contactNumber", "contact_identifier"))

class GrievanceCreated(CamelModel):
    id: str
    priority: Priority
    grievance_type: str
    category: str
    message: str = "Grievance added successfully"

class GrievanceResponse(CamelModel):
    id: str
    contact_number: str
    title: str
    description: str
    department: str
    priority: Priority
    grievance_type: str
    category: str
    anonymity: bool
    status: GrievanceStatus
    resolved: bool = False
    created_at: datetime
    resolved_at: Optional[datetime] = None

class StatusUpdate(BaseModel):
    status: Optional[str] = None

class Credentials(BaseModel):
    email: Optional[str] = Field(None, max_length=320)
    password: Optional[str] = Field(None, max_length=72)

class SignUpResponse(BaseModel):
    message: str
    uid: str

class SignInResponse(CamelModel):
    message: str
    access_token: str
    token_type: str = "bearer"

class OutboundMessage(BaseModel):
    to: Optional[str] = None
    body: Optional[str] = Field(None, max_length=4096)
    from_: Optional[str] = Field(None, alias="from")
    media_urls: Optional[List[str]] = Field(None, validation_alias=AliasChoices("mediaUrls", "media_urls"))

class MediaUpload(BaseModel):
    contact_number: Optional[str] = Field(None, validation_alias=AliasChoices("contactNumber", "contact_number"))
    media_url: Optional[str] = Field(None, validation_alias=AliasChoices("mediaUrl", "media_url"))

class StatusBreakdown(CamelModel):
    reported: int = 0
    open: int = 0
    in_progress: int = 0
    completed: int = 0

class TypeBreakdown(CamelModel):
    resolved: int = 0
    pending: int = 0

class AnonymityBreakdown(CamelModel):
    anonymous: int = 0
    non_anonymous: int = 0

class PriorityRating(CamelModel):
    low: int = 0
    medium: int = 0
    high: int = 0

class DepartmentBreakdown(CamelModel):
    total: int = 0
    resolved: int = 0
    pending: int = 0

class ClosureRate(CamelModel):
    month: int
    closure_rate: float

class AnalyticsReport(CamelModel):
    total_grievances: int
    status_breakdown: StatusBreakdown
    grievance_type_breakdown: Dict[str, TypeBreakdown]
    anonymity_breakdown: AnonymityBreakdown
    closure_rate: ClosureRate
    avg_response_times: Dict[str, float]
    priority_ratings: Dict[str, PriorityRating]
    department_grievance_breakdown: Dict[str, DepartmentBreakdown]

def record_to_response(doc: dict) -> GrievanceResponse:
    return GrievanceResponse(
        id=str(doc["_id"]), contact_number=doc.get("contact_number", str(doc["_id"])),
        title=doc["title"], description=doc["description"], department=doc["department"],
        priority=doc["priority"], grievance_type=doc["grievance_type"], category=doc["category"],
        anonymity=bool(doc["anonymity"]), status=doc["status"], resolved=bool(doc.get("resolved")),
        created_at=doc["created_at"], resolved_at=doc.get("resolved_at"))

# ---------------------------------------------------------------------------
# Identifier Normalizer
# ---------------------------------------------------------------------------
CHANNEL_SCHEMES = ("whatsapp", "sms", "tel", "viber", "messenger", "telegram")
_SCHEME_PREFIX = re.compile(r"^(?:%s):" % "|".join(CHANNEL_SCHEMES), re.IGNORECASE)

def normalize_identifier(raw: str) -> str:
    """Strip one channel scheme (``whatsapp:``) and then one leading ``+``.

    ``whatsapp:+15551234567`` -> ``15551234567``
    """
    value = _SCHEME_PREFIX.sub("", raw, count=1)
    if value.startswith("+"):
        value = value[1:]
    return value

# ---------------------------------------------------------------------------
# Classification Client
# ---------------------------------------------------------------------------
_FENCE = re.compile(r"^```[A-Za-z]*[ \t]*\n?(.*?)\n?[ \t]*```$", re.DOTALL)

@dataclass(frozen=True)
class ClassificationResult:
    priority: str = Priority.MEDIUM.value
    grievance_type: str = DEFAULT_LABEL
    category: str = DEFAULT_LABEL
    outcome: ClassificationOutcome = ClassificationOutcome.FALLBACK

FALLBACK_CLASSIFICATION = ClassificationResult()

def build_classification_prompt(title: str, description: str) -> str:
    return (
        "You are a system that decides the priority, grievance type, and category of a given "
        "grievance based on its title and description.\n\n"
        'Priority: One of ["Low", "Medium", "High"].\n'
        'GrievanceType: A single word (e.g., "Service", "Technical", "Billing", "Health", "Infrastructure").\n'
        'Category: A single word (e.g., "Network", "Payment", "HR", "Maintenance").\n\n'
        f"Title: {title}\n"
        f"Description: {description}\n\n"
        "Respond with a single JSON object in this exact format (no extra text):\n"
        "{\n"
        '  "priority": "Low|Medium|High",\n'
        '  "grievanceType": "<SingleWord>",\n'
        '  "category": "<SingleWord>"\n'
        "}"
    )

def strip_code_fence(text: str) -> str:
    text = text.strip()
    match = _FENCE.match(text)
    return match.group(1).strip() if match else text

def parse_classification(raw_text: Optional[str]) -> ClassificationResult:
    """Validate model output field by field; anything unusable keeps its default."""
    if not raw_text or not raw_text.strip():
        return FALLBACK_CLASSIFICATION
    try:
        data = json.loads(strip_code_fence(raw_text))
    except ValueError as e:
        logger.warning("Classifier returned non-JSON text: %s", e)
        return FALLBACK_CLASSIFICATION
    if not isinstance(data, dict):
        logger.warning("Classifier returned JSON %s, expected an object", type(data).__name__)
        return FALLBACK_CLASSIFICATION
    priority = data.get("priority")
    grievance_type = data.get("grievanceType")
    category = data.get("category")
    priority_ok = priority in PRIORITY_VALUES
    type_ok = isinstance(grievance_type, str) and bool(grievance_type)
    category_ok = isinstance(category, str) and bool(category)
    if not (priority_ok or type_ok or category_ok):
        return FALLBACK_CLASSIFICATION
    return ClassificationResult(
        priority=priority if priority_ok else Priority.MEDIUM.value,
        grievance_type=grievance_type if type_ok else DEFAULT_LABEL,
        category=category if category_ok else DEFAULT_LABEL,
        outcome=ClassificationOutcome.OK)

class GrievanceClassifier:
    def __init__(self, client: Optional[AsyncOpenAI], model: str = OPENAI_MODEL,
                 timeout: float = CLASSIFIER_TIMEOUT):
        self.client = client
        self.model = model
        self.timeout = timeout

    async def classify(self, title: str, description: str) -> ClassificationResult:
        """Never raises: every failure resolves to the fallback triple."""
        if self.client is None:
            return FALLBACK_CLASSIFICATION
        prompt = build_classification_prompt(title, description)
        try:
            resp = await self.client.chat.completions.create(
                model=self.model, messages=[{"role": "user", "content": prompt}],
                timeout=self.timeout)
            raw_text = resp.choices[0].message.content if resp.choices else None
        except Exception as e:
            logger.warning("Classification request failed, using fallback: %s", e)
            return FALLBACK_CLASSIFICATION
        result = parse_classification(raw_text)
        if result.outcome is ClassificationOutcome.FALLBACK:
            logger.warning("Classification response unusable, using fallback")
        return result

# ---------------------------------------------------------------------------
# Record Repository
# ---------------------------------------------------------------------------
class GrievanceRepository:
    """Keyed grievance storage. ``create`` must be atomic create-if-absent."""

    async def get(self, grievance_id: str) -> Optional[dict]:
        raise NotImplementedError

    async def exists(self, grievance_id: str) -> bool:
        return await self.get(grievance_id) is not None

    async def create(self, record: dict) -> dict:
        raise NotImplementedError

    async def update(self, grievance_id: str, fields: Dict[str, Any]) -> dict:
        raise NotImplementedError

    async def all(self) -> List[dict]:
        raise NotImplementedError

class MongoGrievanceRepository(GrievanceRepository):
    def __init__(self, collection):
        self.collection = collection

    async def _run(self, fn, *args):
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(executor, fn, *args)
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            logger.error("MongoDB error: %s", e)
            raise PersistenceError(str(e)) from e

    def ensure_indexes(self):
        for key in ("created_at", "status", "department", "priority"):
            self.collection.create_index(key)

    async def get(self, grievance_id: str) -> Optional[dict]:
        return await self._run(self.collection.find_one, {"_id": grievance_id})

    async def exists(self, grievance_id: str) -> bool:
        count = await self._run(lambda: self.collection.count_documents({"_id": grievance_id}, limit=1))
        return count > 0

    async def create(self, record: dict) -> dict:
        try:
            await self._run(self.collection.insert_one, record)
        except DuplicateKeyError as e:
            raise ConflictError("A grievance with this contact number already exists.") from e
        return record

    async def update(self, grievance_id: str, fields: Dict[str, Any]) -> dict:
        doc = await self._run(lambda: self.collection.find_one_and_update(
            {"_id": grievance_id}, {"$set": fields}, return_document=ReturnDocument.AFTER))
        if doc is None:
            raise NotFoundError("Grievance not found")
        return doc

    async def all(self) -> List[dict]:
        return await self._run(lambda: list(self.collection.find().sort("created_at", -1)))

class InMemoryGrievanceRepository(GrievanceRepository):
    def __init__(self):
        self._records: Dict[str, dict] = {}
        self._lock = threading.Lock()

    async def get(self, grievance_id: str) -> Optional[dict]:
        with self._lock:
            doc = self._records.get(grievance_id)
            return dict(doc) if doc is not None else None

    async def create(self, record: dict) -> dict:
        with self._lock:
            if record["_id"] in self._records:
                raise ConflictError("A grievance with this contact number already exists.")
            self._records[record["_id"]] = dict(record)
        return record

    async def update(self, grievance_id: str, fields: Dict[str, Any]) -> dict:
        with self._lock:
            doc = self._records.get(grievance_id)
            if doc is None:
                raise NotFoundError("Grievance not found")
            doc.update(fields)
            return dict(doc)

    async def all(self) -> List[dict]:
        with self._lock:
            docs = [dict(d) for d in self._records.values()]
        return sorted(docs, key=lambda d: d["created_at"], reverse=True)

# ---------------------------------------------------------------------------
# Intake Orchestrator
# ---------------------------------------------------------------------------
REQUIRED_TEXT_FIELDS = ("title", "description", "department", "contact_identifier")

class IntakeOrchestrator:
    def __init__(self, repository: GrievanceRepository, classifier: GrievanceClassifier):
        self.repository = repository
        self.classifier = classifier

    @staticmethod
    def validate(data: GrievanceCreate):
        missing = [name for name in REQUIRED_TEXT_FIELDS
                   if not (getattr(data, name) and getattr(data, name).strip())]
        if data.anonymity is None:
            missing.append("anonymity")
        if missing:
            raise ValidationError(f"Invalid request: Required fields are missing: {', '.join(missing)}.")

    async def submit(self, data: GrievanceCreate) -> dict:
        self.validate(data)
        grievance_id = normalize_identifier(data.contact_identifier.strip())
        if not grievance_id:
            raise ValidationError("Invalid request: contact identifier is empty after normalization.")
        if await self.repository.exists(grievance_id):
            raise ConflictError("A grievance with this contact number already exists.")
        result = await self.classifier.classify(data.title, data.description)
        record = {
            "_id": grievance_id, "contact_number": grievance_id,
            "title": data.title, "description": data.description,
            "department": data.department, "priority": result.priority,
            "grievance_type": result.grievance_type, "category": result.category,
            "anonymity": data.anonymity, "status": GrievanceStatus.NEW.value,
            "resolved": False, "created_at": now_utc(), "resolved_at": None,
        }
        # Duplicate submissions racing past the exists() check are rejected here
        await self.repository.create(record)
        logger.info("Grievance %s created (%s, classification=%s)",
                    grievance_id, result.priority, result.outcome.value)
        return record

# ---------------------------------------------------------------------------
# Status Transition Handler
# ---------------------------------------------------------------------------
class StatusTransitionHandler:
    """Any status may follow any other; only "Resolved" touches resolved/resolved_at."""

    def __init__(self, repository: GrievanceRepository):
        self.repository = repository

    async def apply(self, grievance_id: Optional[str], status: Optional[str]) -> dict:
        if not grievance_id or not grievance_id.strip():
            raise ValidationError("Invalid request: 'grievanceId' is required.")
        if status not in STATUS_VALUES:
            raise ValidationError(
                f"Invalid request: 'status' is required and must be one of {', '.join(STATUS_VALUES)}.")
        fields: Dict[str, Any] = {"status": status}
        if status == GrievanceStatus.RESOLVED.value:
            fields["resolved"] = True
            fields["resolved_at"] = now_utc()
        doc = await self.repository.update(grievance_id, fields)
        logger.info("Grievance %s status -> %s", grievance_id, status)
        return doc

# ---------------------------------------------------------------------------
# Analytics Aggregator
# ---------------------------------------------------------------------------
STATUS_BUCKETS = {
    GrievanceStatus.NEW.value: "reported",
    GrievanceStatus.OPEN.value: "open",
    GrievanceStatus.IN_PROGRESS.value: "in_progress",
    GrievanceStatus.RESOLVED.value: "completed",
}

def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value

class AnalyticsAggregator:
    def __init__(self, repository: GrievanceRepository):
        self.repository = repository

    async def report(self, now: Optional[datetime] = None) -> AnalyticsReport:
        return compute_analytics(await self.repository.all(), now=now)

def compute_analytics(records: Iterable[dict], now: Optional[datetime] = None) -> AnalyticsReport:
    """Single pass over every record.

    Each dimension keys off a different literal, on purpose:
    the status buckets and department breakdown count "Resolved" as done,
    the grievance-type breakdown counts only "Completed".
    Closure rate is labelled with the current month but not filtered by it.
    """
    now = now or now_utc()
    total = 0
    status_counts = {bucket: 0 for bucket in STATUS_BUCKETS.values()}
    type_counts: Dict[str, Dict[str, int]] = {}
    anonymity = {"anonymous": 0, "non_anonymous": 0}
    priority_ratings: Dict[str, Dict[str, int]] = {}
    departments: Dict[str, Dict[str, int]] = {}
    response_times: Dict[str, List[float]] = {}

    for g in records:
        total += 1
        status = g.get("status")
        bucket = STATUS_BUCKETS.get(status)
        if bucket:
            status_counts[bucket] += 1

        grievance_type = g.get("grievance_type") or "Unknown"
        counts = type_counts.setdefault(grievance_type, {"resolved": 0, "pending": 0})
        if status == GrievanceStatus.COMPLETED.value:
            counts["resolved"] += 1
        else:
            counts["pending"] += 1

        if g.get("anonymity"):
            anonymity["anonymous"] += 1
        else:
            anonymity["non_anonymous"] += 1

        department = g.get("department") or "Unknown"
        rating = priority_ratings.setdefault(department, {"low": 0, "medium": 0, "high": 0})
        priority = g.get("priority")
        if priority in PRIORITY_VALUES:
            rating[priority.lower()] += 1

        dept = departments.setdefault(department, {"total": 0, "resolved": 0, "pending": 0})
        dept["total"] += 1
        if status == GrievanceStatus.RESOLVED.value:
            dept["resolved"] += 1
        else:
            dept["pending"] += 1

        created_at, resolved_at = g.get("created_at"), g.get("resolved_at")
        if created_at and resolved_at:
            seconds = (_as_utc(resolved_at) - _as_utc(created_at)).total_seconds()
            response_times.setdefault(department, []).append(seconds)

    return AnalyticsReport(
        total_grievances=total,
        status_breakdown=StatusBreakdown(**status_counts),
        grievance_type_breakdown={k: TypeBreakdown(**v) for k, v in type_counts.items()},
        anonymity_breakdown=AnonymityBreakdown(**anonymity),
        closure_rate=ClosureRate(
            month=now.month,
            closure_rate=status_counts["completed"] / total if total > 0 else 0),
        avg_response_times={d: sum(t) / len(t) for d, t in response_times.items()},
        priority_ratings={k: PriorityRating(**v) for k, v in priority_ratings.items()},
        department_grievance_breakdown={k: DepartmentBreakdown(**v) for k, v in departments.items()})

# ---------------------------------------------------------------------------
# Identity Provider
# ---------------------------------------------------------------------------
class AccountStore:
    async def insert(self, account: dict) -> None:
        raise NotImplementedError

    async def find_by_email(self, email: str) -> Optional[dict]:
        raise NotImplementedError

class MongoAccountStore(AccountStore):
    def __init__(self, collection):
        self.collection = collection

    def ensure_indexes(self):
        self.collection.create_index([("email", 1)], unique=True)

    async def insert(self, account: dict) -> None:
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(executor, self.collection.insert_one, account)
        except DuplicateKeyError as e:
            raise IdentityError("The email address is already in use by another account.") from e
        except PyMongoError as e:
            logger.error("MongoDB error creating account: %s", e)
            raise IdentityError(str(e)) from e

    async def find_by_email(self, email: str) -> Optional[dict]:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(executor, self.collection.find_one, {"email": email})
        except PyMongoError as e:
            logger.error("MongoDB error reading account: %s", e)
            raise IdentityError(str(e)) from e

class InMemoryAccountStore(AccountStore):
    def __init__(self):
        self._accounts: Dict[str, dict] = {}
        self._lock = threading.Lock()

    async def insert(self, account: dict) -> None:
        with self._lock:
            if account["email"] in self._accounts:
                raise IdentityError("The email address is already in use by another account.")
            self._accounts[account["email"]] = dict(account)

    async def find_by_email(self, email: str) -> Optional[dict]:
        with self._lock:
            return self._accounts.get(email)

class IdentityProvider:
    def __init__(self, accounts: AccountStore, secret: str = JWT_SECRET,
                 expire_hours: int = JWT_EXPIRE_HOURS):
        self.accounts = accounts
        self.secret = secret
        self.expire_hours = expire_hours

    @staticmethod
    def _require(creds: Credentials):
        if not creds.email or not creds.password:
            raise ValidationError("Invalid request: 'email' and 'password' are required.")

    async def create_account(self, creds: Credentials) -> str:
        self._require(creds)
        if len(creds.password.encode("utf-8")) > 72:
            raise ValidationError("Password cannot exceed 72 bytes")
        uid = str(uuid.uuid4())
        await self.accounts.insert({
            "_id": uid, "email": creds.email.strip().lower(),
            "hashed_password": pwd_context.hash(creds.password), "created_at": now_utc()})
        logger.info("Account %s created", uid)
        return uid

    async def issue_token(self, creds: Credentials) -> str:
        self._require(creds)
        account = await self.accounts.find_by_email(creds.email.strip().lower())
        if not account or not pwd_context.verify(creds.password, account["hashed_password"]):
            raise AuthError("Invalid credentials")
        payload = {"sub": account["_id"], "email": account["email"],
                   "exp": now_utc() + timedelta(hours=self.expire_hours)}
        return jwt.encode(payload, self.secret, algorithm=JWT_ALGORITHM)

# ---------------------------------------------------------------------------
# Media Relay
# ---------------------------------------------------------------------------
_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.@-]+$")
# mimetypes picks among jpg/jpe/jpeg depending on the host's mime.types
_PREFERRED_EXTENSIONS = {
    "image/jpeg": "jpg", "image/png": "png", "audio/ogg": "ogg",
    "audio/mpeg": "mp3", "video/mp4": "mp4", "application/pdf": "pdf",
    "application/octet-stream": "bin",
}

def extension_for(content_type: Optional[str]) -> str:
    mime = (content_type or "application/octet-stream").split(";")[0].strip().lower()
    if mime in _PREFERRED_EXTENSIONS:
        return _PREFERRED_EXTENSIONS[mime]
    ext = mimetypes.guess_extension(mime)
    return ext.lstrip(".") if ext else "bin"

class MediaStore:
    async def queue_message(self, message: dict) -> None:
        raise NotImplementedError

    async def put(self, filename: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    async def get(self, filename: str) -> Optional[tuple]:
        """Return ``(data, content_type)`` or None."""
        raise NotImplementedError

class MongoMediaStore(MediaStore):
    def __init__(self, db):
        self.messages = db.messages
        self.fs = gridfs.GridFS(db, collection="media")

    async def _run(self, fn, *args):
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(executor, fn, *args)
        except PyMongoError as e:
            logger.error("Media storage error: %s", e)
            raise PersistenceError(str(e)) from e

    async def queue_message(self, message: dict) -> None:
        await self._run(self.messages.insert_one, message)

    async def put(self, filename: str, data: bytes, content_type: str) -> None:
        def replace():
            for old in self.fs.find({"filename": filename}):
                self.fs.delete(old._id)
            self.fs.put(data, filename=filename, content_type=content_type,
                        metadata={"uploaded_at": now_utc().isoformat()})
        await self._run(replace)

    async def get(self, filename: str) -> Optional[tuple]:
        def read():
            try:
                f = self.fs.get_last_version(filename)
            except gridfs.NoFile:
                return None
            return f.read(), getattr(f, "content_type", None) or "application/octet-stream"
        return await self._run(read)

class InMemoryMediaStore(MediaStore):
    def __init__(self):
        self.messages: List[dict] = []
        self.files: Dict[str, tuple] = {}

    async def queue_message(self, message: dict) -> None:
        self.messages.append(dict(message))

    async def put(self, filename: str, data: bytes, content_type: str) -> None:
        self.files[filename] = (data, content_type)

    async def get(self, filename: str) -> Optional[tuple]:
        return self.files.get(filename)

class MediaRelay:
    def __init__(self, store: MediaStore, public_base_url: str = MEDIA_PUBLIC_BASE_URL,
                 auth: Optional[tuple] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.store = store
        self.public_base_url = public_base_url
        self.auth = auth
        self.transport = transport

    def public_url(self, filename: str) -> str:
        return f"{self.public_base_url}/media/files/{filename}"

    async def enqueue(self, msg: OutboundMessage) -> None:
        if not msg.to or not msg.body or not msg.from_:
            raise ValidationError("Invalid request: 'to', 'body', and 'from' are required.")
        await self.store.queue_message({
            "_id": str(uuid.uuid4()), "to": msg.to, "body": msg.body, "from": msg.from_,
            "mediaUrls": msg.media_urls or [], "queued_at": now_utc()})
        logger.info("Message to %s queued", msg.to)

    async def upload(self, upload: MediaUpload) -> str:
        if not upload.media_url:
            raise ValidationError("Media URL is required")
        if not upload.contact_number:
            raise ValidationError("Contact number is required")
        identifier = normalize_identifier(upload.contact_number.strip())
        if not _SAFE_NAME.match(identifier):
            raise ValidationError("Invalid contact number")
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=30,
                                         follow_redirects=True) as client:
                resp = await client.get(upload.media_url, auth=self.auth)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Error downloading media from %s: %s", upload.media_url, e)
            raise UpstreamServiceError("Error downloading media") from e
        content_type = resp.headers.get("content-type") or "application/octet-stream"
        filename = f"{identifier}.{extension_for(content_type)}"
        await self.store.put(filename, resp.content, content_type)
        logger.info("Stored media %s (%d bytes)", filename, len(resp.content))
        return self.public_url(filename)

    async def lookup(self, contact_number: Optional[str], extension: Optional[str]) -> str:
        if not contact_number:
            raise ValidationError("Contact number is required")
        if not extension:
            raise ValidationError("Extension is required")
        filename = f"{contact_number}.{extension}"
        if not _SAFE_NAME.match(filename) or await self.store.get(filename) is None:
            raise NotFoundError("File not found")
        return self.public_url(filename)

    async def fetch(self, filename: str) -> tuple:
        found = await self.store.get(filename) if _SAFE_NAME.match(filename) else None
        if found is None:
            raise NotFoundError("File not found")
        return found

# ---------------------------------------------------------------------------
# Services (built once per process, injected per request)
# ---------------------------------------------------------------------------
@dataclass
class Services:
    repository: GrievanceRepository
    classifier: GrievanceClassifier
    accounts: AccountStore
    media_store: MediaStore
    media_auth: Optional[tuple] = None
    mongo_client: Optional[MongoClient] = None
    intake: IntakeOrchestrator = field(init=False)
    transitions: StatusTransitionHandler = field(init=False)
    analytics: AnalyticsAggregator = field(init=False)
    identity: IdentityProvider = field(init=False)
    media: MediaRelay = field(init=False)

    def __post_init__(self):
        self.intake = IntakeOrchestrator(self.repository, self.classifier)
        self.transitions = StatusTransitionHandler(self.repository)
        self.analytics = AnalyticsAggregator(self.repository)
        self.identity = IdentityProvider(self.accounts)
        self.media = MediaRelay(self.media_store, auth=self.media_auth)

    def close(self):
        if self.mongo_client:
            self.mongo_client.close()

def build_classifier(http_client: Optional[httpx.AsyncClient] = None) -> GrievanceClassifier:
    if not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set; every grievance gets the fallback classification")
        return GrievanceClassifier(None)
    # One request per classification; failures go straight to the fallback
    return GrievanceClassifier(AsyncOpenAI(api_key=OPENAI_API_KEY, base_url=OPENAI_BASE_URL,
                                           max_retries=0, http_client=http_client))

def build_media_auth(account_sid: Optional[str], auth_token: Optional[str]) -> Optional[tuple]:
    """Basic-auth pair for media downloads, only when both halves are configured."""
    if account_sid and auth_token:
        return (account_sid, auth_token)
    if account_sid or auth_token:
        logger.warning("Only one of TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN is set; downloading media without auth")
    return None

def build_services() -> Services:
    classifier = build_classifier()
    media_auth = build_media_auth(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)
    if REPOSITORY_BACKEND == "memory":
        logger.info("Using in-memory storage; records are lost on restart")
        return Services(InMemoryGrievanceRepository(), classifier, InMemoryAccountStore(),
                        InMemoryMediaStore(), media_auth=media_auth)
    mongo_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = mongo_client[MONGODB_DB]
    repository = MongoGrievanceRepository(db.grievances)
    accounts = MongoAccountStore(db.users)
    repository.ensure_indexes()
    accounts.ensure_indexes()
    logger.info("Database initialized: %s", MONGODB_DB)
    return Services(repository, classifier, accounts, MongoMediaStore(db),
                    media_auth=media_auth, mongo_client=mongo_client)

def get_services(request: Request) -> Services:
    return request.app.state.services

# ---------------------------------------------------------------------------
# Middleware & Error Handlers
# ---------------------------------------------------------------------------
limiter = Limiter(key_func=get_remote_address)

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

async def grievance_error_handler(request: Request, exc: GrievanceDeskError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors())
    return JSONResponse(status_code=400, content={"detail": f"Invalid request: {problems}"})

# ---------------------------------------------------------------------------
# GRIEVANCE ENDPOINTS
# ---------------------------------------------------------------------------
router = APIRouter()

@router.post("/grievances", response_model=GrievanceCreated, status_code=201)
async def create_grievance(data: GrievanceCreate, services: Services = Depends(get_services)):
    record = await services.intake.submit(data)
    return GrievanceCreated(id=record["_id"], priority=record["priority"],
                            grievance_type=record["grievance_type"], category=record["category"])

@router.get("/grievances", response_model=List[GrievanceResponse])
async def list_grievances(services: Services = Depends(get_services)):
    docs = await services.repository.all()
    if not docs:
        raise NotFoundError("No grievances found")
    return [record_to_response(d) for d in docs]

@router.get("/grievances/{grievance_id}", response_model=GrievanceResponse)
async def get_grievance(grievance_id: str, services: Services = Depends(get_services)):
    if not grievance_id.strip():
        raise ValidationError("Invalid request: 'grievanceId' is required.")
    doc = await services.repository.get(grievance_id)
    if not doc:
        raise NotFoundError("Grievance not found")
    return record_to_response(doc)

@router.put("/grievances/{grievance_id}/status", response_model=GrievanceResponse)
async def update_status(grievance_id: str, update: StatusUpdate,
                        services: Services = Depends(get_services)):
    doc = await services.transitions.apply(grievance_id, update.status)
    return record_to_response(doc)

# ---------------------------------------------------------------------------
# ANALYTICS
# ---------------------------------------------------------------------------
@router.get("/analytics", response_model=AnalyticsReport)
async def get_analytics(services: Services = Depends(get_services)):
    return await services.analytics.report()

# ---------------------------------------------------------------------------
# AUTH ENDPOINTS
# ---------------------------------------------------------------------------
@router.post("/auth/signup", response_model=SignUpResponse, status_code=201)
@limiter.limit("3/minute")
async def sign_up(request: Request, creds: Credentials, services: Services = Depends(get_services)):
    uid = await services.identity.create_account(creds)
    return SignUpResponse(message="User created successfully", uid=uid)

@router.post("/auth/signin", response_model=SignInResponse)
@limiter.limit("5/minute")
async def sign_in(request: Request, creds: Credentials, services: Services = Depends(get_services)):
    token = await services.identity.issue_token(creds)
    return SignInResponse(message="User signed in successfully", access_token=token)

# ---------------------------------------------------------------------------
# MEDIA RELAY ENDPOINTS
# ---------------------------------------------------------------------------
@router.post("/messages")
async def send_message(msg: OutboundMessage, services: Services = Depends(get_services)):
    await services.media.enqueue(msg)
    return {"message": "Message queued for delivery"}

@router.post("/media")
async def upload_media(upload: MediaUpload, services: Services = Depends(get_services)):
    url = await services.media.upload(upload)
    return {"message": "File uploaded successfully", "fileUrl": url}

@router.get("/media")
async def lookup_media(contact_number: Optional[str] = Query(None, alias="contactNumber"),
                       extension: Optional[str] = Query(None),
                       services: Services = Depends(get_services)):
    return {"fileUrl": await services.media.lookup(contact_number, extension)}

@router.get("/media/files/{filename}")
async def download_media(filename: str, services: Services = Depends(get_services)):
    data, content_type = await services.media.fetch(filename)
    return Response(content=data, media_type=content_type)

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@router.get("/health")
async def health():
    return {"status": "healthy", "system": "Citizen Grievance Desk", "timestamp": now_utc()}

# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API. Pass ``services`` to skip the MongoDB/OpenAI wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if app.state.services is None:
            loop = asyncio.get_event_loop()
            owned = await loop.run_in_executor(executor, build_services)
            app.state.services = owned
            logger.info("Classifier model: %s", OPENAI_MODEL)
        yield
        if owned:
            owned.close()

    app = FastAPI(title="Citizen Grievance Desk", lifespan=lifespan)
    app.state.services = services
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(GrievanceDeskError, grievance_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CORSMiddleware, allow_origins=CORS_ORIGINS,
                       allow_credentials="*" not in CORS_ORIGINS,
                       allow_methods=["*"], allow_headers=["*"])
    app.include_router(router)
    return app

app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
