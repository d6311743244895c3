"""
Unit tests for the grievance pipeline pieces that sit behind the HTTP layer:
identifier normalization, classification parsing, intake, status transitions,
analytics aggregation and the MongoDB repository adapter.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

import grievance_desk
from grievance_desk import (
    ClassificationOutcome, ConflictError, FALLBACK_CLASSIFICATION, GrievanceClassifier,
    GrievanceCreate, InMemoryGrievanceRepository, IntakeOrchestrator, MongoGrievanceRepository,
    NotFoundError, PersistenceError, StatusTransitionHandler, ValidationError,
    build_media_auth, compute_analytics, extension_for, normalize_identifier, parse_classification,
    strip_code_fence,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def submission(**overrides) -> GrievanceCreate:
    data = {
        "title": "Streetlight out",
        "description": "The light at the corner of 5th and Main has been out for a week.",
        "department": "Electricity",
        "anonymity": True,
        "contactIdentifier": "whatsapp:+15551234567",
    }
    data.update(overrides)
    return GrievanceCreate.model_validate(data)


# ---------------------------------------------------------------------------
# Identifier normalization
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw, expected", [
    ("whatsapp:+15551234567", "15551234567"),
    ("WhatsApp:+15551234567", "15551234567"),
    ("sms:+15551234567", "15551234567"),
    ("tel:15551234567", "15551234567"),
    ("+15551234567", "15551234567"),
    ("15551234567", "15551234567"),
    ("citizen@example.com", "citizen@example.com"),
    ("whatsapp:+", ""),
])
def test_normalize_identifier(raw, expected):
    assert normalize_identifier(raw) == expected


@pytest.mark.parametrize("raw", [
    "whatsapp:+15551234567", "sms:+447700900123", "+919876543210", "15551234567",
])
def test_normalize_identifier_is_idempotent(raw):
    once = normalize_identifier(raw)
    assert normalize_identifier(once) == once


def test_scheme_inside_identifier_is_kept():
    assert normalize_identifier("1555whatsapp:1234") == "1555whatsapp:1234"


@pytest.mark.parametrize("raw, expected", [
    ("whatsapp:whatsapp:+15551234567", "whatsapp:+15551234567"),
    ("sms:tel:15551234567", "tel:15551234567"),
    ("++15551234567", "+15551234567"),
    ("whatsapp:++15551234567", "+15551234567"),
])
def test_strips_at_most_one_scheme_and_one_plus(raw, expected):
    assert normalize_identifier(raw) == expected


# ---------------------------------------------------------------------------
# Classification parsing
# ---------------------------------------------------------------------------

def test_strip_code_fence_with_language_tag():
    assert strip_code_fence('```json\n{"priority": "Low"}\n```') == '{"priority": "Low"}'


def test_strip_code_fence_without_language_tag():
    assert strip_code_fence('```\n{"priority": "Low"}\n```') == '{"priority": "Low"}'


def test_strip_code_fence_plain_text_untouched():
    assert strip_code_fence('  {"priority": "Low"}  ') == '{"priority": "Low"}'


def test_parse_valid_classification():
    result = parse_classification(json.dumps(
        {"priority": "Low", "grievanceType": "Billing", "category": "Payment"}))
    assert (result.priority, result.grievance_type, result.category) == ("Low", "Billing", "Payment")
    assert result.outcome is ClassificationOutcome.OK


@pytest.mark.parametrize("raw", [
    None, "", "   ", "not json", "[1, 2, 3]", '"High"', "{}",
    '{"priority": "Urgent", "grievanceType": "", "category": null}',
])
def test_parse_unusable_text_falls_back(raw):
    assert parse_classification(raw) == FALLBACK_CLASSIFICATION


def test_parse_validates_each_field_independently():
    result = parse_classification(json.dumps({"priority": "high", "grievanceType": 7, "category": "Roads"}))
    assert result.priority == "Medium"
    assert result.grievance_type == "General"
    assert result.category == "Roads"
    assert result.outcome is ClassificationOutcome.OK


async def test_classifier_without_client_falls_back():
    classifier = GrievanceClassifier(None)
    assert await classifier.classify("t", "d") == FALLBACK_CLASSIFICATION


async def test_classifier_sends_prompt_with_timeout(chat):
    chat.completions.reply = json.dumps({"priority": "High", "grievanceType": "Health", "category": "Clinic"})
    classifier = GrievanceClassifier(chat, model="test-model", timeout=5)
    result = await classifier.classify("Clinic closed", "The clinic has been shut all week.")
    assert result.priority == "High"
    call = chat.completions.calls[0]
    assert call["model"] == "test-model"
    assert call["timeout"] == 5
    prompt = call["messages"][0]["content"]
    assert "Title: Clinic closed" in prompt
    assert "Description: The clinic has been shut all week." in prompt


async def test_classifier_swallows_client_errors(chat):
    chat.completions.error = RuntimeError("connection reset")
    classifier = GrievanceClassifier(chat)
    assert await classifier.classify("t", "d") == FALLBACK_CLASSIFICATION


async def test_configured_classifier_sends_a_single_request(monkeypatch):
    hits = []

    def handler(request):
        hits.append(request)
        return httpx.Response(500, json={"error": {"message": "upstream unavailable"}})

    monkeypatch.setattr(grievance_desk, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(grievance_desk, "OPENAI_BASE_URL", "https://llm.invalid/v1")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        classifier = grievance_desk.build_classifier(http_client=http_client)
        result = await classifier.classify("No water", "Dry tap")
    assert result == FALLBACK_CLASSIFICATION
    assert len(hits) == 1
    assert hits[0].url.path.endswith("/chat/completions")


@pytest.mark.parametrize("sid, token, expected", [
    ("AC123", "secret", ("AC123", "secret")),
    ("AC123", None, None),
    (None, "secret", None),
    (None, None, None),
])
def test_build_media_auth_requires_both_credentials(sid, token, expected):
    assert build_media_auth(sid, token) == expected


@pytest.mark.parametrize("content_type, ext", [
    ("image/jpeg", "jpg"),
    ("image/png; charset=binary", "png"),
    ("audio/ogg", "ogg"),
    (None, "bin"),
])
def test_extension_for(content_type, ext):
    assert extension_for(content_type) == ext


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

@pytest.fixture
def repository():
    return InMemoryGrievanceRepository()


@pytest.fixture
def intake(repository, chat):
    return IntakeOrchestrator(repository, GrievanceClassifier(chat, model="test-model", timeout=5))


async def test_intake_builds_new_record(intake, repository, chat):
    chat.completions.reply = json.dumps({"priority": "Low", "grievanceType": "Service", "category": "Lighting"})
    record = await intake.submit(submission())
    stored = await repository.get("15551234567")
    assert stored == record
    assert stored["contact_number"] == "15551234567"
    assert stored["status"] == "New"
    assert stored["resolved"] is False
    assert stored["resolved_at"] is None
    assert stored["anonymity"] is True
    assert stored["priority"] == "Low"
    assert stored["created_at"].tzinfo is not None


async def test_intake_rejects_missing_fields_before_classifying(intake, chat):
    with pytest.raises(ValidationError) as exc:
        await intake.submit(GrievanceCreate.model_validate({"title": "Only a title"}))
    assert "description" in exc.value.detail
    assert "anonymity" in exc.value.detail
    assert chat.completions.calls == []


async def test_intake_rejects_existing_identifier(intake, chat):
    await intake.submit(submission())
    with pytest.raises(ConflictError):
        await intake.submit(submission(contactIdentifier="+15551234567"))
    assert len(chat.completions.calls) == 1


async def test_concurrent_submissions_create_one_record(intake, repository):
    results = await asyncio.gather(
        *(intake.submit(submission(title=f"Report {i}")) for i in range(5)),
        return_exceptions=True)
    created = [r for r in results if isinstance(r, dict)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 4
    stored = await repository.get("15551234567")
    assert stored["title"] == created[0]["title"]


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

async def test_transition_to_resolved(intake, repository):
    await intake.submit(submission())
    handler = StatusTransitionHandler(repository)
    doc = await handler.apply("15551234567", "Resolved")
    assert doc["resolved"] is True
    assert doc["resolved_at"] >= doc["created_at"]


async def test_resolving_again_refreshes_timestamp(intake, repository, monkeypatch):
    await intake.submit(submission())
    clock = iter([T0 + timedelta(hours=1), T0 + timedelta(hours=5)])
    monkeypatch.setattr(grievance_desk, "now_utc", lambda: next(clock))
    handler = StatusTransitionHandler(repository)

    first = await handler.apply("15551234567", "Resolved")
    reopened = await handler.apply("15551234567", "Open")
    assert reopened["resolved_at"] == first["resolved_at"]
    second = await handler.apply("15551234567", "Resolved")

    assert first["resolved_at"] == T0 + timedelta(hours=1)
    assert second["resolved_at"] == T0 + timedelta(hours=5)
    assert second["resolved"] is True


async def test_transition_validates_before_lookup(repository):
    handler = StatusTransitionHandler(repository)
    with pytest.raises(ValidationError):
        await handler.apply("15551234567", "Archived")
    with pytest.raises(ValidationError):
        await handler.apply("  ", "Open")


async def test_transition_unknown_grievance(repository):
    with pytest.raises(NotFoundError):
        await StatusTransitionHandler(repository).apply("15551234567", "Open")


async def test_transition_does_not_normalize_identifier(intake, repository):
    await intake.submit(submission())
    with pytest.raises(NotFoundError):
        await StatusTransitionHandler(repository).apply("whatsapp:+15551234567", "Open")


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

def analytics_records():
    return [
        {"_id": "1", "department": "Water", "grievance_type": "Infrastructure", "priority": "High",
         "anonymity": False, "status": "New", "created_at": T0, "resolved_at": None},
        {"_id": "2", "department": "Water", "grievance_type": "Infrastructure", "priority": "Medium",
         "anonymity": False, "status": "Resolved", "created_at": T0,
         "resolved_at": T0 + timedelta(hours=2)},
        # Naive timestamps come back from stores that drop tzinfo
        {"_id": "3", "department": "Water", "grievance_type": "Infrastructure", "priority": "Low",
         "anonymity": False, "status": "Completed", "created_at": T0.replace(tzinfo=None),
         "resolved_at": T0 + timedelta(hours=1)},
        {"_id": "4", "priority": "Medium", "anonymity": False, "status": "In-Progress", "created_at": T0},
        {"_id": "5", "department": "Roads", "grievance_type": "Service", "priority": "Urgent",
         "anonymity": True, "status": "Open", "created_at": T0},
    ]


def test_analytics_over_mixed_records():
    report = compute_analytics(analytics_records(), now=datetime(2026, 3, 15, tzinfo=timezone.utc))
    assert report.total_grievances == 5

    status = report.status_breakdown
    assert (status.reported, status.open, status.in_progress, status.completed) == (1, 1, 1, 1)

    types = report.grievance_type_breakdown
    assert (types["Infrastructure"].resolved, types["Infrastructure"].pending) == (1, 2)
    assert (types["Unknown"].resolved, types["Unknown"].pending) == (0, 1)
    assert (types["Service"].resolved, types["Service"].pending) == (0, 1)

    assert report.anonymity_breakdown.anonymous == 1
    assert report.anonymity_breakdown.non_anonymous == 4

    water = report.department_grievance_breakdown["Water"]
    assert (water.total, water.resolved, water.pending) == (3, 1, 2)
    assert report.department_grievance_breakdown["Unknown"].total == 1

    assert report.avg_response_times == {"Water": 5400.0}

    ratings = report.priority_ratings
    assert (ratings["Water"].low, ratings["Water"].medium, ratings["Water"].high) == (1, 1, 1)
    assert ratings["Unknown"].medium == 1
    assert (ratings["Roads"].low, ratings["Roads"].medium, ratings["Roads"].high) == (0, 0, 0)

    assert report.closure_rate.month == 3
    assert report.closure_rate.closure_rate == pytest.approx(0.2)


def test_analytics_totals_are_consistent():
    records = analytics_records()
    report = compute_analytics(records)
    status = report.status_breakdown
    assert status.reported + status.open + status.in_progress + status.completed <= report.total_grievances
    assert sum(d.total for d in report.department_grievance_breakdown.values()) == len(records)
    assert sum(t.resolved + t.pending for t in report.grievance_type_breakdown.values()) == len(records)
    anonymity = report.anonymity_breakdown
    assert anonymity.anonymous + anonymity.non_anonymous == len(records)


def test_analytics_empty():
    report = compute_analytics([], now=datetime(2026, 7, 1, tzinfo=timezone.utc))
    assert report.total_grievances == 0
    assert report.closure_rate.closure_rate == 0
    assert report.closure_rate.month == 7
    assert report.grievance_type_breakdown == {}


# ---------------------------------------------------------------------------
# MongoDB repository adapter
# ---------------------------------------------------------------------------

class FakeCursor(list):
    def sort(self, key, direction):
        return FakeCursor(sorted(self, key=lambda d: d[key], reverse=direction < 0))


class FakeCollection:
    """The slice of pymongo's Collection that MongoGrievanceRepository uses."""

    def __init__(self):
        self.docs = {}
        self.indexes = []

    def create_index(self, key):
        self.indexes.append(key)

    def insert_one(self, doc):
        if doc["_id"] in self.docs:
            raise DuplicateKeyError("E11000 duplicate key error")
        self.docs[doc["_id"]] = dict(doc)

    def find_one(self, query):
        doc = self.docs.get(query["_id"])
        return dict(doc) if doc else None

    def count_documents(self, query, limit=0):
        return 1 if query["_id"] in self.docs else 0

    def find_one_and_update(self, query, update, return_document=None):
        doc = self.docs.get(query["_id"])
        if doc is None:
            return None
        doc.update(update["$set"])
        return dict(doc)

    def find(self):
        return FakeCursor(dict(d) for d in self.docs.values())


class UnreachableCollection:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise ServerSelectionTimeoutError("localhost:27017: connection refused")
        return fail


async def test_mongo_repository_round_trip():
    collection = FakeCollection()
    repo = MongoGrievanceRepository(collection)
    repo.ensure_indexes()
    assert "created_at" in collection.indexes

    await repo.create({"_id": "a", "created_at": T0, "status": "New"})
    await repo.create({"_id": "b", "created_at": T0 + timedelta(hours=1), "status": "New"})
    assert await repo.exists("a")
    assert not await repo.exists("zzz")
    assert [d["_id"] for d in await repo.all()] == ["b", "a"]

    updated = await repo.update("a", {"status": "Open"})
    assert updated["status"] == "Open"


async def test_mongo_repository_duplicate_is_conflict():
    repo = MongoGrievanceRepository(FakeCollection())
    await repo.create({"_id": "a", "created_at": T0})
    with pytest.raises(ConflictError):
        await repo.create({"_id": "a", "created_at": T0})


async def test_mongo_repository_update_missing():
    with pytest.raises(NotFoundError):
        await MongoGrievanceRepository(FakeCollection()).update("a", {"status": "Open"})


async def test_mongo_repository_storage_failure():
    repo = MongoGrievanceRepository(UnreachableCollection())
    with pytest.raises(PersistenceError):
        await repo.get("a")
    with pytest.raises(PersistenceError):
        await repo.create({"_id": "a"})
    with pytest.raises(PersistenceError):
        await repo.all()
