"""
Shared pytest fixtures for the Citizen Grievance Desk test suite.

Builds the app with in-memory storage and a scripted chat-completions client,
and exposes an httpx AsyncClient talking to it in-process.
"""

import os
import sys
import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio
import httpx

os.environ.setdefault("JWT_SECRET", "test-secret-for-the-grievance-desk-suite-0123456789")
os.environ.setdefault("REPOSITORY_BACKEND", "memory")

# Ensure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from grievance_desk import (
    GrievanceClassifier, InMemoryAccountStore, InMemoryGrievanceRepository,
    InMemoryMediaStore, Services, create_app, limiter,
)


class FakeCompletions:
    """Stands in for ``AsyncOpenAI().chat.completions``."""

    def __init__(self):
        self.reply = None
        self.error = None
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        # Yield once so concurrent submissions interleave like a real network call
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.reply is None:
            return SimpleNamespace(choices=[])
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeChatClient:
    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)


@pytest.fixture
def chat():
    return FakeChatClient()


@pytest.fixture
def services(chat):
    return Services(
        repository=InMemoryGrievanceRepository(),
        classifier=GrievanceClassifier(chat, model="test-model", timeout=5),
        accounts=InMemoryAccountStore(),
        media_store=InMemoryMediaStore(),
    )


@pytest_asyncio.fixture
async def client(services):
    """In-process httpx AsyncClient against an app wired to ``services``."""
    # Disable rate limiting so auth tests aren't throttled
    limiter.enabled = False
    transport = httpx.ASGITransport(app=create_app(services))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c

