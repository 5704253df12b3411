"""Shared pytest fixtures for the quote pipeline tests."""

import asyncio
import os
from datetime import datetime, timedelta, timezone

# Settings are read at import time; keep tests off any real database
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest

from pricebook.errors import NoExtraction
from pricebook.store import MemoryQuoteStore

TENANT_A = "user-001"
TENANT_B = "user-002"


class ScriptedExtractor:
    """Extractor double answering from a content -> fact (or exception) table.

    Unknown content raises ``NoExtraction``.
    """

    def __init__(self, answers=None, *, available=True, delay=0.0, on_call=None):
        self.answers = dict(answers or {})
        self.available = available
        self.delay = delay
        self.on_call = on_call
        self.calls = []

    async def extract(self, text):
        self.calls.append(text)
        if self.on_call is not None:
            self.on_call(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        answer = self.answers.get(text)
        if answer is None:
            raise NoExtraction(f"nothing scripted for {text!r}")
        if isinstance(answer, Exception):
            raise answer
        return answer


class TickingClock:
    """Deterministic clock: each call advances by ``step``."""

    def __init__(self, start=None, step=timedelta(minutes=1)):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class SlowFindStore(MemoryQuoteStore):
    """Yields to the loop after every name lookup, widening the check-then-create window."""

    async def find_product(self, tenant_id, normalized_name):
        found = await super().find_product(tenant_id, normalized_name)
        await asyncio.sleep(0)
        return found

    async def find_supplier(self, tenant_id, normalized_name):
        found = await super().find_supplier(tenant_id, normalized_name)
        await asyncio.sleep(0)
        return found


@pytest.fixture
def store():
    """Fresh in-memory store per test."""
    return MemoryQuoteStore()


@pytest.fixture
def slow_store():
    return SlowFindStore()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def make_extractor():
    """Factory for ``ScriptedExtractor`` instances."""
    return ScriptedExtractor
