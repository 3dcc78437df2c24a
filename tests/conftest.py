"""
Pytest configuration and shared fixtures for the random chat tests

Provides:
- In-memory session and report stores
- A controllable clock
- Recording notifier connections
- A wired RandomChatService
"""

import json
import os

# Must be set before config/database are imported
os.environ["SESSION_STORE"] = "memory"

from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from moderation import InMemoryReportStore
from notifier import Notifier
from service import RandomChatService
from session_store import InMemorySessionStore


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingConnection:
    """Stands in for a WebSocket: keeps every decoded frame it was sent"""

    def __init__(self):
        self.frames: List[Dict] = []

    async def send_text(self, data: str) -> None:
        self.frames.append(json.loads(data))

    def events(self, name: str) -> List[Dict]:
        return [f["data"] for f in self.frames if f["type"] == name]


class BrokenConnection:
    async def send_text(self, data: str) -> None:
        raise ConnectionResetError("socket closed")


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def report_store():
    return InMemoryReportStore()


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def service(store, notifier, report_store, clock):
    return RandomChatService(store=store, notifier=notifier, report_store=report_store, clock=clock)


@pytest.fixture
def connect(notifier):
    """Register a recording connection on a user's channel"""
    def _connect(user_id: str) -> RecordingConnection:
        conn = RecordingConnection()
        notifier.connect(user_id, conn)
        return conn
    return _connect
