import asyncio
import json
import os
from datetime import datetime, timezone

import httpx
import pytest

import config
from library import Library
from services.http_client import RemoteClient
from services.scheduling import TimerHandle

REMOTE_URL = "https://remote.test/exec"


class FakeClock:
    """Manually advanced clock, seconds since the epoch."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start

    def time(self) -> float:
        return self.t

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.t, tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.t += seconds


class ManualTimers:
    """Timers that only fire when the test advances the fake clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.pending = []

    def schedule(self, delay, factory):
        handle = TimerHandle()
        self.pending.append((self.clock.time() + delay, factory, handle))
        return handle

    def spawn(self, factory):
        self.pending.append((self.clock.time(), factory, TimerHandle()))

    @property
    def active(self):
        return [p for p in self.pending if not p[2].cancelled]

    async def advance(self, seconds: float) -> None:
        self.clock.advance(seconds)
        while True:
            due = [p for p in self.pending if p[0] <= self.clock.time()]
            if not due:
                return
            for entry in due:
                self.pending.remove(entry)
            for _, factory, handle in due:
                if not handle.cancelled:
                    await factory()


class FakeRemote:
    """In-memory stand-in for the spreadsheet endpoint, served over httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.books = []
        self.loans = []
        self.extra = {}
        self.status_code = 200
        self.ok = True
        self.raise_error = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode("utf-8"))
        self.requests.append(body)
        if self.raise_error:
            raise httpx.ConnectError("connection refused", request=request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="error")
        if not self.ok:
            return httpx.Response(200, json={"ok": False, "error": "rejected"})
        if body.get("action") == "push":
            payload = body["payload"]
            self.books = payload["books"]
            self.loans = payload["borrowedBooks"]
            self.extra = payload.get("boyouBooks", {})
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(200, json={
            "ok": True,
            "data": {"books": self.books, "borrowedBooks": self.loans, "boyouBooks": self.extra},
        })

    def actions(self):
        return [r.get("action") for r in self.requests]


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    # No test talks to a real endpoint unless it configures one
    monkeypatch.setattr(config.settings, "remote_url", "")
    monkeypatch.setattr(config.settings, "admin_username", "admin")
    monkeypatch.delenv("LIB_CLI_OUTPUT", raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers(clock):
    return ManualTimers(clock)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def remote_client(remote):
    client = RemoteClient(transport=httpx.MockTransport(remote.handler))
    yield client
    asyncio.run(client.close())


@pytest.fixture
def lib(tmp_path, request):
    # A unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def admin_lib(lib):
    lib.login("admin", "staff")
    return lib


@pytest.fixture
def synced_lib(tmp_path, clock, timers, remote_client):
    """Admin-logged-in library wired to the fake remote, fake clock and manual timers."""
    lib = Library(db_file=str(tmp_path / "synced.db"), clock=clock, timers=timers, client=remote_client)
    lib.login("admin", "staff")
    lib.state.settings.remote_url = REMOTE_URL
    yield lib
    lib.close()
