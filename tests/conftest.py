"""
Pytest configuration and fixtures for helpdesk sync tests.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from helpdesk_sync.client import HelpdeskClient
from helpdesk_sync.config import (
    KEY_AUTH_TOKEN,
    KEY_BASE_URL,
    KEY_BATCH_SIZE,
    KEY_PAGE_SIZE,
    KEY_PERIOD_ID,
    KEY_QUANTUM_SECONDS,
    KEY_THROTTLE_MS,
)
from helpdesk_sync.engine import SyncEngine
from helpdesk_sync.lock import SessionLock
from helpdesk_sync.oplog import MemoryOperationLog
from helpdesk_sync.record_store import MemoryRecordStore
from helpdesk_sync.settings_store import MemorySettingsStore

BASE_URL = "https://helpdesk.test/api/v1"


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def make_ticket(ticket_id, created, modified=None, subject=None, **extra) -> dict:
    """Ticket payload in the API's PascalCase shape."""
    payload = {
        "TicketId": ticket_id,
        "TicketNumber": 1000 + int(ticket_id),
        "Subject": subject or f"Ticket {ticket_id}",
        "Status": "Open",
        "IsClosed": False,
        "Priority": "Medium",
        "CreatedDate": created,
        "ModifiedDate": modified,
        "Owner": {"Id": 7, "Name": "Jordan Lee"},
        "AssignedToUser": {"Id": 12, "Name": "Sam Ortiz"},
        "AssignedToTeam": {"TeamId": 3, "TeamName": "Tier 1"},
        "Location": {"Id": 40, "Name": "North Campus"},
        "Category": {"Id": 5, "Name": "Hardware"},
    }
    payload.update(extra)
    return payload


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Drop-in for time.sleep that records waits instead of sleeping."""

    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeHelpdeskAPI:
    """
    In-memory helpdesk API served through httpx.MockTransport.

    Supports the ticket search (CreatedDate / ModifiedDate facets, sorting,
    zero-based paging), the batched SLA lookup, the teams list and
    /users/me. Every request is recorded.
    """

    def __init__(self, clock: FakeClock | None = None):
        self.tickets: list[dict] = []
        self.slas: dict[str, dict] = {}
        self.teams: list[dict] = []
        self.requests: list[dict] = []
        self.forced: dict[str, list[int]] = {}
        self.clock = clock
        self.seconds_per_request = 0.0
        # Set False to answer searches without a Paging block
        self.report_total = True
        # Raw JSON body served for every search instead of the ticket list
        self.search_body: dict | None = None

    def add_tickets(self, *tickets: dict) -> None:
        self.tickets.extend(tickets)

    def fail(self, path: str, *statuses: int) -> None:
        """Answer the next requests to `path` with these status codes."""
        self.forced.setdefault(path, []).extend(statuses)

    def calls_to(self, path: str) -> list[dict]:
        return [r for r in self.requests if r["path"] == path]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/v1")
        body = json.loads(request.content) if request.content else None
        self.requests.append({
            "method": request.method,
            "path": path,
            "params": dict(request.url.params),
            "body": body,
            "headers": dict(request.headers),
        })
        if self.clock is not None:
            self.clock.advance(self.seconds_per_request)

        pending = self.forced.get(path)
        if pending:
            status = pending.pop(0)
            return httpx.Response(status, text=f"forced {status}")

        if path == "/tickets/slas":
            return self._slas(body)
        if path == "/tickets":
            return self._search(request.url.params, body)
        if path == "/teams/all":
            return httpx.Response(200, json=self.teams)
        if path == "/users/me":
            return httpx.Response(200, json={"Id": 1, "Name": "Sync Service"})
        return httpx.Response(404, text="no such endpoint")

    def _search(self, params, body) -> httpx.Response:
        if self.search_body is not None:
            return httpx.Response(200, json=self.search_body)
        matched = list(self.tickets)
        for facet in (body or {}).get("Filters", []):
            field = facet["Facet"]
            start = _parse(facet["Start"]) if facet.get("Start") else None
            end = _parse(facet["End"]) if facet.get("End") else None

            def keep(ticket, field=field, start=start, end=end):
                value = ticket.get(field)
                if value is None:
                    return False
                moment = _parse(value)
                if start is not None and moment < start:
                    return False
                if end is not None and moment > end:
                    return False
                return True

            matched = [t for t in matched if keep(t)]

        sort_field = params.get("$o", "CreatedDate ASC").split()[0]
        matched.sort(key=lambda t: (_parse(t[sort_field]), int(t["TicketId"])))

        page = int(params.get("$p", 0))
        size = int(params.get("$s", 100))
        items = matched[page * size:(page + 1) * size]
        if not self.report_total:
            return httpx.Response(200, json={"Items": items})
        return httpx.Response(200, json={"Items": items, "Paging": {"TotalRows": len(matched)}})

    def _slas(self, body) -> httpx.Response:
        wanted = [str(f["Id"]) for f in (body or {}).get("Filters", [])]
        items = [self.slas[ticket_id] for ticket_id in wanted if ticket_id in self.slas]
        return httpx.Response(200, json={"Items": items})


# =============================================================================
# Payload fixtures
# =============================================================================

@pytest.fixture
def sample_ticket_data():
    """Sample ticket data from the search endpoint."""
    return make_ticket(
        101,
        "2024-09-03T14:05:00Z",
        modified="2024-09-04T08:00:00Z",
        subject="Projector in room 204 will not power on",
        Priority="High",
    )


@pytest.fixture
def sample_sla_data():
    """Sample SLA lookup item for ticket 101."""
    return {
        "TicketId": 101,
        "Sla": {"Id": 2, "Name": "Standard Support"},
        "Metrics": [
            {"Name": "First Response", "ThresholdMinutes": 60, "ActualMinutes": 95, "IsRunning": False},
            {"Name": "Resolution", "ThresholdMinutes": 2880, "ActualMinutes": 600, "IsRunning": True},
        ],
    }


@pytest.fixture
def sample_team_data():
    return [
        {"TeamId": 3, "TeamName": "Tier 1", "IsActive": True},
        {"TeamId": 4, "TeamName": "Network", "IsActive": False},
    ]


# =============================================================================
# Infrastructure fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def fake_api(clock):
    return FakeHelpdeskAPI(clock=clock)


@pytest.fixture
def oplog():
    return MemoryOperationLog()


@pytest.fixture
def base_settings():
    """Minimal valid live settings for a historical school year."""
    return {
        KEY_BASE_URL: BASE_URL,
        KEY_AUTH_TOKEN: "test-token-0123456789",
        KEY_PAGE_SIZE: 2,
        KEY_BATCH_SIZE: 2,
        KEY_THROTTLE_MS: 0,
        KEY_PERIOD_ID: "2023-2024",
        KEY_QUANTUM_SECONDS: 270,
    }


@pytest.fixture
def settings_store(base_settings):
    return MemorySettingsStore(base_settings)


@pytest.fixture
def record_store():
    return MemoryRecordStore()


@pytest.fixture
def make_client(fake_api, oplog, sleep_recorder):
    """Factory building a client wired to the fake API."""

    def _make(**kwargs):
        options = {
            "base_url": BASE_URL,
            "api_token": "test-token-0123456789",
            "throttle_ms": 0,
            "oplog": oplog,
            "sleep": sleep_recorder,
            "transport": fake_api.transport(),
        }
        options.update(kwargs)
        return HelpdeskClient(**options)

    return _make


@pytest.fixture
def make_engine(tmp_path, settings_store, record_store, fake_api, oplog, clock, sleep_recorder):
    """Factory building a SyncEngine over in-memory stores and the fake API."""

    def _make(now=None, **kwargs):
        def client_factory(settings):
            return HelpdeskClient(
                base_url=settings.base_url,
                api_token=settings.api_token,
                site_id=settings.site_id,
                throttle_ms=settings.throttle_ms,
                oplog=oplog,
                sleep=sleep_recorder,
                transport=fake_api.transport(),
            )

        options = {
            "settings_store": settings_store,
            "record_store": record_store,
            "lock": SessionLock(tmp_path / "sync.lock"),
            "oplog": oplog,
            "client_factory": client_factory,
            "env": {},
            "clock": clock,
            "sleep": sleep_recorder,
            "interactive_timeout": 0,
        }
        if now is not None:
            options["now"] = now if callable(now) else (lambda: now)
        options.update(kwargs)
        return SyncEngine(**options)

    return _make


@pytest.fixture
def utc():
    """Shortcut for building aware UTC datetimes in tests."""

    def _utc(*args):
        return datetime(*args, tzinfo=timezone.utc)

    return _utc


@pytest.fixture
def ticket():
    """Factory for ticket payloads: ticket(id, created, modified=None, ...)."""
    return make_ticket
