"""
Tests for ticket row building and SLA enrichment.
"""

from datetime import datetime, timezone

from helpdesk_sync.enrichment import EnrichmentFetcher, summarize_sla
from helpdesk_sync.models import HDTeam, HDTicket, HDTicketSla, TicketMetrics
from helpdesk_sync.row_builder import (
    ENRICHMENT_OFFSET,
    TICKET_COLUMNS,
    TICKET_ROW_COLUMNS,
    TicketRowBuilder,
    format_timestamp,
)


class TestTicketRowBuilder:
    """Tests for TicketRowBuilder."""

    def test_row_layout(self, sample_ticket_data):
        ticket = HDTicket.model_validate(sample_ticket_data)
        row = TicketRowBuilder().build_ticket_row(ticket)

        assert len(row) == len(TICKET_ROW_COLUMNS)
        assert row[0] == "101"
        assert row[TICKET_COLUMNS.index("created_at")] == "2024-09-03T14:05:00.000Z"
        assert row[TICKET_COLUMNS.index("owner")] == "Jordan Lee"
        assert row[TICKET_COLUMNS.index("team_name")] == "Tier 1"

    def test_unenriched_row_keeps_width(self, sample_ticket_data):
        ticket = HDTicket.model_validate(sample_ticket_data)
        row = TicketRowBuilder().build_ticket_row(ticket, None)

        assert ENRICHMENT_OFFSET == len(TICKET_COLUMNS)
        assert row[ENRICHMENT_OFFSET:] == [None, None, None, False, None, None, False, False]

    def test_enrichment_at_fixed_offset(self, sample_ticket_data):
        ticket = HDTicket.model_validate(sample_ticket_data)
        metrics = TicketMetrics(sla_name="Standard Support", response_threshold=60, response_breached=True)

        row = TicketRowBuilder().build_ticket_row(ticket, metrics)

        assert row[ENRICHMENT_OFFSET] == "Standard Support"
        assert row[ENRICHMENT_OFFSET + 1] == 60
        assert row[ENRICHMENT_OFFSET + 3] is True

    def test_missing_refs_are_none(self, sample_ticket_data):
        for key in ("Owner", "AssignedToUser", "AssignedToTeam", "Location", "Category"):
            sample_ticket_data[key] = None
        row = TicketRowBuilder().build_ticket_row(HDTicket.model_validate(sample_ticket_data))
        assert row[TICKET_COLUMNS.index("owner"):ENRICHMENT_OFFSET] == [None] * 6

    def test_team_row(self, sample_team_data):
        team = HDTeam.model_validate(sample_team_data[0])
        assert TicketRowBuilder().build_team_row(team) == ["3", "Tier 1", True]

    def test_format_timestamp(self):
        assert format_timestamp(None) is None
        moment = datetime(2024, 9, 3, 14, 5, 7, 123456, tzinfo=timezone.utc)
        assert format_timestamp(moment) == "2024-09-03T14:05:07.123Z"


class TestSummarizeSla:
    """Tests for flattening SLA timers."""

    def test_breach_and_running(self, sample_sla_data):
        metrics = summarize_sla(HDTicketSla.model_validate(sample_sla_data))

        assert metrics.sla_name == "Standard Support"
        assert metrics.response_threshold == 60
        assert metrics.response_actual == 95
        assert metrics.response_breached is True
        assert metrics.resolution_breached is False
        assert metrics.is_running is True

    def test_missing_actual_is_not_breach(self):
        item = HDTicketSla.model_validate({
            "TicketId": 1,
            "Sla": {"Name": "Fast"},
            "Metrics": [{"Name": "Response", "ThresholdMinutes": 30}],
        })
        metrics = summarize_sla(item)
        assert metrics.response_breached is False
        assert metrics.resolution_threshold is None


class StubClient:
    def __init__(self, items=None, error=None):
        self.items = items or []
        self.error = error
        self.calls = []

    def get_ticket_slas(self, ticket_ids):
        self.calls.append(list(ticket_ids))
        if self.error:
            raise self.error
        return self.items


class TestEnrichmentFetcher:
    """Tests for EnrichmentFetcher."""

    def test_partial_results(self, sample_sla_data):
        items = [
            HDTicketSla.model_validate(sample_sla_data),
            HDTicketSla.model_validate({"TicketId": 102, "Sla": None}),
            HDTicketSla.model_validate({"TicketId": 999, "Sla": {"Name": "Other"}}),
        ]
        client = StubClient(items)

        result = EnrichmentFetcher(client).fetch_for(["101", "102", "103"])

        assert list(result) == ["101"]
        assert client.calls == [["101", "102", "103"]]

    def test_failure_degrades_to_empty(self, oplog):
        client = StubClient(error=RuntimeError("lookup timed out"))

        result = EnrichmentFetcher(client, oplog).fetch_for(["101"])

        assert result == {}
        assert oplog.statuses("enrichment") == ["DEGRADED"]

    def test_empty_batch_makes_no_call(self):
        client = StubClient()
        assert EnrichmentFetcher(client).fetch_for([]) == {}
        assert client.calls == []
