"""
Tests for helpdesk Pydantic models.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from helpdesk_sync.models import (
    HDPaging,
    HDSlaResponse,
    HDTeam,
    HDTicket,
    HDTicketSearchResponse,
    HDTicketSla,
)


class TestHDTicket:
    """Tests for HDTicket model."""

    def test_parse_ticket(self, sample_ticket_data):
        """Test parsing a ticket from API response."""
        ticket = HDTicket.model_validate(sample_ticket_data)

        assert ticket.ticket_id == "101"
        assert ticket.ticket_number == 1101
        assert ticket.subject == "Projector in room 204 will not power on"
        assert ticket.priority == "High"
        assert ticket.owner.name == "Jordan Lee"
        assert ticket.team.team_id == "3"
        assert ticket.team.team_name == "Tier 1"
        assert ticket.location.name == "North Campus"

    def test_timestamps_are_utc(self, sample_ticket_data):
        """Naive and offset timestamps both come out as UTC."""
        sample_ticket_data["CreatedDate"] = "2024-09-03T14:05:00"
        sample_ticket_data["ModifiedDate"] = "2024-09-04T10:00:00+02:00"
        ticket = HDTicket.model_validate(sample_ticket_data)

        assert ticket.created_at == datetime(2024, 9, 3, 14, 5, tzinfo=timezone.utc)
        assert ticket.modified_at == datetime(2024, 9, 4, 8, 0, tzinfo=timezone.utc)
        assert ticket.closed_at is None

    def test_status_normalization(self, sample_ticket_data):
        """Test status normalization."""
        sample_ticket_data["Status"] = "  Waiting on Customer  "
        ticket = HDTicket.model_validate(sample_ticket_data)
        assert ticket.status == "Waiting on Customer"

    def test_default_status(self, sample_ticket_data):
        """Test default status when None."""
        sample_ticket_data["Status"] = None
        ticket = HDTicket.model_validate(sample_ticket_data)
        assert ticket.status == "New"

    def test_missing_created_date_rejected(self, sample_ticket_data):
        """CreatedDate drives the watermark, so it is required."""
        del sample_ticket_data["CreatedDate"]
        with pytest.raises(ValidationError):
            HDTicket.model_validate(sample_ticket_data)

    def test_unknown_fields_ignored(self, sample_ticket_data):
        sample_ticket_data["CustomFields"] = [{"Name": "Asset Tag", "Value": "A-1"}]
        ticket = HDTicket.model_validate(sample_ticket_data)
        assert not hasattr(ticket, "CustomFields")

    def test_snake_case_names_accepted(self):
        """Models validate from field names as well as aliases."""
        ticket = HDTicket(ticket_id=5, created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert ticket.ticket_id == "5"
        assert ticket.status == "New"


class TestHDTicketSla:
    """Tests for SLA lookup models."""

    def test_parse_sla(self, sample_sla_data):
        item = HDTicketSla.model_validate(sample_sla_data)

        assert item.ticket_id == "101"
        assert item.sla.name == "Standard Support"
        assert len(item.metrics) == 2
        assert item.metrics[0].threshold_minutes == 60
        assert item.metrics[1].is_running is True

    def test_ticket_without_policy(self):
        item = HDTicketSla.model_validate({"TicketId": 9, "Sla": None})
        assert item.sla is None
        assert item.metrics == []

    def test_sla_response(self, sample_sla_data):
        response = HDSlaResponse.model_validate({"Items": [sample_sla_data]})
        assert response.items[0].ticket_id == "101"


class TestHDTeam:
    """Tests for HDTeam model."""

    def test_parse_team(self, sample_team_data):
        team = HDTeam.model_validate(sample_team_data[1])
        assert team.team_id == "4"
        assert team.team_name == "Network"
        assert team.is_active is False


class TestPaginatedResponses:
    """Tests for paginated response models."""

    def test_search_response(self, sample_ticket_data):
        """Test parsing the ticket search response."""
        response = HDTicketSearchResponse.model_validate({
            "Items": [sample_ticket_data],
            "Paging": {"TotalRows": 37},
        })

        assert len(response.items) == 1
        assert response.paging.row_count == 37

    def test_paging_total_fallback(self):
        """Endpoints that report Total instead of TotalRows."""
        assert HDPaging.model_validate({"Total": 12}).row_count == 12
        assert HDPaging.model_validate({}).row_count is None

    def test_empty_response(self):
        response = HDTicketSearchResponse.model_validate({})
        assert response.items == []
        assert response.paging.row_count is None
