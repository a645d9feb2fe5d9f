"""
Row Builder for Helpdesk Entities

Converts API models into the fixed-width rows stored in the record store.
Enrichment columns always start at ENRICHMENT_OFFSET so downstream readers
can find them without inspecting the layout.
"""

from datetime import datetime
from typing import Any

from helpdesk_sync.models import HDNamedRef, HDTeam, HDTicket, TicketMetrics, ensure_utc

# Bump when the column layout changes
SCHEMA_VERSION = 1

TICKETS_TABLE = "tickets"
TEAMS_TABLE = "teams"

TICKET_COLUMNS = (
    "ticket_id",
    "ticket_number",
    "subject",
    "status",
    "is_closed",
    "priority",
    "created_at",
    "modified_at",
    "closed_at",
    "owner",
    "assigned_to",
    "team_id",
    "team_name",
    "location",
    "category",
)

ENRICHMENT_COLUMNS = (
    "sla_name",
    "response_threshold_min",
    "response_actual_min",
    "response_breached",
    "resolution_threshold_min",
    "resolution_actual_min",
    "resolution_breached",
    "sla_running",
)

ENRICHMENT_OFFSET = len(TICKET_COLUMNS)
TICKET_ROW_COLUMNS = TICKET_COLUMNS + ENRICHMENT_COLUMNS

TEAM_COLUMNS = ("team_id", "team_name", "is_active")


def format_timestamp(dt: datetime | None) -> str | None:
    """ISO 8601 UTC with a trailing Z, or None."""
    dt = ensure_utc(dt)
    if dt is None:
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _name(ref: HDNamedRef | None) -> str | None:
    return ref.name if ref else None


class TicketRowBuilder:
    """Builds record-store rows for tickets and teams."""

    columns = TICKET_ROW_COLUMNS

    def build_ticket_row(
        self,
        ticket: HDTicket,
        metrics: TicketMetrics | None = None,
    ) -> list[Any]:
        """
        Build a ticket row.

        Without metrics the enrichment columns are left empty (None / False)
        but still present, keeping every row the same width.
        """
        row: list[Any] = [
            ticket.ticket_id,
            ticket.ticket_number,
            ticket.subject,
            ticket.status,
            ticket.is_closed,
            ticket.priority,
            format_timestamp(ticket.created_at),
            format_timestamp(ticket.modified_at),
            format_timestamp(ticket.closed_at),
            _name(ticket.owner),
            _name(ticket.assigned_to),
            ticket.team.team_id if ticket.team else None,
            ticket.team.team_name if ticket.team else None,
            _name(ticket.location),
            _name(ticket.category),
        ]
        row.extend(self.build_enrichment(metrics))
        return row

    def build_enrichment(self, metrics: TicketMetrics | None) -> list[Any]:
        if metrics is None:
            return [None, None, None, False, None, None, False, False]
        return [
            metrics.sla_name,
            metrics.response_threshold,
            metrics.response_actual,
            metrics.response_breached,
            metrics.resolution_threshold,
            metrics.resolution_actual,
            metrics.resolution_breached,
            metrics.is_running,
        ]

    def build_team_row(self, team: HDTeam) -> list[Any]:
        return [team.team_id, team.team_name, team.is_active]
