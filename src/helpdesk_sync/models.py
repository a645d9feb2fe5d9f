"""
Pydantic models for helpdesk API responses.

The API speaks PascalCase JSON; fields are declared with snake_case names and
PascalCase aliases so either form validates.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class HDModel(BaseModel):
    """Base model: accept aliases or field names, ignore unknown keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HDNamedRef(HDModel):
    """A lightweight {Id, Name} reference embedded in other payloads."""

    id: str | None = Field(None, alias="Id")
    name: str | None = Field(None, alias="Name")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str | None:
        return None if v is None else str(v)


class HDTeamRef(HDModel):
    """Team assignment embedded in a ticket."""

    team_id: str | None = Field(None, alias="TeamId")
    team_name: str | None = Field(None, alias="TeamName")

    @field_validator("team_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str | None:
        return None if v is None else str(v)


class HDTeam(HDModel):
    """Entry of the teams reference list."""

    team_id: str = Field(alias="TeamId")
    team_name: str | None = Field(None, alias="TeamName")
    is_active: bool = Field(True, alias="IsActive")

    @field_validator("team_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


class HDTicket(HDModel):
    """Helpdesk ticket - the primary record type."""

    ticket_id: str = Field(alias="TicketId")
    ticket_number: int | None = Field(None, alias="TicketNumber")
    subject: str | None = Field(None, alias="Subject")
    status: str = Field("New", alias="Status")
    is_closed: bool = Field(False, alias="IsClosed")
    priority: str | None = Field(None, alias="Priority")

    # Timestamps
    created_at: datetime = Field(alias="CreatedDate")
    modified_at: datetime | None = Field(None, alias="ModifiedDate")
    closed_at: datetime | None = Field(None, alias="ClosedDate")

    # Relationships
    owner: HDNamedRef | None = Field(None, alias="Owner")
    assigned_to: HDNamedRef | None = Field(None, alias="AssignedToUser")
    team: HDTeamRef | None = Field(None, alias="AssignedToTeam")
    location: HDNamedRef | None = Field(None, alias="Location")
    category: HDNamedRef | None = Field(None, alias="Category")

    @field_validator("ticket_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> str:
        """Normalize status values."""
        if v is None:
            return "New"
        return str(v).strip()

    @field_validator("created_at", "modified_at", "closed_at")
    @classmethod
    def to_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class HDSlaMetric(HDModel):
    """One timer of an SLA policy (e.g. Response, Resolution)."""

    name: str = Field(alias="Name")
    threshold_minutes: float | None = Field(None, alias="ThresholdMinutes")
    actual_minutes: float | None = Field(None, alias="ActualMinutes")
    is_running: bool = Field(False, alias="IsRunning")


class HDTicketSla(HDModel):
    """SLA state for one ticket; `sla` is None when no policy is assigned."""

    ticket_id: str = Field(alias="TicketId")
    sla: HDNamedRef | None = Field(None, alias="Sla")
    metrics: list[HDSlaMetric] = Field(default_factory=list, alias="Metrics")

    @field_validator("ticket_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


class TicketMetrics(HDModel):
    """Flattened enrichment block written alongside a ticket row."""

    sla_name: str | None = None
    response_threshold: float | None = None
    response_actual: float | None = None
    response_breached: bool = False
    resolution_threshold: float | None = None
    resolution_actual: float | None = None
    resolution_breached: bool = False
    is_running: bool = False


# API Response wrappers


class HDPaging(HDModel):
    """Paging block; different endpoints report TotalRows or Total."""

    total_rows: int | None = Field(None, alias="TotalRows")
    total: int | None = Field(None, alias="Total")

    @property
    def row_count(self) -> int | None:
        """Total rows for the filter, or None when the response reports neither."""
        if self.total_rows is not None:
            return self.total_rows
        return self.total


class HDTicketSearchResponse(HDModel):
    """Response from POST /tickets"""

    items: list[HDTicket] = Field(default_factory=list, alias="Items")
    paging: HDPaging = Field(default_factory=HDPaging, alias="Paging")


class HDTeamsResponse(HDModel):
    """Response from GET /teams/all"""

    items: list[HDTeam] = Field(default_factory=list, alias="Items")


class HDSlaResponse(HDModel):
    """Response from POST /tickets/slas"""

    items: list[HDTicketSla] = Field(default_factory=list, alias="Items")
