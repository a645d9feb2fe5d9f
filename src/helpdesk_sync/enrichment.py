"""
SLA enrichment.

One batched lookup per page fetches SLA timers for every ticket on it. The
result is partial by nature: tickets without a policy, or missing from the
response, simply have no entry.
"""

import structlog

from helpdesk_sync.client import HelpdeskClient
from helpdesk_sync.models import HDSlaMetric, HDTicketSla, TicketMetrics
from helpdesk_sync.oplog import OperationLog

logger = structlog.get_logger(__name__)

RESPONSE_METRIC = "response"
RESOLUTION_METRIC = "resolution"


def _find_metric(metrics: list[HDSlaMetric], wanted: str) -> HDSlaMetric | None:
    for metric in metrics:
        if wanted in metric.name.strip().lower():
            return metric
    return None


def _breached(metric: HDSlaMetric | None) -> bool:
    if metric is None or metric.threshold_minutes is None or metric.actual_minutes is None:
        return False
    return metric.actual_minutes > metric.threshold_minutes


def summarize_sla(item: HDTicketSla) -> TicketMetrics:
    """Flatten one ticket's SLA timers into the enrichment block."""
    response = _find_metric(item.metrics, RESPONSE_METRIC)
    resolution = _find_metric(item.metrics, RESOLUTION_METRIC)
    return TicketMetrics(
        sla_name=item.sla.name if item.sla else None,
        response_threshold=response.threshold_minutes if response else None,
        response_actual=response.actual_minutes if response else None,
        response_breached=_breached(response),
        resolution_threshold=resolution.threshold_minutes if resolution else None,
        resolution_actual=resolution.actual_minutes if resolution else None,
        resolution_breached=_breached(resolution),
        is_running=any(metric.is_running for metric in item.metrics),
    )


class EnrichmentFetcher:
    """Fetches SLA metrics for a batch of ticket ids."""

    def __init__(self, client: HelpdeskClient, oplog: OperationLog | None = None):
        self.client = client
        self.oplog = oplog

    def fetch_for(self, ticket_ids: list[str]) -> dict[str, TicketMetrics]:
        """
        Return {ticket_id: metrics} for the ids that have SLA data.

        A failed lookup never aborts the batch: it is logged and an empty
        map is returned, so the tickets are written without enrichment.
        """
        if not ticket_ids:
            return {}

        try:
            items = self.client.get_ticket_slas(ticket_ids)
        except Exception as e:
            logger.warning("SLA lookup failed; writing batch without enrichment",
                           tickets=len(ticket_ids), error=str(e))
            if self.oplog is not None:
                self.oplog.record("enrichment", "DEGRADED", tickets=len(ticket_ids), error=str(e))
            return {}

        wanted = set(ticket_ids)
        result: dict[str, TicketMetrics] = {}
        for item in items:
            if item.sla is None or item.ticket_id not in wanted:
                continue
            result[item.ticket_id] = summarize_sla(item)

        missing = len(wanted) - len(result)
        if missing:
            logger.debug("Tickets without SLA data", count=missing)
        return result
