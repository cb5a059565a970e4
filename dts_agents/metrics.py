"""
Usage metrics of an agent, such as the tokens a model call consumed.

Reports go through the dispatcher like every other backend call::

    agent.metrics.for_model("gpt-4o").with_metric("tokens", "total_tokens", 150, "tokens").report()
    yield from agent.metrics.track(ctx).with_metric("activity", "message_count", 1).report()

Tenant, participant, workflow and request IDs are filled in from the message
being handled and the running workflow unless they are set explicitly.
"""

from typing import Optional

from . import context
from .backend import OP_USAGE_REPORT, MetricValue, UsageReport
from .errors import ValidationError
from .messaging import MessageContext
from .stores import AgentCollection

UNKNOWN_SOURCE = "Unknown"


class UsageReportBuilder:
    """Fluent builder for one usage report. Every ``with_*`` call returns the builder."""

    def __init__(self, metrics: "MetricsCollection", message: Optional[MessageContext] = None):
        self._collection = metrics
        self._message = message
        self._report = UsageReport()

    def for_model(self, model: str) -> "UsageReportBuilder":
        self._report.model = model
        return self

    def with_metric(
        self, category: str, type: str, value: float, unit: str = "count"
    ) -> "UsageReportBuilder":
        if not category or not type:
            raise ValidationError("Metric category and type must not be empty")
        self._report.metrics.append(MetricValue(category=category, type=type, value=value, unit=unit))
        return self

    def with_metrics(self, *metrics: tuple) -> "UsageReportBuilder":
        """Add ``(category, type, value[, unit])`` tuples."""
        for metric in metrics:
            self.with_metric(*metric)
        return self

    def with_tenant_id(self, tenant_id: str) -> "UsageReportBuilder":
        self._report.tenant_id = tenant_id
        return self

    def with_user_id(self, participant_id: str) -> "UsageReportBuilder":
        self._report.participant_id = participant_id
        return self

    def with_workflow_id(self, workflow_id: str) -> "UsageReportBuilder":
        self._report.workflow_id = workflow_id
        return self

    def with_request_id(self, request_id: str) -> "UsageReportBuilder":
        self._report.request_id = request_id
        return self

    def from_source(self, source: str) -> "UsageReportBuilder":
        self._report.workflow_type = source
        return self

    def with_custom_identifier(self, identifier: str) -> "UsageReportBuilder":
        self._report.custom_identifier = identifier
        return self

    def with_metadata(self, key_or_items, value: Optional[str] = None) -> "UsageReportBuilder":
        if isinstance(key_or_items, dict):
            self._report.metadata = dict(key_or_items)
        else:
            self._report.metadata = {**(self._report.metadata or {}), key_or_items: value}
        return self

    def build(self) -> UsageReport:
        report = self._report.model_copy(deep=True)
        envelope = self._message.envelope if self._message is not None else None
        wf = context.current_workflow()
        if not report.tenant_id and envelope is not None and envelope.tenant_id:
            report.tenant_id = envelope.tenant_id
        if not report.participant_id and envelope is not None:
            report.participant_id = envelope.participant_id or None
        if not report.request_id and envelope is not None:
            report.request_id = envelope.request_id or None
        if not report.workflow_id and wf is not None:
            report.workflow_id = wf.workflow_id
        if not report.workflow_type:
            report.workflow_type = wf.info.workflow_type if wf is not None else UNKNOWN_SOURCE
        return report

    def report(self):
        """Send the report. A generator inside workflows."""
        return self._collection.report(self.build())


class MetricsCollection(AgentCollection):
    def report(self, report: UsageReport, tenant_id: Optional[str] = None):
        """
        Send ``report`` to the backend. Returns False when the backend did not
        accept it; a failed delivery is logged and never raised.
        """
        if not report.metrics:
            raise ValidationError("A usage report needs at least one metric")
        report = report.model_copy(
            update={
                "tenant_id": self._agent.resolve_tenant(tenant_id or report.tenant_id),
                "agent_name": report.agent_name or self._agent.name,
            }
        )
        return self._executor.execute(OP_USAGE_REPORT, report.model_dump(mode="json"))

    def track(self, message: Optional[MessageContext] = None) -> UsageReportBuilder:
        """Start a report, taking IDs from ``message`` when one is given."""
        return UsageReportBuilder(self, message)

    def for_model(self, model: str) -> UsageReportBuilder:
        return self.track().for_model(model)

    def with_metric(self, category: str, type: str, value: float, unit: str = "count") -> UsageReportBuilder:
        return self.track().with_metric(category, type, value, unit)
