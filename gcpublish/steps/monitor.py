"""
Monitor step: read compliance telemetry for a published configuration.

Two sources are combined:
- Policy Insights: latest policy states for the assignment, newest first
- Resource Graph: guestconfigurationresources counts per compliance status,
  plus the machines currently reporting NonCompliant
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from azure.mgmt.policyinsights.models import QueryOptions
from azure.mgmt.resourcegraph.models import QueryRequest, QueryRequestOptions

from gcpublish.errors import PreconditionError
from gcpublish.session import AzureSession, platform_errors
from gcpublish.steps.base import Step


NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
REPORTED_STATES = {"compliant", "noncompliant"}


@dataclass
class ComplianceRecord:
    timestamp: Optional[datetime]
    resource_id: str
    compliance_state: str
    policy_assignment_name: Optional[str] = None
    policy_definition_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "resource_id": self.resource_id,
            "compliance_state": self.compliance_state,
            "policy_assignment_name": self.policy_assignment_name,
            "policy_definition_name": self.policy_definition_name,
        }


@dataclass
class MonitorResult:
    records: List[ComplianceRecord] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)
    non_compliant_machines: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def compliant(self) -> Optional[bool]:
        """
        None until some machine reported Compliant or NonCompliant.

        Once a result exists, any other state (Pending included) means the
        rollout is not yet compliant.
        """
        states = {r.compliance_state.lower() for r in self.records}
        states.update(status.lower() for status, count in self.summary.items() if count)
        if not states & REPORTED_STATES:
            return None
        return states == {"compliant"}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compliant": self.compliant,
            "records": [r.to_dict() for r in self.records],
            "summary": self.summary,
            "non_compliant_machines": self.non_compliant_machines,
        }


class MonitorStep(Step):
    """Queries compliance for a policy assignment and its guest configuration."""

    name = "monitor"

    def __init__(
        self,
        session: AzureSession,
        assignment_name: str,
        configuration_name: Optional[str] = None,
        top: int = 50,
        resource_group: Optional[str] = None,
        logger: logging.Logger | None = None,
    ):
        super().__init__(logger)
        self.session = session
        self.assignment_name = assignment_name
        self.configuration_name = configuration_name or assignment_name
        self.top = top
        self.resource_group = resource_group

    def validate(self) -> None:
        for label, value in (("assignment", self.assignment_name), ("configuration", self.configuration_name)):
            if not value or not NAME_PATTERN.match(value):
                raise PreconditionError(f"Invalid {label} name: {value!r}")
        if self.top <= 0:
            raise PreconditionError("top must be positive")

    def execute(self) -> MonitorResult:
        result = MonitorResult(
            records=self.compliance_records(),
            summary=self.status_summary(),
            non_compliant_machines=self.non_compliant_machines(),
        )

        if result.compliant is None:
            self.logger.info(f"No compliance data reported yet for {self.assignment_name}")
        elif not result.compliant:
            self.logger.warning(
                f"{self.assignment_name} is not compliant: "
                f"{len(result.non_compliant_machines)} machine(s) reporting NonCompliant",
                extra={"step": self.name, "event": "non_compliant", "metadata": result.summary},
            )
        return result

    def compliance_records(self) -> List[ComplianceRecord]:
        """Latest policy states for the assignment, newest first."""
        options = QueryOptions(top=self.top, order_by="timestamp desc")
        states = self.session.policy_insights.policy_states

        with platform_errors(f"Querying policy states for {self.assignment_name}"):
            if self.resource_group:
                pages = states.list_query_results_for_resource_group_level_policy_assignment(
                    policy_states_resource="latest",
                    subscription_id=self.session.subscription_id,
                    resource_group_name=self.resource_group,
                    policy_assignment_name=self.assignment_name,
                    query_options=options,
                )
            else:
                pages = states.list_query_results_for_subscription_level_policy_assignment(
                    policy_states_resource="latest",
                    subscription_id=self.session.subscription_id,
                    policy_assignment_name=self.assignment_name,
                    query_options=options,
                )
            records = [
                ComplianceRecord(
                    timestamp=state.timestamp,
                    resource_id=state.resource_id,
                    compliance_state=state.compliance_state or "Unknown",
                    policy_assignment_name=state.policy_assignment_name,
                    policy_definition_name=state.policy_definition_name,
                )
                for state in pages
            ]

        records.sort(key=lambda r: r.timestamp or datetime.min, reverse=True)
        return records[: self.top]

    def _graph_query(self, query: str) -> List[Dict[str, Any]]:
        request = QueryRequest(
            subscriptions=[self.session.subscription_id],
            query=query,
            options=QueryRequestOptions(result_format="objectArray"),
        )
        with platform_errors("Resource Graph query"):
            response = self.session.resource_graph.resources(request)
        return list(response.data or [])

    def status_summary(self) -> Dict[str, int]:
        rows = self._graph_query(
            "guestconfigurationresources"
            f" | where name =~ '{self.configuration_name}'"
            " | extend complianceStatus = tostring(properties.complianceStatus)"
            " | summarize machines = count() by complianceStatus"
        )
        return {row["complianceStatus"] or "Pending": int(row["machines"]) for row in rows}

    def non_compliant_machines(self) -> List[Dict[str, Any]]:
        return self._graph_query(
            "guestconfigurationresources"
            f" | where name =~ '{self.configuration_name}'"
            " | where tostring(properties.complianceStatus) == 'NonCompliant'"
            " | project machine = tostring(split(properties.targetResourceId, '/')[8]),"
            " resourceGroup, lastChecked = tostring(properties.lastComplianceStatusChecked)"
            " | order by machine asc"
        )
