"""
Progress reporting for environment stack creation.

Raw CloudFormation resource events are translated into a small, fixed set of
milestones (network, gateway, subnets, route tables, cluster). This is purely
informational: nothing here influences whether a deployment succeeds.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from stack_gateway import ResourceEvent

TEXT_VPC = "Virtual private cloud on 2 availability zones to hold your services"
TEXT_INTERNET_GATEWAY = "Internet gateway to enable access to the internet"
TEXT_PUBLIC_SUBNETS = "Public subnets for internet facing services"
TEXT_PRIVATE_SUBNETS = "Private subnets for services that can't be reached from the internet"
TEXT_ROUTE_TABLES = "Routing tables for services to talk with each other"
TEXT_ECS_CLUSTER = "ECS Cluster to hold your services"

STATUS_NOT_STARTED = "not started"
STATUS_IN_PROGRESS = "in progress"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"

ResourceMatcher = Callable[[ResourceEvent], bool]

ENV_MATCHERS: Dict[str, ResourceMatcher] = {
    TEXT_VPC: lambda e: e.type == "AWS::EC2::VPC",
    TEXT_INTERNET_GATEWAY: lambda e: e.type in ("AWS::EC2::InternetGateway", "AWS::EC2::VPCGatewayAttachment"),
    TEXT_PUBLIC_SUBNETS: lambda e: e.type == "AWS::EC2::Subnet" and e.logical_name.startswith("Public"),
    TEXT_PRIVATE_SUBNETS: lambda e: e.type == "AWS::EC2::Subnet" and e.logical_name.startswith("Private"),
    TEXT_ROUTE_TABLES: lambda e: "Route" in e.logical_name,
    TEXT_ECS_CLUSTER: lambda e: e.type == "AWS::ECS::Cluster",
}


def environment_progress_order(importing_vpc: bool) -> List[str]:
    """Milestones shown for an environment; imported VPCs skip the network ones."""
    order = []
    if not importing_vpc:
        order.extend([
            TEXT_VPC,
            TEXT_INTERNET_GATEWAY,
            TEXT_PUBLIC_SUBNETS,
            TEXT_PRIVATE_SUBNETS,
            TEXT_ROUTE_TABLES,
        ])
    order.append(TEXT_ECS_CLUSTER)
    return order


@dataclass
class Milestone:
    text: str
    status: str = STATUS_NOT_STARTED
    reason: str = ""


def _resource_status(raw_status: str) -> str:
    if raw_status.endswith("_FAILED"):
        return STATUS_FAILED
    if raw_status.endswith("_COMPLETE"):
        return STATUS_COMPLETE
    return STATUS_IN_PROGRESS


@dataclass
class EnvironmentProgress:
    """Accumulates resource events and reports milestone changes."""
    order: List[str]
    matchers: Dict[str, ResourceMatcher] = field(default_factory=lambda: dict(ENV_MATCHERS))
    resources: Dict[str, Dict[str, ResourceEvent]] = field(default_factory=dict)

    def milestones(self) -> List[Milestone]:
        result = []
        for text in self.order:
            latest = list(self.resources.get(text, {}).values())
            if not latest:
                result.append(Milestone(text))
                continue
            statuses = [_resource_status(e.status) for e in latest]
            if STATUS_FAILED in statuses:
                failed = next(e for e in latest if _resource_status(e.status) == STATUS_FAILED)
                result.append(Milestone(text, STATUS_FAILED, failed.status_reason))
            elif STATUS_IN_PROGRESS in statuses:
                result.append(Milestone(text, STATUS_IN_PROGRESS))
            else:
                result.append(Milestone(text, STATUS_COMPLETE))
        return result

    def add_events(self, events: List[ResourceEvent]) -> List[Milestone]:
        """
        Record new events and return the milestones whose status changed.

        Events that match no milestone are ignored.
        """
        before = {m.text: m.status for m in self.milestones()}
        for event in events:
            text = self._match(event)
            if text is None:
                continue
            self.resources.setdefault(text, {})[event.logical_name] = event
        return [m for m in self.milestones() if before.get(m.text) != m.status]

    def on_events(self, events: List[ResourceEvent]) -> None:
        for milestone in self.add_events(events):
            line = f"  - {milestone.text}: {milestone.status}"
            if milestone.reason:
                line += f" ({milestone.reason})"
            print(line)

    def _match(self, event: ResourceEvent) -> Optional[str]:
        for text in self.order:
            matcher = self.matchers.get(text)
            if matcher is not None and matcher(event):
                return text
        return None
