"""
Tests for environment creation progress milestones.
"""

from progress import (
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_NOT_STARTED,
    TEXT_ECS_CLUSTER,
    TEXT_PUBLIC_SUBNETS,
    TEXT_ROUTE_TABLES,
    TEXT_VPC,
    EnvironmentProgress,
    environment_progress_order,
)
from stack_gateway import ResourceEvent


def event(logical_name, type_, status, reason=""):
    return ResourceEvent(logical_name=logical_name, type=type_, status=status, status_reason=reason)


def statuses(progress):
    return {m.text: m.status for m in progress.milestones()}


def test_imported_vpc_only_tracks_cluster():
    assert environment_progress_order(importing_vpc=True) == [TEXT_ECS_CLUSTER]
    assert environment_progress_order(importing_vpc=False)[0] == TEXT_VPC


def test_milestones_start_not_started():
    progress = EnvironmentProgress(order=environment_progress_order(False))

    assert set(statuses(progress).values()) == {STATUS_NOT_STARTED}


def test_subnet_milestone_waits_for_every_subnet():
    progress = EnvironmentProgress(order=environment_progress_order(False))

    progress.add_events([
        event('PublicSubnet1', 'AWS::EC2::Subnet', 'CREATE_IN_PROGRESS'),
        event('PublicSubnet2', 'AWS::EC2::Subnet', 'CREATE_IN_PROGRESS'),
    ])
    progress.add_events([event('PublicSubnet1', 'AWS::EC2::Subnet', 'CREATE_COMPLETE')])
    assert statuses(progress)[TEXT_PUBLIC_SUBNETS] == STATUS_IN_PROGRESS

    changed = progress.add_events([event('PublicSubnet2', 'AWS::EC2::Subnet', 'CREATE_COMPLETE')])

    assert [m.text for m in changed] == [TEXT_PUBLIC_SUBNETS]
    assert statuses(progress)[TEXT_PUBLIC_SUBNETS] == STATUS_COMPLETE


def test_failure_reason_is_reported(capsys):
    progress = EnvironmentProgress(order=environment_progress_order(False))

    progress.on_events([event('Cluster', 'AWS::ECS::Cluster', 'CREATE_FAILED', 'Resource limit exceeded')])

    assert statuses(progress)[TEXT_ECS_CLUSTER] == STATUS_FAILED
    assert f"  - {TEXT_ECS_CLUSTER}: failed (Resource limit exceeded)" in capsys.readouterr().out


def test_route_matcher_uses_logical_name():
    progress = EnvironmentProgress(order=environment_progress_order(False))

    progress.add_events([event('PublicRouteTable', 'AWS::EC2::RouteTable', 'CREATE_IN_PROGRESS')])

    assert statuses(progress)[TEXT_ROUTE_TABLES] == STATUS_IN_PROGRESS


def test_unmatched_events_are_ignored():
    progress = EnvironmentProgress(order=environment_progress_order(True))

    changed = progress.add_events([event('VPC', 'AWS::EC2::VPC', 'CREATE_COMPLETE')])

    assert changed == []
    assert statuses(progress) == {TEXT_ECS_CLUSTER: STATUS_NOT_STARTED}
