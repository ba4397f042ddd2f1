"""
Stack deployer for environment lifecycle scripts.

This module provides create-or-update and delete orchestration on top of the
CloudFormation gateway:
- Create a stack, switching to an update when it already exists
- Wait for terminal states
- Enrich failures with the first failure reason found in the stack events
- Stream new stack events while an operation is in progress
"""

import sys
import time
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Set

from stack_config import StackConfiguration, to_stack_spec
from stack_gateway import (
    ResourceEvent,
    StackAlreadyExistsError,
    StackGateway,
    StackGatewayError,
    StackNotFoundError,
)

DEFAULT_POLL_INTERVAL_SECONDS = 3


class StackDeploymentError(Exception):
    """Exception raised when a stack operation fails."""

    def __init__(self, stack_name: str, message: str):
        super().__init__(message)
        self.stack_name = stack_name


class StackDeployer:
    """Deploys and deletes stacks and explains why they failed."""

    def __init__(
        self,
        gateway: StackGateway,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.gateway = gateway
        self.poll_interval_seconds = poll_interval_seconds
        self.sleep = sleep

    def deploy_and_wait(
        self,
        conf: StackConfiguration,
        role_arn: Optional[str] = None,
        termination_protection: bool = False
    ) -> None:
        """
        Create the stack, or update it if it already exists, and wait for the result.

        An update with nothing to change succeeds without waiting.

        Args:
            conf: Stack configuration to deploy
            role_arn: Optional CloudFormation execution role
            termination_protection: Enable termination protection on create

        Raises:
            StackDeploymentError: If the create or update fails
        """
        spec = to_stack_spec(conf, role_arn=role_arn, termination_protection=termination_protection)
        print(f"Deploying stack: {spec.name}")
        try:
            self.gateway.create_and_wait(spec)
            print(f"Stack {spec.name} created successfully")
            return
        except StackAlreadyExistsError:
            print(f"Stack {spec.name} already exists, updating it instead")
        except StackGatewayError as e:
            raise self._enrich(spec.name, e) from e

        try:
            self.gateway.update_and_wait(spec)
        except StackGatewayError as e:
            raise self._enrich(spec.name, e) from e
        print(f"Stack {spec.name} updated successfully")

    def create_and_wait(
        self,
        conf: StackConfiguration,
        role_arn: Optional[str] = None,
        on_events: Optional[Callable[[List[ResourceEvent]], None]] = None
    ) -> None:
        """
        Create a stack and wait for it, reporting its events as they happen.

        Unlike deploy_and_wait, an existing stack is reported to the caller.

        Args:
            conf: Stack configuration to create
            role_arn: Optional CloudFormation execution role
            on_events: Optional callback receiving batches of new stack events

        Raises:
            StackAlreadyExistsError: If the stack already exists
            StackDeploymentError: If the creation fails
        """
        spec = to_stack_spec(conf, role_arn=role_arn)
        started_at = datetime.now()
        try:
            self.gateway.create(spec)
        except StackAlreadyExistsError:
            raise
        except StackGatewayError as e:
            raise self._enrich(spec.name, e) from e
        print(f"Creating stack: {spec.name}")

        if on_events is not None:
            try:
                for events in self.stream_events(spec.name, since=started_at):
                    on_events(events)
            except StackGatewayError as e:
                print(f"Warning: stopped streaming events for stack {spec.name}: {e}", file=sys.stderr)

        try:
            self.gateway.wait_for_create(spec.name)
        except StackGatewayError as e:
            raise self._enrich(spec.name, e) from e

    def delete_and_wait(self, stack_name: str, role_arn: Optional[str] = None) -> None:
        """
        Delete a stack and wait until it is gone. A missing stack counts as deleted.

        Raises:
            StackDeploymentError: If the deletion fails
        """
        try:
            self.gateway.delete_and_wait(stack_name, role_arn=role_arn)
        except StackNotFoundError:
            print(f"Stack {stack_name} does not exist, nothing to delete")
            return
        except StackGatewayError as e:
            raise self._enrich(stack_name, e) from e
        print(f"Stack {stack_name} deleted successfully")

    def error_events(self, stack_name: str) -> List[ResourceEvent]:
        """Return the events of a stack that carry a failure reason, newest first."""
        return [
            event for event in self.gateway.list_stack_events(stack_name)
            if 'FAILED' in event.status and event.status_reason
        ]

    def stream_events(
        self,
        stack_name: str,
        since: Optional[datetime] = None
    ) -> Iterator[List[ResourceEvent]]:
        """
        Yield batches of new stack events, oldest first, until the stack stops progressing.

        Args:
            stack_name: Name of the stack to follow
            since: Ignore events older than this timestamp

        Yields:
            Lists of events not yet seen
        """
        seen: Set[str] = set()
        while True:
            status = self.gateway.describe_stack(stack_name).status
            new_events = []
            for event in reversed(self.gateway.list_stack_events(stack_name)):
                key = event.event_id or f"{event.logical_name}/{event.status}/{event.timestamp}"
                if key in seen:
                    continue
                seen.add(key)
                if since is not None and event.timestamp is not None and _naive(event.timestamp) < since:
                    continue
                new_events.append(event)
            if new_events:
                yield new_events
            if status.is_terminal():
                return
            self.sleep(self.poll_interval_seconds)

    def _enrich(self, stack_name: str, err: Exception) -> StackDeploymentError:
        try:
            events = self.error_events(stack_name)
        except StackGatewayError as describe_err:
            return StackDeploymentError(stack_name, f"{err}: describe stack: {describe_err}")
        if not events:
            return StackDeploymentError(stack_name, str(err))
        return StackDeploymentError(stack_name, f"{err}: {events[0].status_reason}")


def _naive(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp
    return timestamp.astimezone().replace(tzinfo=None)
