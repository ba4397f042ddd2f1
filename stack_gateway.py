"""
CloudFormation gateway for environment lifecycle scripts.

This module wraps the boto3 CloudFormation client with typed operations:
- Create, update and delete stacks, optionally waiting for a terminal state
- Describe stacks (status, parameters, outputs, tags)
- List stack events and read template bodies
- Classify ClientErrors into "not found", "already exists" and
  "update in progress" conditions
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from stack_config import StackSpec, StackStatus

CAPABILITIES = ['CAPABILITY_IAM', 'CAPABILITY_NAMED_IAM', 'CAPABILITY_AUTO_EXPAND']

DEFAULT_WAIT_DELAY_SECONDS = 3
DEFAULT_WAIT_MAX_ATTEMPTS = 1200

_NO_UPDATES_MESSAGE = "No updates are to be performed"
_UPDATE_IN_PROGRESS_MESSAGE = "_IN_PROGRESS state and can not be updated"


class StackGatewayError(Exception):
    """Exception raised when a CloudFormation call fails."""

    def __init__(self, stack_name: str, message: str):
        super().__init__(message)
        self.stack_name = stack_name


class StackNotFoundError(StackGatewayError):
    """The stack does not exist."""

    def __init__(self, stack_name: str):
        super().__init__(stack_name, f"stack named {stack_name} cannot be found")


class StackAlreadyExistsError(StackGatewayError):
    """A create call targeted a stack that already exists."""

    def __init__(self, stack_name: str):
        super().__init__(stack_name, f"stack {stack_name} already exists")


class StackUpdateInProgressError(StackGatewayError):
    """Another operation is in flight on the stack, so it cannot be updated yet."""

    def __init__(self, stack_name: str, message: Optional[str] = None):
        super().__init__(
            stack_name,
            message or f"stack {stack_name} is currently being updated and cannot be deployed to"
        )


class StackWaitError(StackGatewayError):
    """Waiting for a stack to reach a terminal state failed."""

    def __init__(self, stack_name: str, status: StackStatus, message: str):
        super().__init__(stack_name, message)
        self.status = status


@dataclass
class ResourceEvent:
    """A single stack event, used for progress reporting and error enrichment."""
    logical_name: str
    type: str
    status: str
    status_reason: str = ""
    timestamp: Optional[datetime] = None
    event_id: str = ""


@dataclass
class StackDescription:
    """Subset of describe-stacks output the scripts care about."""
    name: str
    stack_id: str
    status: StackStatus
    parameters: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)


def error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def error_message(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Message', '')


def is_no_update_error(error: ClientError) -> bool:
    return error_code(error) == 'ValidationError' and _NO_UPDATES_MESSAGE in error_message(error)


def is_not_found_error(error: ClientError) -> bool:
    return error_code(error) == 'ValidationError' and 'does not exist' in error_message(error)


def is_update_in_progress_error(error: Exception) -> bool:
    """Report whether an error says the stack is busy with another operation."""
    if isinstance(error, StackUpdateInProgressError):
        return True
    message = error_message(error) if isinstance(error, ClientError) else str(error)
    return _UPDATE_IN_PROGRESS_MESSAGE in message


def classify_error(stack_name: str, error: ClientError) -> StackGatewayError:
    """
    Convert a ClientError into the matching typed gateway error.

    Args:
        stack_name: Name of the stack the call targeted
        error: The ClientError raised by boto3

    Returns:
        A StackGatewayError subclass describing the condition
    """
    code = error_code(error)
    message = error_message(error)
    if code == 'AlreadyExistsException':
        return StackAlreadyExistsError(stack_name)
    if is_not_found_error(error):
        return StackNotFoundError(stack_name)
    if is_update_in_progress_error(error):
        return StackUpdateInProgressError(stack_name, message)
    return StackGatewayError(stack_name, f"{code}: {message}" if code else str(error))


class StackGateway:
    """Typed wrapper around the CloudFormation API."""

    def __init__(
        self,
        cfn_client=None,
        region: Optional[str] = None,
        wait_delay_seconds: int = DEFAULT_WAIT_DELAY_SECONDS,
        wait_max_attempts: int = DEFAULT_WAIT_MAX_ATTEMPTS
    ):
        """
        Initialize the gateway.

        Args:
            cfn_client: Optional boto3 CloudFormation client for testing
            region: AWS region used when creating a client
            wait_delay_seconds: Seconds between polls while waiting
            wait_max_attempts: Maximum number of polls while waiting
        """
        self.cfn_client = cfn_client or boto3.client('cloudformation', region_name=region)
        self.wait_delay_seconds = wait_delay_seconds
        self.wait_max_attempts = wait_max_attempts

    # Create

    def create(self, spec: StackSpec) -> str:
        """
        Submit a create-stack call without waiting.

        Returns:
            The new stack's ID

        Raises:
            StackAlreadyExistsError: If a stack with this name exists
            StackGatewayError: For any other failure
        """
        kwargs: Dict[str, Any] = {
            'StackName': spec.name,
            'TemplateBody': spec.template_body,
            'Parameters': spec.cfn_parameters(),
            'Tags': spec.cfn_tags(),
            'Capabilities': CAPABILITIES,
            'EnableTerminationProtection': spec.termination_protection,
        }
        if spec.role_arn:
            kwargs['RoleARN'] = spec.role_arn
        try:
            response = self.cfn_client.create_stack(**kwargs)
        except ClientError as e:
            raise classify_error(spec.name, e) from e
        return response.get('StackId', '')

    def wait_for_create(self, stack_name: str) -> None:
        self._wait('stack_create_complete', stack_name)

    def create_and_wait(self, spec: StackSpec) -> None:
        self.create(spec)
        self.wait_for_create(spec.name)

    # Update

    def update(self, spec: StackSpec) -> bool:
        """
        Submit an update-stack call without waiting.

        Returns:
            False if CloudFormation reported there was nothing to update

        Raises:
            StackNotFoundError: If the stack does not exist
            StackUpdateInProgressError: If another operation is in flight
            StackGatewayError: For any other failure
        """
        kwargs: Dict[str, Any] = {
            'StackName': spec.name,
            'TemplateBody': spec.template_body,
            'Parameters': spec.cfn_parameters(),
            'Tags': spec.cfn_tags(),
            'Capabilities': CAPABILITIES,
        }
        if spec.role_arn:
            kwargs['RoleARN'] = spec.role_arn
        return self._update(spec.name, kwargs)

    def wait_for_update(self, stack_name: str) -> None:
        self._wait('stack_update_complete', stack_name)

    def update_and_wait(self, spec: StackSpec) -> None:
        if self.update(spec):
            self.wait_for_update(spec.name)

    def update_with_previous_template(self, stack_name: str, parameters: Dict[str, str]) -> bool:
        """
        Update only parameter values, keeping the deployed template.

        Parameters not present in `parameters` keep their previous value.
        """
        current = self.describe_stack(stack_name)
        cfn_params = []
        for key in current.parameters:
            if key in parameters:
                cfn_params.append({'ParameterKey': key, 'ParameterValue': parameters[key]})
            else:
                cfn_params.append({'ParameterKey': key, 'UsePreviousValue': True})
        return self._update(stack_name, {
            'StackName': stack_name,
            'UsePreviousTemplate': True,
            'Parameters': cfn_params,
            'Capabilities': CAPABILITIES,
        })

    def update_template_and_wait(
        self,
        stack_name: str,
        template_body: str,
        role_arn: Optional[str] = None
    ) -> None:
        """
        Replace the template of a stack while keeping every parameter value.

        Args:
            stack_name: Name of the stack to update
            template_body: New template body
            role_arn: Optional CloudFormation execution role
        """
        current = self.describe_stack(stack_name)
        kwargs: Dict[str, Any] = {
            'StackName': stack_name,
            'TemplateBody': template_body,
            'Parameters': [
                {'ParameterKey': key, 'UsePreviousValue': True}
                for key in current.parameters
            ],
            'Capabilities': CAPABILITIES,
        }
        if role_arn:
            kwargs['RoleARN'] = role_arn
        if self._update(stack_name, kwargs):
            self.wait_for_update(stack_name)

    def _update(self, stack_name: str, kwargs: Dict[str, Any]) -> bool:
        try:
            self.cfn_client.update_stack(**kwargs)
        except ClientError as e:
            if is_no_update_error(e):
                return False
            raise classify_error(stack_name, e) from e
        return True

    # Delete

    def delete(self, stack_name: str, role_arn: Optional[str] = None) -> None:
        kwargs: Dict[str, Any] = {'StackName': stack_name}
        if role_arn:
            kwargs['RoleARN'] = role_arn
        try:
            self.cfn_client.delete_stack(**kwargs)
        except ClientError as e:
            raise classify_error(stack_name, e) from e

    def delete_and_wait(self, stack_name: str, role_arn: Optional[str] = None) -> None:
        """
        Delete a stack and wait until it is gone.

        Raises:
            StackNotFoundError: If the stack does not exist
            StackWaitError: If the deletion does not complete
        """
        # delete-stack does not fail for missing stacks.
        self.describe_stack(stack_name)
        self.delete(stack_name, role_arn)
        self._wait('stack_delete_complete', stack_name)

    # Read

    def describe_stack(self, stack_name: str) -> StackDescription:
        """
        Describe a stack.

        Raises:
            StackNotFoundError: If the stack does not exist
        """
        try:
            response = self.cfn_client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            raise classify_error(stack_name, e) from e
        stacks = response.get('Stacks') or []
        if not stacks:
            raise StackNotFoundError(stack_name)
        stack = stacks[0]
        return StackDescription(
            name=stack.get('StackName', stack_name),
            stack_id=stack.get('StackId', ''),
            status=StackStatus.from_string(stack.get('StackStatus')),
            parameters={p['ParameterKey']: p.get('ParameterValue', '') for p in stack.get('Parameters', [])},
            outputs={o['OutputKey']: o.get('OutputValue', '') for o in stack.get('Outputs', [])},
            tags={t['Key']: t['Value'] for t in stack.get('Tags', [])}
        )

    def list_stack_events(self, stack_name: str) -> List[ResourceEvent]:
        """
        List the events of a stack, newest first.

        Raises:
            StackNotFoundError: If the stack does not exist
        """
        events = []
        try:
            paginator = self.cfn_client.get_paginator('describe_stack_events')
            for page in paginator.paginate(StackName=stack_name):
                for event in page.get('StackEvents', []):
                    events.append(ResourceEvent(
                        logical_name=event.get('LogicalResourceId', ''),
                        type=event.get('ResourceType', ''),
                        status=event.get('ResourceStatus', ''),
                        status_reason=event.get('ResourceStatusReason', ''),
                        timestamp=event.get('Timestamp'),
                        event_id=event.get('EventId', '')
                    ))
        except ClientError as e:
            raise classify_error(stack_name, e) from e
        return events

    def get_template_body(self, stack_name: str) -> str:
        """
        Return the original template body of a deployed stack.

        Raises:
            StackNotFoundError: If the stack does not exist
        """
        try:
            response = self.cfn_client.get_template(StackName=stack_name, TemplateStage='Original')
        except ClientError as e:
            raise classify_error(stack_name, e) from e
        body = response.get('TemplateBody', '')
        # boto3 decodes JSON templates into dicts.
        if not isinstance(body, str):
            return json.dumps(body, indent=2)
        return body

    def _wait(self, waiter_name: str, stack_name: str) -> None:
        waiter = self.cfn_client.get_waiter(waiter_name)
        try:
            waiter.wait(
                StackName=stack_name,
                WaiterConfig={
                    'Delay': self.wait_delay_seconds,
                    'MaxAttempts': self.wait_max_attempts,
                }
            )
        except WaiterError as e:
            last = e.last_response or {}
            stacks = last.get('Stacks') or [{}]
            status = StackStatus.from_string(stacks[0].get('StackStatus'))
            if 'Error' in last and 'does not exist' in last['Error'].get('Message', ''):
                raise StackNotFoundError(stack_name) from e
            raise StackWaitError(
                stack_name,
                status,
                f"stack {stack_name} did not reach a successful state: {status.value}"
            ) from e
