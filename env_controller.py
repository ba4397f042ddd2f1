"""
Environment controller custom resource.

CloudFormation invokes this Lambda function while it processes a workload
stack. The function keeps the environment stack's workload-membership
parameters (for example ALBWorkloads) in sync with the workloads deployed to
the environment:
- Create/Update add the workload to every named parameter the stack declares
- Delete removes the workload from every named parameter
- Parameters are re-read before every update attempt, and updates that collide
  with an in-flight stack operation wait for it and retry until the deadline
- Exactly one response is PUT to the pre-signed ResponseURL per invocation
"""

import json
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

import boto3
import requests
from botocore.exceptions import ClientError, WaiterError
from jsonschema import ValidationError, validate

from stack_gateway import error_message, is_no_update_error, is_not_found_error, is_update_in_progress_error

SUCCESS = "SUCCESS"
FAILED = "FAILED"

ADD = "add"
REMOVE = "remove"

REQUEST_OPERATIONS = {
    'Create': ADD,
    'Update': ADD,
    'Delete': REMOVE,
}

CAPABILITIES = ['CAPABILITY_IAM', 'CAPABILITY_NAMED_IAM', 'CAPABILITY_AUTO_EXPAND']

DEFAULT_DEADLINE_BUFFER_MS = 5000
DEFAULT_WAIT_DELAY_SECONDS = 5
RESPONSE_TIMEOUT_SECONDS = 10

RESOURCE_PROPERTIES_SCHEMA = {
    'type': 'object',
    'required': ['EnvStack', 'Workload', 'Parameters'],
    'properties': {
        'EnvStack': {'type': 'string', 'minLength': 1},
        'Workload': {'type': 'string', 'minLength': 1},
        'Parameters': {'type': 'array', 'items': {'type': 'string'}},
    },
}


def setup_logger(name: str) -> logging.Logger:
    """Set up JSON line logging for the Lambda runtime."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"logger": "%(name)s", "message": "%(message)s"}'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    log_level = os.environ.get("LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    return logger


logger = setup_logger(__name__)


class ReconcileError(Exception):
    """Exception raised when the environment stack cannot be reconciled."""
    pass


class DeadlineExceededError(ReconcileError):
    """The invocation ran out of time before the reconciliation finished."""
    pass


def split_workloads(value: Optional[str]) -> List[str]:
    """Parse a comma-joined workload list, dropping blanks and duplicates."""
    names: List[str] = []
    for name in (value or "").split(","):
        name = name.strip()
        if name and name not in names:
            names.append(name)
    return names


def recompute(current_value: Optional[str], workload: str, op: str) -> str:
    """
    Compute the new value of a workload-membership parameter.

    Args:
        current_value: Current comma-joined value of the parameter
        workload: Workload being added or removed
        op: ADD or REMOVE

    Returns:
        The new comma-joined value; existing order is kept and additions go last
    """
    names = split_workloads(current_value)
    if op == ADD:
        if workload not in names:
            names.append(workload)
    elif op == REMOVE:
        names = [name for name in names if name != workload]
    else:
        raise ValueError(f"unknown operation {op}")
    return ",".join(names)


class EnvController:
    """Read-modify-write of the environment stack's membership parameters."""

    def __init__(
        self,
        cfn_client,
        deadline: float,
        clock: Callable[[], float] = time.time,
        wait_delay_seconds: int = DEFAULT_WAIT_DELAY_SECONDS
    ):
        """
        Args:
            cfn_client: boto3 CloudFormation client
            deadline: Point in time (per `clock`) by which a response must be sent
            clock: Time source, overridden in tests
            wait_delay_seconds: Seconds between polls while waiting for the stack
        """
        self.cfn_client = cfn_client
        self.deadline = deadline
        self.clock = clock
        self.wait_delay_seconds = wait_delay_seconds

    def remaining_seconds(self) -> float:
        return self.deadline - self.clock()

    def reconcile(
        self,
        stack_name: str,
        workload: str,
        parameter_names: List[str],
        op: str
    ) -> Dict[str, str]:
        """
        Add or remove a workload from the environment stack's parameters.

        Returns:
            The environment stack's outputs, used as the custom resource's data

        Raises:
            ReconcileError: If the stack is missing, the update is rejected,
                or the deadline passes
        """
        while True:
            self._check_deadline(stack_name)
            stack = self._describe(stack_name)
            current = {
                p['ParameterKey']: p.get('ParameterValue', '')
                for p in stack.get('Parameters', [])
            }
            changed = {}
            for name in parameter_names:
                if name not in current:
                    logger.info(f"Stack {stack_name} has no parameter {name}, skipping it")
                    continue
                new_value = recompute(current[name], workload, op)
                if split_workloads(new_value) != split_workloads(current[name]):
                    changed[name] = new_value
            if not changed:
                logger.info(f"Parameters of stack {stack_name} already up to date for workload {workload}")
                return _outputs(stack)

            try:
                self._update(stack_name, current, changed)
            except ClientError as e:
                if is_update_in_progress_error(e):
                    logger.info(f"Stack {stack_name} is being updated, waiting before retrying")
                    self._wait_for_in_flight_update(stack_name)
                    continue
                if is_no_update_error(e):
                    return _outputs(stack)
                raise ReconcileError(error_message(e) or str(e)) from e

            self._wait_for_own_update(stack_name)
            return _outputs(self._describe(stack_name))

    def _describe(self, stack_name: str) -> Dict[str, Any]:
        try:
            response = self.cfn_client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if is_not_found_error(e):
                raise ReconcileError(f"Cannot find environment stack {stack_name}") from e
            raise
        stacks = response.get('Stacks') or []
        if not stacks:
            raise ReconcileError(f"Cannot find environment stack {stack_name}")
        return stacks[0]

    def _update(self, stack_name: str, current: Dict[str, str], changed: Dict[str, str]) -> None:
        parameters = []
        for key, value in changed.items():
            parameters.append({'ParameterKey': key, 'ParameterValue': value})
        for key in current:
            if key not in changed:
                parameters.append({'ParameterKey': key, 'UsePreviousValue': True})
        logger.info(f"Updating stack {stack_name} parameters: {json.dumps(changed)}")
        self.cfn_client.update_stack(
            StackName=stack_name,
            Parameters=parameters,
            UsePreviousTemplate=True,
            Capabilities=CAPABILITIES
        )

    def _wait_for_update(self, stack_name: str) -> None:
        remaining = self.remaining_seconds()
        max_attempts = max(1, int(remaining // self.wait_delay_seconds))
        self.cfn_client.get_waiter('stack_update_complete').wait(
            StackName=stack_name,
            WaiterConfig={'Delay': self.wait_delay_seconds, 'MaxAttempts': max_attempts}
        )

    def _wait_for_in_flight_update(self, stack_name: str) -> None:
        # A rolled-back update still leaves the stack updatable.
        try:
            self._wait_for_update(stack_name)
        except WaiterError as e:
            logger.info(f"In-flight operation on stack {stack_name} ended without success: {e}")

    def _wait_for_own_update(self, stack_name: str) -> None:
        try:
            self._wait_for_update(stack_name)
        except WaiterError as e:
            self._check_deadline(stack_name)
            raise ReconcileError(f"wait for stack {stack_name} update to complete: {e}") from e

    def _check_deadline(self, stack_name: str) -> None:
        if self.remaining_seconds() <= 0:
            raise DeadlineExceededError(
                f"Lambda took longer than expected to reconcile environment stack {stack_name}"
            )


def _outputs(stack: Dict[str, Any]) -> Dict[str, str]:
    return {o['OutputKey']: o.get('OutputValue', '') for o in stack.get('Outputs', [])}


def send_response(
    event: Dict[str, Any],
    status: str,
    physical_resource_id: str,
    data: Optional[Dict[str, str]] = None,
    reason: Optional[str] = None
) -> None:
    """
    PUT the custom resource response to the pre-signed ResponseURL.

    Delivery failures are logged, not raised.
    """
    body: Dict[str, Any] = {
        'Status': status,
        'PhysicalResourceId': physical_resource_id,
        'StackId': event.get('StackId', ''),
        'RequestId': event.get('RequestId', ''),
        'LogicalResourceId': event.get('LogicalResourceId', ''),
        'Data': data or {},
    }
    if status == FAILED:
        body['Reason'] = reason or "unknown error"
    payload = json.dumps(body)
    logger.info(f"Responding {status} to {event.get('RequestId', '')}")
    try:
        response = requests.put(
            event['ResponseURL'],
            data=payload.encode('utf-8'),
            headers={'content-type': '', 'content-length': str(len(payload))},
            timeout=RESPONSE_TIMEOUT_SECONDS
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Failed to send custom resource response: {e}")


class ResponseScope:
    """
    Context manager that sends exactly one response when the scope exits.

    The body of the `with` block sets `data` on success. Any exception escaping
    the block turns into a FAILED response and is not re-raised.
    """

    def __init__(self, event: Dict[str, Any], physical_resource_id: str):
        self.event = event
        self.physical_resource_id = physical_resource_id
        self.data: Dict[str, str] = {}
        self.sent = False

    def __enter__(self) -> "ResponseScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.sent:
            return False
        self.sent = True
        if exc is None:
            send_response(self.event, SUCCESS, self.physical_resource_id, data=self.data)
            return False
        if not isinstance(exc, Exception):
            send_response(self.event, FAILED, self.physical_resource_id, reason=str(exc) or exc_type.__name__)
            return False
        logger.error(f"Reconciliation failed: {exc}")
        send_response(self.event, FAILED, self.physical_resource_id, reason=str(exc))
        return True


def deadline_from_context(context, clock: Callable[[], float] = time.time) -> float:
    """Compute the response deadline from the Lambda context's remaining time."""
    buffer_ms = int(os.environ.get('ENV_CONTROLLER_DEADLINE_BUFFER_MS', DEFAULT_DEADLINE_BUFFER_MS))
    remaining_ms = context.get_remaining_time_in_millis()
    return clock() + (remaining_ms - buffer_ms) / 1000.0


def handler(event: Dict[str, Any], context) -> None:
    """Lambda entry point for the environment controller custom resource."""
    props = event.get('ResourceProperties') or {}
    physical_resource_id = event.get('PhysicalResourceId') or (
        f"envcontroller/{props.get('EnvStack', '')}/{props.get('Workload', '')}"
    )
    with ResponseScope(event, physical_resource_id) as scope:
        request_type = event.get('RequestType')
        op = REQUEST_OPERATIONS.get(request_type)
        if op is None:
            raise ReconcileError(f"Unsupported request type {request_type}")
        try:
            validate(instance=props, schema=RESOURCE_PROPERTIES_SCHEMA)
        except ValidationError as e:
            raise ReconcileError(f"Invalid resource properties: {e.message}") from e

        controller = EnvController(
            cfn_client=boto3.client('cloudformation'),
            deadline=deadline_from_context(context)
        )
        scope.data = controller.reconcile(
            stack_name=props['EnvStack'],
            workload=props['Workload'],
            parameter_names=props['Parameters'],
            op=op
        )
