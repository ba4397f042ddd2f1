"""
Tests for the CloudFormation gateway: error classification, update semantics
and waiter handling.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import WaiterError

from stack_config import StackSpec, StackStatus
from stack_gateway import (
    CAPABILITIES,
    StackAlreadyExistsError,
    StackGateway,
    StackGatewayError,
    StackNotFoundError,
    StackUpdateInProgressError,
    StackWaitError,
    classify_error,
    is_no_update_error,
    is_not_found_error,
    is_update_in_progress_error,
)
from fakes import client_error, describe_response, not_found_error, stack_dict, update_in_progress_error

STACK = "demo-test"


def make_spec(**overrides):
    kwargs = dict(
        name=STACK,
        template_body="Resources: {}",
        parameters={'B': '2', 'A': '1'},
        tags={'copilot-environment': 'test', 'copilot-application': 'demo'},
    )
    kwargs.update(overrides)
    return StackSpec(**kwargs)


@pytest.fixture
def cfn():
    return MagicMock()


@pytest.fixture
def gateway(cfn):
    return StackGateway(cfn_client=cfn, wait_delay_seconds=1, wait_max_attempts=2)


class TestClassifyError:
    def test_already_exists(self):
        err = classify_error(STACK, client_error('AlreadyExistsException', f"Stack [{STACK}] already exists"))
        assert isinstance(err, StackAlreadyExistsError)

    def test_not_found(self):
        err = classify_error(STACK, not_found_error(STACK))
        assert isinstance(err, StackNotFoundError)
        assert str(err) == f"stack named {STACK} cannot be found"

    def test_update_in_progress(self):
        err = classify_error(STACK, update_in_progress_error(STACK))
        assert isinstance(err, StackUpdateInProgressError)
        assert is_update_in_progress_error(err)

    def test_other_errors_keep_code_and_message(self):
        err = classify_error(STACK, client_error('Throttling', 'Rate exceeded'))
        assert type(err) is StackGatewayError
        assert str(err) == "Throttling: Rate exceeded"


def test_error_predicates_match_on_code_and_message():
    assert is_not_found_error(not_found_error(STACK))
    assert not is_not_found_error(client_error('AccessDenied', f"Role for {STACK} does not exist"))
    assert is_no_update_error(client_error('ValidationError', 'No updates are to be performed.'))
    assert not is_no_update_error(client_error('Throttling', 'Rate exceeded'))
    assert is_update_in_progress_error(update_in_progress_error(STACK))
    assert not is_update_in_progress_error(not_found_error(STACK))


def test_create_sends_sorted_parameters_and_tags(gateway, cfn):
    cfn.create_stack.return_value = {'StackId': 'stack-id'}

    stack_id = gateway.create(make_spec(role_arn='arn:aws:iam::123456789012:role/exec'))

    assert stack_id == 'stack-id'
    kwargs = cfn.create_stack.call_args.kwargs
    assert kwargs['Parameters'] == [
        {'ParameterKey': 'A', 'ParameterValue': '1'},
        {'ParameterKey': 'B', 'ParameterValue': '2'},
    ]
    assert [t['Key'] for t in kwargs['Tags']] == ['copilot-application', 'copilot-environment']
    assert kwargs['Capabilities'] == CAPABILITIES
    assert kwargs['RoleARN'] == 'arn:aws:iam::123456789012:role/exec'


def test_create_existing_stack_raises_already_exists(gateway, cfn):
    cfn.create_stack.side_effect = client_error('AlreadyExistsException', 'exists', 'CreateStack')

    with pytest.raises(StackAlreadyExistsError):
        gateway.create(make_spec())


def test_update_with_nothing_to_do_returns_false(gateway, cfn):
    cfn.update_stack.side_effect = client_error('ValidationError', 'No updates are to be performed.')

    assert gateway.update(make_spec()) is False


def test_update_and_wait_skips_waiting_when_nothing_changed(gateway, cfn):
    cfn.update_stack.side_effect = client_error('ValidationError', 'No updates are to be performed.')

    gateway.update_and_wait(make_spec())

    cfn.get_waiter.assert_not_called()


def test_update_with_previous_template_keeps_other_values(gateway, cfn):
    cfn.describe_stacks.return_value = describe_response(
        stack_dict('demo-infrastructure-roles', parameters={'DNSDelegationAccounts': '111', 'AppName': 'demo'})
    )

    assert gateway.update_with_previous_template(
        'demo-infrastructure-roles', {'DNSDelegationAccounts': '111,222'}
    ) is True

    kwargs = cfn.update_stack.call_args.kwargs
    assert kwargs['UsePreviousTemplate'] is True
    assert kwargs['Parameters'] == [
        {'ParameterKey': 'DNSDelegationAccounts', 'ParameterValue': '111,222'},
        {'ParameterKey': 'AppName', 'UsePreviousValue': True},
    ]


def test_update_template_and_wait_uses_previous_values_and_role(gateway, cfn):
    cfn.describe_stacks.return_value = describe_response(stack_dict(STACK, parameters={'AppName': 'demo'}))

    gateway.update_template_and_wait(STACK, "new body", role_arn='arn:aws:iam::123456789012:role/exec')

    kwargs = cfn.update_stack.call_args.kwargs
    assert kwargs['TemplateBody'] == "new body"
    assert kwargs['Parameters'] == [{'ParameterKey': 'AppName', 'UsePreviousValue': True}]
    assert kwargs['RoleARN'] == 'arn:aws:iam::123456789012:role/exec'
    cfn.get_waiter.assert_called_once_with('stack_update_complete')


def test_delete_and_wait_missing_stack_raises_not_found(gateway, cfn):
    cfn.describe_stacks.side_effect = not_found_error(STACK)

    with pytest.raises(StackNotFoundError):
        gateway.delete_and_wait(STACK)

    cfn.delete_stack.assert_not_called()


def test_delete_and_wait_passes_role(gateway, cfn):
    cfn.describe_stacks.return_value = describe_response(stack_dict(STACK))

    gateway.delete_and_wait(STACK, role_arn='arn:aws:iam::123456789012:role/exec')

    cfn.delete_stack.assert_called_once_with(StackName=STACK, RoleARN='arn:aws:iam::123456789012:role/exec')
    cfn.get_waiter.assert_called_once_with('stack_delete_complete')


def test_describe_stack_maps_fields(gateway, cfn):
    cfn.describe_stacks.return_value = describe_response(
        stack_dict(STACK, parameters={'AppName': 'demo'}, outputs={'ClusterId': 'c'}, status='UPDATE_ROLLBACK_COMPLETE')
    )

    stack = gateway.describe_stack(STACK)

    assert stack.status is StackStatus.UPDATE_ROLLBACK_COMPLETE
    assert stack.parameters == {'AppName': 'demo'}
    assert stack.outputs == {'ClusterId': 'c'}


def test_describe_stack_empty_response_is_not_found(gateway, cfn):
    cfn.describe_stacks.return_value = {'Stacks': []}

    with pytest.raises(StackNotFoundError):
        gateway.describe_stack(STACK)


def test_wait_failure_reports_final_status(gateway, cfn):
    cfn.get_waiter.return_value.wait.side_effect = WaiterError(
        'StackCreateComplete',
        'Waiter encountered a terminal failure state',
        {'Stacks': [{'StackName': STACK, 'StackStatus': 'ROLLBACK_COMPLETE'}]}
    )

    with pytest.raises(StackWaitError) as exc_info:
        gateway.wait_for_create(STACK)

    assert exc_info.value.status is StackStatus.ROLLBACK_COMPLETE


def test_get_template_body_serializes_json_templates(gateway, cfn):
    cfn.get_template.return_value = {'TemplateBody': {'Resources': {}}}

    assert gateway.get_template_body(STACK) == '{\n  "Resources": {}\n}'
    cfn.get_template.assert_called_once_with(StackName=STACK, TemplateStage='Original')


def test_list_stack_events_reads_every_page(gateway, cfn):
    cfn.get_paginator.return_value.paginate.return_value = [
        {'StackEvents': [{'LogicalResourceId': 'Cluster', 'ResourceType': 'AWS::ECS::Cluster',
                          'ResourceStatus': 'CREATE_FAILED', 'ResourceStatusReason': 'quota', 'EventId': '2'}]},
        {'StackEvents': [{'LogicalResourceId': STACK, 'ResourceType': 'AWS::CloudFormation::Stack',
                          'ResourceStatus': 'CREATE_IN_PROGRESS', 'EventId': '1'}]},
    ]

    events = gateway.list_stack_events(STACK)

    assert [e.event_id for e in events] == ['2', '1']
    assert events[0].status_reason == 'quota'
