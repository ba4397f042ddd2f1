"""
Tests for IAM role deletion.
"""

from unittest.mock import MagicMock, call

import pytest

from iam_roles import RoleDeleter, RoleDeletionError, role_name_from_arn
from fakes import client_error


def test_role_name_from_arn():
    assert role_name_from_arn('arn:aws:iam::123456789012:role/demo-test-CFNExecutionRole') == 'demo-test-CFNExecutionRole'
    assert role_name_from_arn('arn:aws:iam::123456789012:role/path/to/my-role') == 'my-role'
    with pytest.raises(ValueError):
        role_name_from_arn('arn:aws:s3:::bucket')


def test_delete_role_removes_inline_policies_first():
    iam = MagicMock()
    iam.get_paginator.return_value.paginate.return_value = [{'PolicyNames': ['a', 'b']}]

    RoleDeleter(iam_client=iam).delete_role('arn:aws:iam::123456789012:role/exec')

    assert iam.delete_role_policy.call_args_list == [
        call(RoleName='exec', PolicyName='a'),
        call(RoleName='exec', PolicyName='b'),
    ]
    iam.delete_role.assert_called_once_with(RoleName='exec')


def test_missing_role_counts_as_deleted():
    iam = MagicMock()
    iam.get_paginator.return_value.paginate.side_effect = client_error(
        'NoSuchEntity', 'The role with name exec cannot be found.', 'ListRolePolicies'
    )

    RoleDeleter(iam_client=iam).delete_role('arn:aws:iam::123456789012:role/exec')

    iam.delete_role.assert_not_called()


def test_other_errors_are_raised():
    iam = MagicMock()
    iam.get_paginator.return_value.paginate.return_value = [{'PolicyNames': []}]
    iam.delete_role.side_effect = client_error('DeleteConflict', 'Cannot delete entity', 'DeleteRole')

    with pytest.raises(RoleDeletionError):
        RoleDeleter(iam_client=iam).delete_role('arn:aws:iam::123456789012:role/exec')


def test_invalid_arn_is_rejected():
    with pytest.raises(RoleDeletionError):
        RoleDeleter(iam_client=MagicMock()).delete_role('not-an-arn')
