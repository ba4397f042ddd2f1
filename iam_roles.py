"""
IAM role removal for environment roles retained past stack deletion.
"""

from typing import Optional

import boto3
from botocore.exceptions import ClientError


class RoleDeletionError(Exception):
    """Exception raised when an IAM role cannot be deleted."""
    pass


def role_name_from_arn(role_arn: str) -> str:
    """
    Extract the role name from a role ARN.

    arn:aws:iam::123456789012:role/path/my-role -> my-role

    Raises:
        ValueError: If the ARN is not an IAM role ARN
    """
    parts = role_arn.split(":", 5)
    if len(parts) != 6 or parts[2] != "iam" or not parts[5].startswith("role/"):
        raise ValueError(f"{role_arn} is not a valid IAM role ARN")
    return parts[5].rsplit("/", 1)[-1]


class RoleDeleter:
    """Deletes IAM roles along with their inline policies."""

    def __init__(self, iam_client=None, region: Optional[str] = None):
        self.iam_client = iam_client or boto3.client('iam', region_name=region)

    def delete_role(self, role_arn: str) -> None:
        """
        Delete a role. A role that no longer exists counts as deleted.

        Raises:
            RoleDeletionError: If any IAM call fails
        """
        try:
            name = role_name_from_arn(role_arn)
        except ValueError as e:
            raise RoleDeletionError(str(e)) from e
        try:
            paginator = self.iam_client.get_paginator('list_role_policies')
            for page in paginator.paginate(RoleName=name):
                for policy_name in page.get('PolicyNames', []):
                    self.iam_client.delete_role_policy(RoleName=name, PolicyName=policy_name)
            self.iam_client.delete_role(RoleName=name)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'NoSuchEntity':
                print(f"Role {role_arn} does not exist, nothing to delete")
                return
            raise RoleDeletionError(f"delete role {role_arn}: {e}") from e
        print(f"Deleted role {role_arn}")
