"""
Application-level infrastructure updates made while creating an environment.

This module provides:
- DNS delegation: allow an environment account to manage records under the
  application's domain
- Registration of an environment's account and region into the application's
  aggregate stack set
"""

import time
from typing import Callable, Optional

import boto3
from botocore.exceptions import ClientError

from config_store import ApplicationRecord, EnvironmentRecord
from stack_gateway import StackGateway, StackGatewayError

DNS_DELEGATION_ACCOUNTS_PARAM_KEY = "DNSDelegationAccounts"
FMT_APP_STACK_NAME = "{app}-infrastructure-roles"
FMT_APP_STACK_SET_NAME = "{app}-infrastructure"

OPERATION_POLL_SECONDS = 3
OPERATION_MAX_POLLS = 600


class AppDeploymentError(Exception):
    """Exception raised when application-level infrastructure cannot be updated."""
    pass


class AppDeployer:
    """Updates the application stack and stack set on behalf of environments."""

    def __init__(
        self,
        gateway: StackGateway,
        cfn_client=None,
        region: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the deployer.

        Args:
            gateway: Gateway to the application's (tools account) CloudFormation
            cfn_client: Optional boto3 CloudFormation client for stack set calls
            region: AWS region used when creating a client
            sleep: Sleep function, overridden in tests
        """
        self.gateway = gateway
        self.cfn_client = cfn_client or boto3.client('cloudformation', region_name=region)
        self.sleep = sleep

    def delegate_dns_permissions(self, app: ApplicationRecord, account_id: str) -> None:
        """
        Add an account to the accounts allowed to manage the application's DNS.

        Raises:
            AppDeploymentError: If the application stack cannot be updated
        """
        stack_name = FMT_APP_STACK_NAME.format(app=app.name)
        try:
            stack = self.gateway.describe_stack(stack_name)
            accounts = [
                a.strip()
                for a in stack.parameters.get(DNS_DELEGATION_ACCOUNTS_PARAM_KEY, "").split(",")
                if a.strip()
            ]
            if account_id in accounts:
                print(f"Account {account_id} already has DNS permissions for application {app.name}")
                return
            accounts.append(account_id)
            if self.gateway.update_with_previous_template(
                stack_name, {DNS_DELEGATION_ACCOUNTS_PARAM_KEY: ",".join(accounts)}
            ):
                self.gateway.wait_for_update(stack_name)
        except StackGatewayError as e:
            raise AppDeploymentError(f"update application stack {stack_name} with account {account_id}: {e}") from e

    def add_env_to_app(self, app: ApplicationRecord, env: EnvironmentRecord) -> None:
        """
        Add the environment's account and region to the application's stack set.

        Existing stack instances for the same account and region are left alone.

        Raises:
            AppDeploymentError: If the stack set cannot be updated
        """
        stack_set = FMT_APP_STACK_SET_NAME.format(app=app.name)
        try:
            if self._has_instance(stack_set, env.account_id, env.region):
                print(f"Account {env.account_id} and region {env.region} already linked to application {app.name}")
                return
            response = self.cfn_client.create_stack_instances(
                StackSetName=stack_set,
                Accounts=[env.account_id],
                Regions=[env.region]
            )
        except ClientError as e:
            raise AppDeploymentError(f"add stack instance to {stack_set}: {e}") from e
        self._wait_for_operation(stack_set, response['OperationId'])

    def _has_instance(self, stack_set: str, account_id: str, region: str) -> bool:
        paginator = self.cfn_client.get_paginator('list_stack_instances')
        for page in paginator.paginate(StackSetName=stack_set):
            for summary in page.get('Summaries', []):
                if summary.get('Account') == account_id and summary.get('Region') == region:
                    return True
        return False

    def _wait_for_operation(self, stack_set: str, operation_id: str) -> None:
        for _ in range(OPERATION_MAX_POLLS):
            try:
                response = self.cfn_client.describe_stack_set_operation(
                    StackSetName=stack_set,
                    OperationId=operation_id
                )
            except ClientError as e:
                raise AppDeploymentError(f"describe operation {operation_id} on {stack_set}: {e}") from e
            status = response['StackSetOperation']['Status']
            if status == 'SUCCEEDED':
                return
            if status in ('FAILED', 'STOPPED'):
                raise AppDeploymentError(f"operation {operation_id} on stack set {stack_set} {status.lower()}")
            self.sleep(OPERATION_POLL_SECONDS)
        raise AppDeploymentError(f"timed out waiting for operation {operation_id} on stack set {stack_set}")
