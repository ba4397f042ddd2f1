"""
Environment delete stage for environment lifecycle scripts.

This module removes an environment from an application:
- Refuse to continue while workload stacks are still deployed in the environment
- Make sure the environment's IAM roles survive the stack deletion
- Delete the environment stack using the retained execution role
- Delete the retained roles
- Remove the environment record
"""

import argparse
import sys
from typing import Callable, List, Optional, Tuple

import boto3

from config_store import ConfigStore, EnvironmentNotFoundError, EnvironmentRecord, StoreError
from iam_roles import RoleDeleter
from resource_groups import STACK_RESOURCE_TYPE, ResourceGroups
from stack_config import APP_TAG_KEY, ENV_TAG_KEY, SERVICE_TAG_KEY
from stack_deployer import StackDeployer
from stack_gateway import StackGateway, StackNotFoundError
from steps import Step, StepFailedError, run_steps
from validation import ValidationError

EXECUTION_ROLE_LOGICAL_ID = "CloudformationExecutionRole"
MANAGER_ROLE_LOGICAL_ID = "EnvironmentManagerRole"
RETAIN_POLICY = "    DeletionPolicy: Retain\n"


class EnvironmentDeleteError(Exception):
    """Exception raised when environment deletion fails."""

    def __init__(self, step_name: str, message: str):
        super().__init__(message)
        self.step_name = step_name


def _resource_header(logical_id: str) -> str:
    return f"  {logical_id}:\n"


def has_retain_policy(template_body: str, logical_id: str) -> bool:
    return f"\n{_resource_header(logical_id)}{RETAIN_POLICY}" in template_body


def add_retain_policies(template_body: str) -> Tuple[str, bool]:
    """
    Add a Retain deletion policy to the environment's IAM role resources.

    Args:
        template_body: YAML template body of the environment stack

    Returns:
        Tuple of the new template body and whether anything changed
    """
    changed = False
    for logical_id in (EXECUTION_ROLE_LOGICAL_ID, MANAGER_ROLE_LOGICAL_ID):
        if has_retain_policy(template_body, logical_id):
            continue
        header = "\n" + _resource_header(logical_id)
        if header not in template_body:
            continue
        before, after = template_body.split(header, 1)
        template_body = before + header + RETAIN_POLICY + after
        changed = True
    return template_body, changed


def workload_names(resources) -> List[str]:
    """Name each workload stack by its service tag, or by its ARN when the tag is blank."""
    names = []
    for resource in resources:
        name = resource.tags.get(SERVICE_TAG_KEY) or resource.arn
        if name not in names:
            names.append(name)
    return names


class EnvironmentDeleteStage:
    """Handles deletion of an existing environment."""

    def __init__(
        self,
        app: str,
        name: str,
        store: ConfigStore,
        session_factory: Optional[Callable[[EnvironmentRecord], boto3.Session]] = None,
        gateway: Optional[StackGateway] = None,
        deployer: Optional[StackDeployer] = None,
        resource_groups: Optional[ResourceGroups] = None,
        role_deleter: Optional[RoleDeleter] = None
    ):
        """
        Initialize the environment delete stage.

        Clients not given explicitly are created from session_factory once the
        environment record is loaded, in the environment's region.

        Args:
            app: Name of the application
            name: Name of the environment
            store: Store holding the environment record
            session_factory: Builds a boto3 session for the environment
            gateway: Optional gateway to the environment's CloudFormation
            deployer: Optional deployer for the environment stack
            resource_groups: Optional tag lookup client for the environment
            role_deleter: Optional IAM role deleter for the environment account
        """
        self.app = app
        self.name = name
        self.store = store
        self.session_factory = session_factory or (lambda env: boto3.Session(region_name=env.region))
        self.gateway = gateway
        self.deployer = deployer
        self.resource_groups = resource_groups
        self.role_deleter = role_deleter

        self._environment: Optional[EnvironmentRecord] = None
        self.completed_steps: List[str] = []

    @property
    def stack_name(self) -> str:
        return f"{self.app}-{self.name}"

    def environment(self) -> EnvironmentRecord:
        """Load the environment record once and wire any missing clients."""
        if self._environment is not None:
            return self._environment
        env = self.store.get_environment(self.app, self.name)
        if None in (self.gateway, self.deployer, self.resource_groups, self.role_deleter):
            session = self.session_factory(env)
            if self.gateway is None:
                self.gateway = StackGateway(cfn_client=session.client('cloudformation'))
            if self.deployer is None:
                self.deployer = StackDeployer(self.gateway)
            if self.resource_groups is None:
                self.resource_groups = ResourceGroups(
                    tagging_client=session.client('resourcegroupstaggingapi')
                )
            if self.role_deleter is None:
                self.role_deleter = RoleDeleter(iam_client=session.client('iam'))
        self._environment = env
        return env

    def steps(self) -> List[Step]:
        return [
            Step("validate-no-workloads", self.validate_no_workloads,
                 f"Checking for services deployed in environment {self.name}"),
            Step("retain-environment-roles", self.ensure_roles_are_retained,
                 "Retaining the environment's IAM roles"),
            Step("delete-environment-stack", self.delete_stack,
                 f"Deleting the stack {self.stack_name}"),
            Step("delete-environment-roles", self.delete_roles,
                 "Deleting the environment's IAM roles"),
            Step("delete-environment-record", self.delete_record,
                 f"Removing environment {self.name} from application {self.app}"),
        ]

    def validate_no_workloads(self) -> None:
        """
        Raises:
            ValidationError: If workload stacks are still deployed in the environment
        """
        stacks = self.resource_groups.get_resources_by_tags(STACK_RESOURCE_TYPE, {
            SERVICE_TAG_KEY: "",
            ENV_TAG_KEY: self.name,
            APP_TAG_KEY: self.app,
        })
        if stacks:
            raise ValidationError(
                f"service '{', '.join(workload_names(stacks))}' still exist within the environment {self.name}"
            )

    def ensure_roles_are_retained(self) -> None:
        """Update the stack template so both IAM roles are retained, if they are not yet."""
        try:
            body = self.gateway.get_template_body(self.stack_name)
        except StackNotFoundError:
            print(f"Stack {self.stack_name} does not exist, skipping role retention")
            return
        new_body, changed = add_retain_policies(body)
        if not changed:
            return
        env = self.environment()
        self.gateway.update_template_and_wait(self.stack_name, new_body, role_arn=env.execution_role_arn)
        print(f"Retained the IAM roles of stack {self.stack_name}")

    def delete_stack(self) -> None:
        env = self.environment()
        self.deployer.delete_and_wait(self.stack_name, role_arn=env.execution_role_arn)

    def delete_roles(self) -> None:
        env = self.environment()
        self.role_deleter.delete_role(env.execution_role_arn)
        self.role_deleter.delete_role(env.manager_role_arn)

    def delete_record(self) -> None:
        self.store.delete_environment(self.app, self.name)

    def _not_found_message(self, error: EnvironmentNotFoundError) -> str:
        try:
            names = sorted(env.name for env in self.store.list_environments(self.app))
        except StoreError:
            return f"load-environment: {error}"
        if not names:
            return f"load-environment: {error}; application {self.app} has no environments"
        return f"load-environment: {error}; existing environments: {', '.join(names)}"

    def run(self) -> None:
        """
        Execute every delete step in order.

        Raises:
            EnvironmentDeleteError: If the environment cannot be loaded or any step fails
        """
        print(f"\n{'='*80}")
        print(f"Environment Delete: {self.name}")
        print(f"Application: {self.app}")
        print(f"{'='*80}")

        try:
            self.environment()
        except EnvironmentNotFoundError as e:
            raise EnvironmentDeleteError("load-environment", self._not_found_message(e)) from e
        except Exception as e:
            raise EnvironmentDeleteError("load-environment", f"load-environment: {e}") from e

        try:
            run_steps(self.steps(), completed=self.completed_steps)
        except StepFailedError as e:
            print(f"\nFailed to delete environment {self.name}", file=sys.stderr)
            raise EnvironmentDeleteError(e.step_name, str(e)) from e.cause

        print(f"\nDeleted environment {self.name} from application {self.app}.")


def main(argv: Optional[List[str]] = None):
    """Main entry point for the environment delete script."""
    parser = argparse.ArgumentParser(description='Delete an environment from an application')
    parser.add_argument('--app', type=str, required=True, help='Name of the application')
    parser.add_argument('--name', type=str, required=True, help='Name of the environment')
    parser.add_argument('--profile', type=str, help='Named profile for the environment credentials')
    parser.add_argument('--yes', action='store_true', help='Skip the confirmation prompt')
    args = parser.parse_args(argv)

    if not args.yes:
        answer = input(f"Are you sure you want to delete environment {args.name} from application {args.app}? [y/N] ")
        if answer.strip().lower() not in ('y', 'yes'):
            print("Aborted")
            sys.exit(1)

    stage = EnvironmentDeleteStage(
        app=args.app,
        name=args.name,
        store=ConfigStore(),
        session_factory=lambda env: boto3.Session(profile_name=args.profile, region_name=env.region)
    )

    try:
        stage.run()
        sys.exit(0)
    except EnvironmentDeleteError as e:
        print(f"\nEnvironment delete failed at step {e.step_name}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
