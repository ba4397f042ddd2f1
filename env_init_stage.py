"""
Environment init stage for environment lifecycle scripts.

This module creates a new environment within an application:
- Load the application record
- Grant DNS permissions to the environment account when it differs from the
  application account
- Create the environment stack, streaming its progress
- Read the created environment's roles, account, region and cluster back from the stack
- Link the environment's account and region to the application's stack set
- Store the environment record

The record is stored last. Creating the stack and linking it to the
application can both be re-run against an existing environment.
"""

import argparse
import sys
from dataclasses import dataclass
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError

from app_deployer import AppDeployer
from config_parser import EnvironmentConfig, parse_config
from config_store import ApplicationRecord, ConfigStore, CustomEnvConfig, EnvironmentRecord
from progress import EnvironmentProgress, environment_progress_order
from resource_groups import ResourceGroups
from stack_config import (
    ENV_EXECUTION_ROLE_OUTPUT_KEY,
    ENV_MANAGER_ROLE_OUTPUT_KEY,
    AdjustVPCConfig,
    EnvironmentStackConfig,
    ImportVPCConfig,
)
from stack_deployer import StackDeployer
from stack_gateway import StackAlreadyExistsError, StackDescription, StackGateway
from steps import Step, StepFailedError, run_steps
from validation import (
    ValidationError,
    validate_aws_credentials,
    validate_credentials_flags,
    validate_customized_resources,
    validate_environment_name,
    validate_role_arn,
)


class EnvironmentInitError(Exception):
    """Exception raised when environment init fails."""

    def __init__(self, step_name: str, message: str):
        super().__init__(message)
        self.step_name = step_name


def get_caller_identity(sts_client) -> dict:
    """
    Get the caller identity for a set of credentials.

    Raises:
        EnvironmentInitError: If STS cannot be reached
    """
    try:
        return sts_client.get_caller_identity()
    except ClientError as e:
        raise EnvironmentInitError("identity", f"Failed to get caller identity: {str(e)}") from e


def parse_stack_id(stack_id: str) -> tuple:
    """Return (region, account) from a stack ID ARN."""
    parts = stack_id.split(":")
    if len(parts) < 6 or parts[2] != "cloudformation":
        raise ValueError(f"{stack_id} is not a valid stack ID")
    return parts[3], parts[4]


@dataclass
class EnvironmentInitResult:
    """Result of initializing an environment."""
    environment_name: str
    app: str
    region: str
    account: str
    status: str  # "success" or "failed"
    completed_steps: List[str]
    cluster_arn: Optional[str] = None


class EnvironmentInitStage:
    """Handles creation of a new environment."""

    def __init__(
        self,
        config: EnvironmentConfig,
        template_body: str,
        store: ConfigStore,
        env_deployer: StackDeployer,
        app_deployer: AppDeployer,
        env_sts_client,
        tools_sts_client,
        resource_groups: Optional[ResourceGroups] = None
    ):
        """
        Initialize the environment init stage.

        Args:
            config: Environment configuration
            template_body: Rendered environment stack template
            store: Store holding application and environment records
            env_deployer: Deployer bound to the environment's account and region
            app_deployer: Deployer for the application's shared infrastructure
            env_sts_client: STS client using the environment's credentials
            tools_sts_client: STS client using the application's credentials
            resource_groups: Optional tag lookup client in the environment's account,
                used to report the environment's cluster
        """
        self.config = config
        self.template_body = template_body
        self.store = store
        self.env_deployer = env_deployer
        self.app_deployer = app_deployer
        self.env_sts_client = env_sts_client
        self.tools_sts_client = tools_sts_client
        self.resource_groups = resource_groups

        self.app: Optional[ApplicationRecord] = None
        self.environment: Optional[EnvironmentRecord] = None
        self.stack_name: Optional[str] = None
        self.cluster_arn: Optional[str] = None
        self.completed_steps: List[str] = []

    def steps(self) -> List[Step]:
        return [
            Step("load-application", self.load_application,
                 f"Loading application {self.config.app}"),
            Step("delegate-dns", self.delegate_dns,
                 "Sharing DNS permissions with the environment account"),
            Step("deploy-environment-stack", self.deploy_environment_stack,
                 f"Creating the infrastructure for the {self.config.name} environment"),
            Step("describe-environment", self.describe_environment,
                 f"Reading environment {self.config.name} from its stack"),
            Step("register-with-application", self.register_with_application,
                 f"Linking environment {self.config.name} to application {self.config.app}"),
            Step("store-environment", self.store_environment,
                 f"Storing environment {self.config.name}"),
        ]

    def load_application(self) -> None:
        self.app = self.store.get_application(self.config.app)

    def delegate_dns(self) -> None:
        """Grant DNS permissions to the environment account if it is a different account."""
        if not self.app.requires_dns_delegation():
            print("Application has no domain, skipping DNS delegation")
            return
        env_account = get_caller_identity(self.env_sts_client)['Account']
        if env_account == self.app.account_id:
            print(f"Environment account {env_account} is the application account, skipping DNS delegation")
            return
        print(f"Sharing DNS permissions for this application to account {env_account}")
        self.app_deployer.delegate_dns_permissions(self.app, env_account)
        print(f"Shared DNS permissions for this application to account {env_account}")

    def stack_config(self) -> EnvironmentStackConfig:
        tools_account = get_caller_identity(self.tools_sts_client)['Account']
        return EnvironmentStackConfig(
            app_name=self.config.app,
            env_name=self.config.name,
            template_body=self.template_body,
            tools_account_principal_arn=f"arn:aws:iam::{tools_account}:root",
            app_dns_name=self.app.domain or None,
            prod=self.config.prod,
            additional_tags=dict(self.app.tags, **self.config.tags),
            import_vpc=self.config.import_vpc,
            adjust_vpc=self.config.adjust_vpc
        )

    def deploy_environment_stack(self) -> None:
        """Create the environment stack; an existing stack is left as is."""
        conf = self.stack_config()
        self.stack_name = conf.stack_name()
        progress = EnvironmentProgress(order=environment_progress_order(self.config.import_vpc is not None))
        try:
            self.env_deployer.create_and_wait(conf, on_events=progress.on_events)
        except StackAlreadyExistsError:
            print(f"Environment {self.config.name} already exists in application {self.config.app}")
            return
        print(f"Created the infrastructure for the {self.config.name} environment")

    def describe_environment(self) -> None:
        description = self.env_deployer.gateway.describe_stack(self.stack_name)
        self.environment = self._to_record(description)
        print(f"  Account: {self.environment.account_id}")
        print(f"  Region: {self.environment.region}")
        if self.resource_groups is not None:
            self.cluster_arn = self.resource_groups.cluster(self.config.app, self.config.name)
            print(f"  Cluster: {self.cluster_arn}")

    def _to_record(self, description: StackDescription) -> EnvironmentRecord:
        region, account = parse_stack_id(description.stack_id)
        missing = [
            key for key in (ENV_MANAGER_ROLE_OUTPUT_KEY, ENV_EXECUTION_ROLE_OUTPUT_KEY)
            if key not in description.outputs
        ]
        if missing:
            raise EnvironmentInitError(
                "describe-environment",
                f"stack {description.name} is missing outputs: {', '.join(missing)}"
            )
        validate_role_arn(description.outputs[ENV_MANAGER_ROLE_OUTPUT_KEY])
        validate_role_arn(description.outputs[ENV_EXECUTION_ROLE_OUTPUT_KEY])
        custom = None
        if self.config.import_vpc is not None or self.config.adjust_vpc is not None:
            custom = CustomEnvConfig(import_vpc=self.config.import_vpc, adjust_vpc=self.config.adjust_vpc)
        return EnvironmentRecord(
            name=self.config.name,
            app=self.config.app,
            account_id=account,
            region=region,
            manager_role_arn=description.outputs[ENV_MANAGER_ROLE_OUTPUT_KEY],
            execution_role_arn=description.outputs[ENV_EXECUTION_ROLE_OUTPUT_KEY],
            prod=self.config.prod,
            custom_config=custom
        )

    def register_with_application(self) -> None:
        self.app_deployer.add_env_to_app(self.app, self.environment)
        print(
            f"Linked account {self.environment.account_id} and region {self.environment.region} "
            f"to application {self.app.name}"
        )

    def store_environment(self) -> None:
        self.store.create_environment(self.environment)

    def run(self) -> EnvironmentInitResult:
        """
        Execute every init step in order.

        Returns:
            EnvironmentInitResult describing the created environment

        Raises:
            EnvironmentInitError: If any step fails; the failed step is named
        """
        print(f"\n{'='*80}")
        print(f"Environment Init: {self.config.name}")
        print(f"Application: {self.config.app}")
        print(f"{'='*80}")

        try:
            run_steps(self.steps(), completed=self.completed_steps)
        except StepFailedError as e:
            print(f"\nFailed to create environment {self.config.name}", file=sys.stderr)
            raise EnvironmentInitError(e.step_name, str(e)) from e.cause

        print(
            f"\nCreated environment {self.environment.name} in region {self.environment.region} "
            f"under application {self.environment.app}."
        )
        return EnvironmentInitResult(
            environment_name=self.environment.name,
            app=self.environment.app,
            region=self.environment.region,
            account=self.environment.account_id,
            status="success",
            completed_steps=list(self.completed_steps),
            cluster_arn=self.cluster_arn
        )


def _split(value: Optional[str]) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()] if value else []


def config_from_args(args: argparse.Namespace) -> EnvironmentConfig:
    """Build an EnvironmentConfig from a config file and/or command line flags."""
    if args.config:
        config = parse_config(args.config)
    else:
        if not (args.app and args.name and args.template):
            raise ValidationError("--app, --name and --template are required without --config")
        config = EnvironmentConfig(app=args.app, name=args.name, template_path=args.template)

    if args.region:
        config.region = args.region
    if args.profile:
        config.profile = args.profile
    if args.prod:
        config.prod = True

    import_vpc = None
    if args.import_vpc_id or args.import_public_subnets or args.import_private_subnets:
        import_vpc = ImportVPCConfig(
            id=args.import_vpc_id or "",
            public_subnet_ids=_split(args.import_public_subnets),
            private_subnet_ids=_split(args.import_private_subnets)
        )
    adjust_vpc = None
    if args.override_vpc_cidr or args.override_public_cidrs or args.override_private_cidrs:
        adjust_vpc = AdjustVPCConfig()
        if args.override_vpc_cidr:
            adjust_vpc.cidr = args.override_vpc_cidr
        if args.override_public_cidrs:
            adjust_vpc.public_subnet_cidrs = _split(args.override_public_cidrs)
        if args.override_private_cidrs:
            adjust_vpc.private_subnet_cidrs = _split(args.override_private_cidrs)
    if import_vpc is not None or adjust_vpc is not None:
        config.import_vpc = import_vpc
        config.adjust_vpc = adjust_vpc

    validate_environment_name(config.name)
    validate_customized_resources(config.import_vpc, config.adjust_vpc, default_config=args.default_config)
    validate_credentials_flags(
        config.profile, args.aws_access_key_id, args.aws_secret_access_key, args.aws_session_token
    )
    if args.default_config:
        config.import_vpc = None
        config.adjust_vpc = None
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Create a new environment in an application')
    parser.add_argument('--config', type=str, help='Path to env-config.yaml')
    parser.add_argument('--app', type=str, help='Name of the application')
    parser.add_argument('--name', type=str, help='Name of the environment')
    parser.add_argument('--template', type=str, help='Path to the rendered environment template')
    parser.add_argument('--region', type=str, help='Region to create the environment in')
    parser.add_argument('--profile', type=str, help='Named profile for the environment credentials')
    parser.add_argument('--aws-access-key-id', type=str, help='Temporary access key ID')
    parser.add_argument('--aws-secret-access-key', type=str, help='Temporary secret access key')
    parser.add_argument('--aws-session-token', type=str, help='Temporary session token')
    parser.add_argument('--prod', action='store_true', help='Mark the environment as production')
    parser.add_argument('--default-config', action='store_true',
                        help='Use the default VPC configuration')
    parser.add_argument('--import-vpc-id', type=str, help='ID of an existing VPC to import')
    parser.add_argument('--import-public-subnets', type=str,
                        help='Comma-separated public subnet IDs to import')
    parser.add_argument('--import-private-subnets', type=str,
                        help='Comma-separated private subnet IDs to import')
    parser.add_argument('--override-vpc-cidr', type=str, help='CIDR of the VPC to create')
    parser.add_argument('--override-public-cidrs', type=str,
                        help='Comma-separated CIDRs of the public subnets')
    parser.add_argument('--override-private-cidrs', type=str,
                        help='Comma-separated CIDRs of the private subnets')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the environment init script."""
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
        template_body = config.read_template()
        if not args.aws_access_key_id:
            validate_aws_credentials(region=config.region, profile=config.profile)
    except (ValidationError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    tools_session = boto3.Session()
    env_session = boto3.Session(
        profile_name=config.profile,
        aws_access_key_id=args.aws_access_key_id,
        aws_secret_access_key=args.aws_secret_access_key,
        aws_session_token=args.aws_session_token,
        region_name=config.region
    )

    stage = EnvironmentInitStage(
        config=config,
        template_body=template_body,
        store=ConfigStore(ssm_client=tools_session.client('ssm')),
        env_deployer=StackDeployer(StackGateway(cfn_client=env_session.client('cloudformation'))),
        app_deployer=AppDeployer(
            gateway=StackGateway(cfn_client=tools_session.client('cloudformation')),
            cfn_client=tools_session.client('cloudformation')
        ),
        env_sts_client=env_session.client('sts'),
        tools_sts_client=tools_session.client('sts'),
        resource_groups=ResourceGroups(tagging_client=env_session.client('resourcegroupstaggingapi'))
    )

    try:
        stage.run()
        sys.exit(0)
    except EnvironmentInitError as e:
        print(f"\nEnvironment init failed at step {e.step_name}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
