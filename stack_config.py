"""
Stack configuration types for environment lifecycle scripts.

This module defines the data handed to the stack deployer:
- StackSpec: the immutable description of one stack operation
- StackStatus: CloudFormation stack states as observed by polling
- StackConfiguration kinds (environment, workload, addons) that render specs
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol

# Tag keys shared by every stack and used to look resources up by app/env/service.
APP_TAG_KEY = "copilot-application"
ENV_TAG_KEY = "copilot-environment"
SERVICE_TAG_KEY = "copilot-service"

# Environment stack parameters and outputs.
ENV_ALB_WORKLOADS_PARAM_KEY = "ALBWorkloads"
ENV_APP_NAME_PARAM_KEY = "AppName"
ENV_NAME_PARAM_KEY = "EnvironmentName"
ENV_TOOLS_ACCOUNT_PARAM_KEY = "ToolsAccountPrincipalARN"
ENV_DNS_NAME_PARAM_KEY = "AppDNSName"
ENV_MANAGER_ROLE_OUTPUT_KEY = "EnvironmentManagerRoleARN"
ENV_EXECUTION_ROLE_OUTPUT_KEY = "CFNExecutionRoleARN"

DEFAULT_VPC_CIDR = "10.0.0.0/16"
DEFAULT_PUBLIC_SUBNET_CIDRS = ["10.0.0.0/24", "10.0.1.0/24"]
DEFAULT_PRIVATE_SUBNET_CIDRS = ["10.0.2.0/24", "10.0.3.0/24"]


class StackStatus(str, Enum):
    """CloudFormation stack status values."""
    NOT_FOUND = "NOT_FOUND"
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "StackStatus":
        """Parse a raw status, mapping unknown or missing values to NOT_FOUND."""
        if not value:
            return cls.NOT_FOUND
        try:
            return cls(value)
        except ValueError:
            return cls.NOT_FOUND

    def is_in_progress(self) -> bool:
        return self.value.endswith("_IN_PROGRESS")

    def is_terminal(self) -> bool:
        return not self.is_in_progress()


@dataclass(frozen=True)
class StackSpec:
    """Everything needed to submit one stack operation."""
    name: str
    template_body: str
    parameters: Dict[str, str] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    termination_protection: bool = False
    role_arn: Optional[str] = None

    def cfn_parameters(self) -> List[Dict[str, str]]:
        return [
            {'ParameterKey': key, 'ParameterValue': value}
            for key, value in sorted(self.parameters.items())
        ]

    def cfn_tags(self) -> List[Dict[str, str]]:
        return [
            {'Key': key, 'Value': value}
            for key, value in sorted(self.tags.items())
        ]


class StackConfiguration(Protocol):
    """Interface implemented by every kind of stack the deployer can deploy."""

    def stack_name(self) -> str:
        ...

    def template(self) -> str:
        ...

    def parameters(self) -> Dict[str, str]:
        ...

    def tags(self) -> Dict[str, str]:
        ...


def merge_tags(default: Dict[str, str], additional: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Merge user tags with the reserved tags; reserved tags always win."""
    merged = dict(additional or {})
    merged.update(default)
    return merged


def to_stack_spec(
    conf: StackConfiguration,
    role_arn: Optional[str] = None,
    termination_protection: bool = False
) -> StackSpec:
    """
    Render a stack configuration into an immutable StackSpec.

    Args:
        conf: Any stack configuration kind
        role_arn: Optional CloudFormation execution role for the operation
        termination_protection: Whether to enable termination protection on create

    Returns:
        StackSpec ready to be submitted
    """
    return StackSpec(
        name=conf.stack_name(),
        template_body=conf.template(),
        parameters=conf.parameters(),
        tags=conf.tags(),
        termination_protection=termination_protection,
        role_arn=role_arn
    )


@dataclass
class ImportVPCConfig:
    """Existing VPC resources to reuse instead of creating new ones."""
    id: str
    public_subnet_ids: List[str] = field(default_factory=list)
    private_subnet_ids: List[str] = field(default_factory=list)


@dataclass
class AdjustVPCConfig:
    """CIDR overrides for the VPC created with the environment."""
    cidr: str = DEFAULT_VPC_CIDR
    public_subnet_cidrs: List[str] = field(default_factory=lambda: list(DEFAULT_PUBLIC_SUBNET_CIDRS))
    private_subnet_cidrs: List[str] = field(default_factory=lambda: list(DEFAULT_PRIVATE_SUBNET_CIDRS))


@dataclass
class EnvironmentStackConfig:
    """Environment stack shared by every workload deployed to the environment."""
    app_name: str
    env_name: str
    template_body: str
    tools_account_principal_arn: str
    app_dns_name: Optional[str] = None
    prod: bool = False
    additional_tags: Dict[str, str] = field(default_factory=dict)
    import_vpc: Optional[ImportVPCConfig] = None
    adjust_vpc: Optional[AdjustVPCConfig] = None

    def stack_name(self) -> str:
        return f"{self.app_name}-{self.env_name}"

    def template(self) -> str:
        return self.template_body

    def parameters(self) -> Dict[str, str]:
        params = {
            ENV_APP_NAME_PARAM_KEY: self.app_name,
            ENV_NAME_PARAM_KEY: self.env_name,
            ENV_TOOLS_ACCOUNT_PARAM_KEY: self.tools_account_principal_arn,
            ENV_DNS_NAME_PARAM_KEY: self.app_dns_name or "",
            ENV_ALB_WORKLOADS_PARAM_KEY: "",
        }
        if self.import_vpc is not None:
            params['VPCID'] = self.import_vpc.id
            params['PublicSubnetIDs'] = ",".join(self.import_vpc.public_subnet_ids)
            params['PrivateSubnetIDs'] = ",".join(self.import_vpc.private_subnet_ids)
        elif self.adjust_vpc is not None:
            params['VPCCIDR'] = self.adjust_vpc.cidr
            params['PublicSubnetCIDRs'] = ",".join(self.adjust_vpc.public_subnet_cidrs)
            params['PrivateSubnetCIDRs'] = ",".join(self.adjust_vpc.private_subnet_cidrs)
        return params

    def tags(self) -> Dict[str, str]:
        return merge_tags({
            APP_TAG_KEY: self.app_name,
            ENV_TAG_KEY: self.env_name,
        }, self.additional_tags)


@dataclass
class WorkloadStackConfig:
    """Stack of a single service or job deployed into an environment."""
    app_name: str
    env_name: str
    workload_name: str
    template_body: str
    workload_parameters: Dict[str, str] = field(default_factory=dict)
    additional_tags: Dict[str, str] = field(default_factory=dict)

    def stack_name(self) -> str:
        return f"{self.app_name}-{self.env_name}-{self.workload_name}"

    def template(self) -> str:
        return self.template_body

    def parameters(self) -> Dict[str, str]:
        params = {
            ENV_APP_NAME_PARAM_KEY: self.app_name,
            ENV_NAME_PARAM_KEY: self.env_name,
            'WorkloadName': self.workload_name,
        }
        params.update(self.workload_parameters)
        return params

    def tags(self) -> Dict[str, str]:
        return merge_tags({
            APP_TAG_KEY: self.app_name,
            ENV_TAG_KEY: self.env_name,
            SERVICE_TAG_KEY: self.workload_name,
        }, self.additional_tags)


@dataclass
class AddonsStackConfig:
    """Nested addons stack attached to a workload; it only takes the shared parameters."""
    workload: WorkloadStackConfig
    template_body: str

    def stack_name(self) -> str:
        return f"{self.workload.stack_name()}-AddonsStack"

    def template(self) -> str:
        return self.template_body

    def parameters(self) -> Dict[str, str]:
        return {
            'App': self.workload.app_name,
            'Env': self.workload.env_name,
            'Name': self.workload.workload_name,
        }

    def tags(self) -> Dict[str, str]:
        return self.workload.tags()
