"""
Validation module for environment lifecycle scripts.

This module provides validation functions for user input before any
infrastructure is touched: names, CIDR ranges, role ARNs, mutually exclusive
options, and AWS credentials.
"""

import ipaddress
import re
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError, NoCredentialsError, ProfileNotFound

from stack_config import AdjustVPCConfig, ImportVPCConfig

ENV_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")
ENV_NAME_MAX_LENGTH = 100
ROLE_ARN_PATTERN = re.compile(r"^arn:aws[a-zA-Z-]*:iam::\d{12}:role/[\w+=,.@/-]+$")


class ValidationError(Exception):
    """Exception raised when validation fails."""
    pass


def validate_environment_name(name: str) -> bool:
    """
    Validate an environment name.

    Names start with a lowercase letter and contain only lowercase letters,
    digits and hyphens.

    Raises:
        ValidationError: If the name is invalid
    """
    if not name:
        raise ValidationError("environment name cannot be empty")
    if len(name) > ENV_NAME_MAX_LENGTH:
        raise ValidationError(f"environment name {name} exceeds {ENV_NAME_MAX_LENGTH} characters")
    if not ENV_NAME_PATTERN.match(name) or "--" in name or name.endswith("-"):
        raise ValidationError(
            f"environment name {name} must start with a letter, contain only lower-case letters, "
            f"numbers and single hyphens, and cannot end with a hyphen"
        )
    return True


def validate_cidr(cidr: str) -> bool:
    """
    Validate an IPv4 CIDR block such as 10.0.0.0/16.

    Raises:
        ValidationError: If the value is not a valid network
    """
    if "/" not in cidr:
        raise ValidationError(f"{cidr} is not a valid IPv4 CIDR block")
    try:
        ipaddress.IPv4Network(cidr, strict=False)
    except ValueError as e:
        raise ValidationError(f"{cidr} is not a valid IPv4 CIDR block: {e}") from e
    return True


def validate_cidr_list(cidrs: List[str]) -> bool:
    """Validate a list of CIDR blocks; the list cannot be empty."""
    if not cidrs:
        raise ValidationError("at least one CIDR block is required")
    for cidr in cidrs:
        validate_cidr(cidr.strip())
    return True


def validate_role_arn(arn: str) -> bool:
    """
    Validate an IAM role ARN.

    Raises:
        ValidationError: If the value is not an IAM role ARN
    """
    if not ROLE_ARN_PATTERN.match(arn or ""):
        raise ValidationError(f"{arn} is not a valid IAM role ARN")
    return True


def validate_customized_resources(
    import_vpc: Optional[ImportVPCConfig],
    adjust_vpc: Optional[AdjustVPCConfig],
    default_config: bool = False
) -> bool:
    """
    Validate the VPC customisation options chosen for a new environment.

    Importing and adjusting are mutually exclusive, and neither can be combined
    with the default configuration.

    Raises:
        ValidationError: If the options conflict or contain invalid CIDRs
    """
    if import_vpc is not None and adjust_vpc is not None:
        raise ValidationError("cannot specify both import vpc flags and configure vpc flags")
    if (import_vpc is not None or adjust_vpc is not None) and default_config:
        raise ValidationError("cannot import or configure vpc if --default-config is set")
    if import_vpc is not None and not import_vpc.id:
        raise ValidationError("an imported VPC requires a VPC ID")
    if adjust_vpc is not None:
        validate_cidr(adjust_vpc.cidr)
        validate_cidr_list(adjust_vpc.public_subnet_cidrs)
        validate_cidr_list(adjust_vpc.private_subnet_cidrs)
    return True


def validate_credentials_flags(
    profile: Optional[str],
    access_key_id: Optional[str] = None,
    secret_access_key: Optional[str] = None,
    session_token: Optional[str] = None
) -> bool:
    """
    Validate that a named profile is not combined with temporary credentials.

    Raises:
        ValidationError: If both are given
    """
    if not profile:
        return True
    for flag, value in (
        ('--aws-access-key-id', access_key_id),
        ('--aws-secret-access-key', secret_access_key),
        ('--aws-session-token', session_token),
    ):
        if value:
            raise ValidationError(f"cannot specify both --profile and {flag}")
    return True


def validate_aws_credentials(
    account_id: Optional[str] = None,
    region: Optional[str] = None,
    profile: Optional[str] = None
) -> str:
    """
    Validate that AWS credentials are available and valid.

    Args:
        account_id: Optional AWS account ID to validate against
        region: Optional AWS region to set
        profile: Optional named profile to load credentials from

    Returns:
        The account ID the credentials belong to

    Raises:
        ValidationError: If credentials are invalid or unavailable
    """
    try:
        session = boto3.Session(profile_name=profile, region_name=region)

        sts_client = session.client('sts')
        identity = sts_client.get_caller_identity()

        actual_account = identity['Account']
        if account_id and actual_account != account_id:
            raise ValidationError(
                f"AWS account mismatch: expected {account_id}, got {actual_account}"
            )

        return actual_account

    except ValidationError:
        raise
    except ProfileNotFound as e:
        raise ValidationError(f"AWS profile not found: {str(e)}") from e
    except NoCredentialsError as e:
        raise ValidationError("AWS credentials not found. Please configure AWS credentials.") from e
    except ClientError as e:
        raise ValidationError(f"AWS credential validation failed: {str(e)}") from e
