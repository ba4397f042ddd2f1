"""
Application and environment records backed by SSM Parameter Store.

Records are stored as JSON documents under:
- /copilot/applications/<app>
- /copilot/applications/<app>/environments/<env>
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from stack_config import AdjustVPCConfig, ImportVPCConfig

FMT_APP_PATH = "/copilot/applications/{app}"
FMT_ENV_PATH = "/copilot/applications/{app}/environments/{env}"
FMT_ENV_PREFIX = "/copilot/applications/{app}/environments"


class StoreError(Exception):
    """Exception raised when the parameter store cannot be read or written."""
    pass


class ApplicationNotFoundError(StoreError):
    def __init__(self, app: str):
        super().__init__(f"couldn't find an application named {app} in the parameter store")
        self.app = app


class EnvironmentNotFoundError(StoreError):
    def __init__(self, app: str, env: str):
        super().__init__(f"couldn't find environment {env} in the application {app}")
        self.app = app
        self.env = env


@dataclass
class ApplicationRecord:
    """An application; a set of environments sharing one tools account."""
    name: str
    account_id: str
    domain: str = ""
    tags: Dict[str, str] = field(default_factory=dict)

    def requires_dns_delegation(self) -> bool:
        return bool(self.domain)


@dataclass
class CustomEnvConfig:
    """VPC customisations chosen when the environment was created."""
    import_vpc: Optional[ImportVPCConfig] = None
    adjust_vpc: Optional[AdjustVPCConfig] = None


@dataclass
class EnvironmentRecord:
    """A deployed environment: an account and region pair within an application."""
    name: str
    app: str
    account_id: str
    region: str
    manager_role_arn: str
    execution_role_arn: str
    prod: bool = False
    custom_config: Optional[CustomEnvConfig] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "EnvironmentRecord":
        data: Dict[str, Any] = json.loads(raw)
        custom = data.pop('custom_config', None)
        record = cls(**data)
        if custom:
            record.custom_config = CustomEnvConfig(
                import_vpc=ImportVPCConfig(**custom['import_vpc']) if custom.get('import_vpc') else None,
                adjust_vpc=AdjustVPCConfig(**custom['adjust_vpc']) if custom.get('adjust_vpc') else None
            )
        return record


class ConfigStore:
    """Reads and writes application and environment records."""

    def __init__(self, ssm_client=None, region: Optional[str] = None):
        """
        Initialize the store.

        Args:
            ssm_client: Optional boto3 SSM client for testing
            region: AWS region used when creating a client
        """
        self.ssm_client = ssm_client or boto3.client('ssm', region_name=region)

    def create_application(self, app: ApplicationRecord) -> None:
        self._put(FMT_APP_PATH.format(app=app.name), json.dumps(asdict(app), sort_keys=True))

    def get_application(self, name: str) -> ApplicationRecord:
        """
        Fetch an application record.

        Raises:
            ApplicationNotFoundError: If no such application exists
            StoreError: If the parameter store call fails
        """
        raw = self._get(FMT_APP_PATH.format(app=name))
        if raw is None:
            raise ApplicationNotFoundError(name)
        return ApplicationRecord(**json.loads(raw))

    def create_environment(self, env: EnvironmentRecord) -> None:
        """
        Store a new environment record. An existing record is left untouched.

        Raises:
            ApplicationNotFoundError: If the environment's application does not exist
            StoreError: If the parameter store call fails
        """
        self.get_application(env.app)
        path = FMT_ENV_PATH.format(app=env.app, env=env.name)
        if not self._put(path, env.to_json()):
            print(f"Environment {env.name} is already stored in application {env.app}")

    def get_environment(self, app: str, name: str) -> EnvironmentRecord:
        """
        Fetch an environment record.

        Raises:
            EnvironmentNotFoundError: If no such environment exists
            StoreError: If the parameter store call fails
        """
        raw = self._get(FMT_ENV_PATH.format(app=app, env=name))
        if raw is None:
            raise EnvironmentNotFoundError(app, name)
        return EnvironmentRecord.from_json(raw)

    def list_environments(self, app: str) -> List[EnvironmentRecord]:
        envs = []
        try:
            paginator = self.ssm_client.get_paginator('get_parameters_by_path')
            for page in paginator.paginate(Path=FMT_ENV_PREFIX.format(app=app), Recursive=False):
                for param in page.get('Parameters', []):
                    envs.append(EnvironmentRecord.from_json(param['Value']))
        except ClientError as e:
            raise StoreError(f"list environments in application {app}: {e}") from e
        return envs

    def delete_environment(self, app: str, name: str) -> None:
        """Delete an environment record; deleting a missing record succeeds."""
        try:
            self.ssm_client.delete_parameter(Name=FMT_ENV_PATH.format(app=app, env=name))
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ParameterNotFound':
                return
            raise StoreError(f"delete environment {name} from application {app}: {e}") from e

    def _put(self, path: str, value: str) -> bool:
        try:
            self.ssm_client.put_parameter(
                Name=path,
                Value=value,
                Type='String',
                Overwrite=False
            )
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ParameterAlreadyExists':
                return False
            raise StoreError(f"put parameter {path}: {e}") from e
        return True

    def _get(self, path: str) -> Optional[str]:
        try:
            response = self.ssm_client.get_parameter(Name=path)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ParameterNotFound':
                return None
            raise StoreError(f"get parameter {path}: {e}") from e
        return response['Parameter']['Value']
