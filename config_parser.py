"""
Configuration parser for environment lifecycle scripts.

This module provides functionality to parse and validate env-config.yaml files
against the JSON schema.
"""

import json
import yaml
from dataclasses import dataclass, field
from typing import Dict, Optional
from pathlib import Path
from jsonschema import validate

from stack_config import (
    AdjustVPCConfig,
    ImportVPCConfig,
    DEFAULT_VPC_CIDR,
    DEFAULT_PUBLIC_SUBNET_CIDRS,
    DEFAULT_PRIVATE_SUBNET_CIDRS,
)
from validation import validate_customized_resources

DEFAULT_SCHEMA_PATH = str(Path(__file__).parent / "env-config.schema.json")


@dataclass
class EnvironmentConfig:
    """Configuration for a new environment."""
    app: str
    name: str
    template_path: str
    region: Optional[str] = None
    profile: Optional[str] = None
    prod: bool = False
    tags: Dict[str, str] = field(default_factory=dict)
    import_vpc: Optional[ImportVPCConfig] = None
    adjust_vpc: Optional[AdjustVPCConfig] = None

    def read_template(self) -> str:
        """Read the rendered environment template from disk."""
        template_file = Path(self.template_path)
        if not template_file.exists():
            raise FileNotFoundError(f"Template file not found: {self.template_path}")
        return template_file.read_text()


class ConfigParser:
    """Parser for environment configuration files."""

    def __init__(self, schema_path: str = DEFAULT_SCHEMA_PATH):
        """
        Initialize the configuration parser.

        Args:
            schema_path: Path to the JSON schema file
        """
        self.schema_path = schema_path
        self.schema = self._load_schema()

    def _load_schema(self) -> dict:
        """Load the JSON schema from file."""
        schema_file = Path(self.schema_path)
        if not schema_file.exists():
            raise FileNotFoundError(f"Schema file not found: {self.schema_path}")

        with open(schema_file, 'r') as f:
            return json.load(f)

    def parse(self, config_path: str) -> EnvironmentConfig:
        """
        Parse and validate a configuration file.

        Args:
            config_path: Path to the env-config.yaml file

        Returns:
            Parsed and validated EnvironmentConfig object

        Raises:
            FileNotFoundError: If config file doesn't exist
            jsonschema.ValidationError: If config doesn't match schema
            validation.ValidationError: If the VPC settings are invalid
            yaml.YAMLError: If YAML is malformed
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f)

        validate(instance=config_data, schema=self.schema)

        config = self._parse_config(config_data)
        validate_customized_resources(config.import_vpc, config.adjust_vpc)

        # Template paths are relative to the config file.
        template = Path(config.template_path)
        if not template.is_absolute():
            config.template_path = str(config_file.parent / template)
        return config

    def _parse_config(self, config_data: dict) -> EnvironmentConfig:
        """Convert raw config data into an EnvironmentConfig object."""
        env_data = config_data['environment']
        vpc_data = env_data.get('vpc') or {}

        import_vpc = None
        if 'import' in vpc_data:
            import_data = vpc_data['import']
            import_vpc = ImportVPCConfig(
                id=import_data['id'],
                public_subnet_ids=import_data.get('public_subnets', []),
                private_subnet_ids=import_data.get('private_subnets', [])
            )

        adjust_vpc = None
        if 'configure' in vpc_data:
            adjust_data = vpc_data['configure']
            adjust_vpc = AdjustVPCConfig(
                cidr=adjust_data.get('cidr', DEFAULT_VPC_CIDR),
                public_subnet_cidrs=adjust_data.get('public_subnet_cidrs', list(DEFAULT_PUBLIC_SUBNET_CIDRS)),
                private_subnet_cidrs=adjust_data.get('private_subnet_cidrs', list(DEFAULT_PRIVATE_SUBNET_CIDRS))
            )

        return EnvironmentConfig(
            app=config_data['application'],
            name=env_data['name'],
            template_path=env_data['template'],
            region=env_data.get('region'),
            profile=env_data.get('profile'),
            prod=env_data.get('prod', False),
            tags=env_data.get('tags', {}),
            import_vpc=import_vpc,
            adjust_vpc=adjust_vpc
        )


def parse_config(config_path: str, schema_path: str = DEFAULT_SCHEMA_PATH) -> EnvironmentConfig:
    """
    Convenience function to parse a configuration file.

    Args:
        config_path: Path to the env-config.yaml file
        schema_path: Path to the JSON schema file

    Returns:
        Parsed and validated EnvironmentConfig object
    """
    parser = ConfigParser(schema_path=schema_path)
    return parser.parse(config_path)
