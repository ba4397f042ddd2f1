"""
Tag-based resource lookups.

Used to find the ECS cluster of an environment and to detect workload stacks
that still live in an environment before it is deleted.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from stack_config import APP_TAG_KEY, ENV_TAG_KEY

CLUSTER_RESOURCE_TYPE = "ecs:cluster"
STACK_RESOURCE_TYPE = "cloudformation"


class ResourceLookupError(Exception):
    """Exception raised when tagged resources cannot be resolved."""
    pass


@dataclass
class Resource:
    arn: str
    tags: Dict[str, str] = field(default_factory=dict)


class ResourceGroups:
    """Thin wrapper over the Resource Groups Tagging API."""

    def __init__(self, tagging_client=None, region: Optional[str] = None):
        self.tagging_client = tagging_client or boto3.client('resourcegroupstaggingapi', region_name=region)

    def get_resources_by_tags(self, resource_type: str, tags: Dict[str, str]) -> List[Resource]:
        """
        Return resources of a type carrying every given tag.

        Args:
            resource_type: Resource type filter, e.g. "cloudformation" or "ecs:cluster"
            tags: Tag key to required value; an empty value matches any value

        Returns:
            Matching resources with their tags

        Raises:
            ResourceLookupError: If the tagging API call fails
        """
        tag_filters = []
        for key, value in tags.items():
            tag_filters.append({'Key': key, 'Values': [value] if value else []})

        resources = []
        try:
            paginator = self.tagging_client.get_paginator('get_resources')
            for page in paginator.paginate(ResourceTypeFilters=[resource_type], TagFilters=tag_filters):
                for mapping in page.get('ResourceTagMappingList', []):
                    resources.append(Resource(
                        arn=mapping['ResourceARN'],
                        tags={t['Key']: t['Value'] for t in mapping.get('Tags', [])}
                    ))
        except ClientError as e:
            raise ResourceLookupError(f"get {resource_type} resources by tags: {e}") from e
        return resources

    def cluster(self, app: str, env: str) -> str:
        """
        Return the ARN of the single ECS cluster in an environment.

        Raises:
            ResourceLookupError: If zero or several clusters are tagged with the environment
        """
        try:
            clusters = self.get_resources_by_tags(CLUSTER_RESOURCE_TYPE, {
                APP_TAG_KEY: app,
                ENV_TAG_KEY: env,
            })
        except ResourceLookupError as e:
            raise ResourceLookupError(f"get cluster resources for environment {env}: {e}") from e
        if not clusters:
            raise ResourceLookupError(f"no cluster found in environment {env}")
        if len(clusters) > 1:
            raise ResourceLookupError(f"more than one cluster is found in environment {env}")
        return clusters[0].arn
