# k3sdeploy/tagging.py

from typing import Dict, List, Optional

from .dataclasses import DeployConfig

BASTION_SUFFIX = "-bastion"
MAIN_SUFFIX = "-main"


def role_name(cluster_name: str, suffix: str) -> str:
    """Display name for a resource, e.g. 'demo' + '-bastion'."""
    return f"{cluster_name}{suffix}"


def instance_suffix(index: int) -> str:
    """Role suffix for the index-th cluster node (0-based)."""
    if index == 0:
        return MAIN_SUFFIX
    return f"-worker-0{index - 1}"


class ResourceTagSet:
    """The tags every resource created by k3sdeploy carries."""

    def __init__(self, config: DeployConfig, cluster_name: str, name: str):
        self.config = config
        self.cluster_name = cluster_name
        self.name = name

    def as_tags(self) -> List[Dict]:
        c = self.config
        return [
            {'Key': c.tag_name, 'Value': self.name},
            {'Key': c.tag_cluster, 'Value': self.cluster_name},
            {'Key': c.tag_source, 'Value': c.tag_source_value},
            {'Key': c.tag_owner, 'Value': c.tag_owner_value},
        ]

    def as_tag_specification(self, resource_type: str) -> List[Dict]:
        return [{'ResourceType': resource_type, 'Tags': self.as_tags()}]


def ownership_filters(config: DeployConfig, cluster_name: str,
                      name: Optional[str] = None,
                      instance_id: Optional[str] = None) -> List[Dict]:
    """Describe filters restricted to resources this tool created."""
    filters = [
        {'Name': f"tag:{config.tag_cluster}", 'Values': [cluster_name]},
        {'Name': f"tag:{config.tag_owner}", 'Values': [config.tag_owner_value]},
    ]
    if name:
        filters.append({'Name': f"tag:{config.tag_name}", 'Values': [name]})
    if instance_id:
        filters.append({'Name': 'instance-id', 'Values': [instance_id]})
    return filters

