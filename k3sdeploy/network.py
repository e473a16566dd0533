# k3sdeploy/network.py

import ipaddress
import json
import sys
import urllib.request
from typing import List

from botocore.exceptions import ClientError

from .dataclasses import DeployConfig, SecurityGroupRecord, SecurityGroupRule
from .tagging import ResourceTagSet

PRIVATE_NETWORK = "10.0.0.0/8"
ANYWHERE = "0.0.0.0/0"


def bastion_ingress_rules(operator_ip: str) -> List[SecurityGroupRule]:
    """SSH from the operator's current address only."""
    return [SecurityGroupRule("tcp", 22, 22, f"{operator_ip}/32")]


def cluster_ingress_rules() -> List[SecurityGroupRule]:
    """k3s server ports from the private network, SSH from anywhere."""
    # https://docs.k3s.io/installation/requirements#networking
    return [
        SecurityGroupRule("tcp", 6443, 6443, PRIVATE_NETWORK),
        SecurityGroupRule("tcp", 2379, 2380, PRIVATE_NETWORK),
        SecurityGroupRule("tcp", 10250, 10250, PRIVATE_NETWORK),
        SecurityGroupRule("tcp", 22, 22, ANYWHERE),
    ]


def egress_rules() -> List[SecurityGroupRule]:
    return [SecurityGroupRule("tcp", 0, 65535, ANYWHERE)]


def get_public_ip(config: DeployConfig) -> str:
    """Looks up the operator's public IPv4 address."""
    try:
        with urllib.request.urlopen(config.ip_lookup_url, timeout=config.ip_lookup_timeout) as response:
            body = json.loads(response.read().decode('utf-8'))
        ip = body['query']
        ipaddress.ip_address(ip)
    except (OSError, ValueError, KeyError, TypeError) as e:
        print(f"ERROR: Failed to look up public IP address via {config.ip_lookup_url}: {e}")
        sys.exit(1)
    return ip


class SecurityGroupManager:
    """Creates the bastion and cluster security groups for one cluster."""

    def __init__(self, ec2, config: DeployConfig):
        self.ec2 = ec2
        self.config = config
        self._vpcs = {}

    def create_security_group(self, cluster_name: str, role_name: str, vpc_id: str) -> str:
        """Creates an empty tagged group in the VPC and returns its id."""
        group_name = f"{role_name}-sg"
        tags = ResourceTagSet(self.config, cluster_name, group_name)
        try:
            group_id = self.ec2.create_security_group(
                GroupName=group_name,
                Description=group_name,
                VpcId=vpc_id,
                TagSpecifications=tags.as_tag_specification('security-group')
            )['GroupId']
        except ClientError as e:
            print(f"ERROR: Failed to create security group {group_name} in VPC {vpc_id}: {e}")
            sys.exit(1)

        self._vpcs[group_id] = vpc_id
        print(f"SUCCESS: Created Security Group {group_name}: {group_id}")
        return group_id

    def authorize_bastion_rules(self, group_id: str, operator_ip: str) -> SecurityGroupRecord:
        return self._authorize(group_id, bastion_ingress_rules(operator_ip), egress_rules())

    def authorize_cluster_rules(self, group_id: str) -> SecurityGroupRecord:
        return self._authorize(group_id, cluster_ingress_rules(), egress_rules())

    def _authorize(self, group_id: str, ingress: List[SecurityGroupRule],
                   egress: List[SecurityGroupRule]) -> SecurityGroupRecord:
        for rule in ingress:
            try:
                self.ec2.authorize_security_group_ingress(
                    GroupId=group_id,
                    IpPermissions=[rule.as_permission()]
                )
            except ClientError as e:
                print(f"ERROR: Failed to create ingress rule {rule.from_port}-{rule.to_port}/{rule.protocol} "
                      f"on {group_id}: {e}")
                sys.exit(1)

        for rule in egress:
            try:
                self.ec2.authorize_security_group_egress(
                    GroupId=group_id,
                    IpPermissions=[rule.as_permission()]
                )
            except ClientError as e:
                print(f"ERROR: Failed to create egress rule on {group_id}: {e}")
                sys.exit(1)

        print(f"SUCCESS: Authorized ingress and egress rules on {group_id}")
        return SecurityGroupRecord(
            group_id=group_id,
            vpc_id=self._vpcs.get(group_id, ""),
            ingress=list(ingress),
            egress=list(egress)
        )
