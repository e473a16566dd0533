# k3sdeploy/provisioner.py

import sys
from typing import List, Optional, Sequence, Tuple

from botocore.exceptions import ClientError

from .dataclasses import ClusterSpec, DeployConfig, InstanceRecord, STATE_RUNNING
from .network import SecurityGroupManager, get_public_ip
from .poller import ReadinessPoller
from .ssh import SecretExtractor
from .tagging import BASTION_SUFFIX, MAIN_SUFFIX, ResourceTagSet, instance_suffix, role_name

K3S_INSTALL = "#!/usr/bin/env bash\ncurl -sfL https://get.k3s.io"


def main_user_data() -> str:
    """Installs a k3s server on the main node."""
    return f"{K3S_INSTALL} | sh -\n"


def worker_user_data(main_ip: str, token: str) -> str:
    """Installs a k3s agent that joins the main node on first boot."""
    return f"{K3S_INSTALL} | K3S_URL=https://{main_ip}:6443 K3S_TOKEN={token} sh -\n"


class InstanceProvisioner:
    """Launches the bastion and the cluster nodes, one instance at a time."""

    def __init__(self, ec2, config: DeployConfig, spec: ClusterSpec,
                 security_groups: SecurityGroupManager,
                 poller: ReadinessPoller,
                 extractor: SecretExtractor):
        self.ec2 = ec2
        self.config = config
        self.spec = spec
        self.security_groups = security_groups
        self.poller = poller
        self.extractor = extractor
        self.security_group_ids: List[str] = []
        self._ami_id: Optional[str] = None

    # --- Subnets and images ---

    def validate_subnets(self, subnet_ids: Sequence[str]) -> str:
        """Checks the subnets exist and share one VPC. Returns that VPC's id."""
        if not subnet_ids:
            print("ERROR: No subnets specified")
            sys.exit(1)

        try:
            response = self.ec2.describe_subnets(SubnetIds=list(subnet_ids))
        except ClientError as e:
            print(f"ERROR: Failed to describe subnets {', '.join(subnet_ids)}: {e}")
            sys.exit(1)

        vpcs = {s['VpcId'] for s in response.get('Subnets', [])}
        if not vpcs:
            print(f"ERROR: Subnets {', '.join(subnet_ids)} were not found")
            sys.exit(1)
        if len(vpcs) > 1:
            print(f"ERROR: Specified subnets {', '.join(subnet_ids)} are not in the same VPC")
            sys.exit(1)

        return vpcs.pop()

    def find_public_subnet(self, vpc_id: str) -> str:
        """Returns the first available subnet that maps public IPs and has a free address."""
        try:
            response = self.ec2.describe_subnets(
                Filters=[
                    {'Name': 'state', 'Values': ['available']},
                    {'Name': 'vpc-id', 'Values': [vpc_id]}
                ]
            )
        except ClientError as e:
            print(f"ERROR: Failed to describe subnets in VPC {vpc_id}: {e}")
            sys.exit(1)

        for subnet in response.get('Subnets', []):
            if subnet.get('MapPublicIpOnLaunch') and subnet.get('AvailableIpAddressCount', 0) >= 1:
                return subnet['SubnetId']

        print(f"ERROR: Unable to find a public subnet with a free address in VPC {vpc_id} for the bastion")
        sys.exit(1)

    def resolve_ami(self) -> str:
        """The configured AMI, or the latest Amazon Linux 2 image."""
        if self._ami_id:
            return self._ami_id
        if self.config.ami_id:
            self._ami_id = self.config.ami_id
            return self._ami_id

        try:
            ami_response = self.ec2.describe_images(
                Owners=['amazon'],
                Filters=[
                    {'Name': 'name', 'Values': [self.config.ami_name_pattern]},
                    {'Name': 'state', 'Values': ['available']}
                ]
            )
        except ClientError as e:
            print(f"ERROR: Failed to look up AMI {self.config.ami_name_pattern}: {e}")
            sys.exit(1)

        images = ami_response.get('Images', [])
        if not images:
            print(f"ERROR: No available AMI matches {self.config.ami_name_pattern}")
            sys.exit(1)

        self._ami_id = sorted(images, key=lambda x: x['CreationDate'], reverse=True)[0]['ImageId']
        print(f"INFO: Using AMI {self._ami_id}")
        return self._ami_id

    # --- Instances ---

    def launch_instance(self, name: str, subnet_id: str, group_id: str,
                        instance_type: str, user_data: Optional[str] = None) -> InstanceRecord:
        """Runs exactly one instance, tagged at creation so teardown can always find it."""
        tags = ResourceTagSet(self.config, self.spec.cluster_name, name)
        params = dict(
            ImageId=self.resolve_ami(),
            InstanceType=instance_type,
            KeyName=self.spec.key_name,
            MinCount=1, MaxCount=1,
            SecurityGroupIds=[group_id],
            SubnetId=subnet_id,
            TagSpecifications=tags.as_tag_specification('instance'),
        )
        if user_data:
            params['UserData'] = user_data

        try:
            response = self.ec2.run_instances(**params)
        except ClientError as e:
            print(f"ERROR: Failed to create instance {name} in {subnet_id}: {e}")
            sys.exit(1)

        record = InstanceRecord.from_response(response['Instances'][0])
        record.name = name
        print(f"SUCCESS: Created instance {name}: {record.instance_id} in {subnet_id}")
        return record

    def create_bastion(self, vpc_id: str) -> Tuple[str, str]:
        """Creates the bastion and its security group. Returns (instance id, public IP)."""
        print("\n" + "="*80)
        print("Creating Bastion Host")
        print("="*80)

        cluster_name = self.spec.cluster_name
        bastion_name = role_name(cluster_name, BASTION_SUFFIX)
        print(f"INFO: Creating bastion node {bastion_name} for cluster {cluster_name}")

        subnet_id = self.find_public_subnet(vpc_id)

        group_id = self.security_groups.create_security_group(cluster_name, bastion_name, vpc_id)
        self.security_group_ids.append(group_id)
        self.security_groups.authorize_bastion_rules(group_id, get_public_ip(self.config))

        record = self.launch_instance(bastion_name, subnet_id, group_id, self.config.bastion_instance_type)
        running = self.poller.wait_for_state(BASTION_SUFFIX, STATE_RUNNING, instance_id=record.instance_id)
        if not running.public_ip:
            print(f"ERROR: Bastion {running.instance_id} has no public IP address")
            sys.exit(1)

        print(f"SUCCESS: Bastion ready: {running.public_ip}")
        return running.instance_id, running.public_ip

    def create_instances(self, vpc_id: str, subnets: Sequence[str], bastion_ip: str) -> List[InstanceRecord]:
        """Launches the main node, extracts its secrets, then launches the workers.

        Instances are spread over subnets round-robin: the i-th node lands in
        subnets[i % len(subnets)].
        """
        print("\n" + "="*80)
        print(f"Deploying cluster {self.spec.cluster_name} with {self.spec.count} instances")
        print("="*80)

        cluster_name = self.spec.cluster_name
        group_id = self.security_groups.create_security_group(cluster_name, cluster_name, vpc_id)
        self.security_group_ids.append(group_id)
        self.security_groups.authorize_cluster_rules(group_id)

        records = []
        main_ip, token = None, None
        for index in range(self.spec.count):
            suffix = instance_suffix(index)
            subnet_id = subnets[index % len(subnets)]
            if index == 0:
                user_data = main_user_data()
            else:
                user_data = worker_user_data(main_ip, token)

            record = self.launch_instance(
                role_name(cluster_name, suffix), subnet_id, group_id,
                self.config.node_instance_type, user_data
            )

            if index == 0:
                running = self.poller.wait_for_state(MAIN_SUFFIX, STATE_RUNNING, instance_id=record.instance_id)
                record = running
                main_ip = running.private_ip
                token = self.extractor.extract(bastion_ip, main_ip)

            records.append(record)

        return records
