# k3sdeploy/cluster_manager.py

import sys
from typing import Optional

import boto3
from botocore.exceptions import NoCredentialsError

from .dataclasses import ClusterResult, ClusterSpec, DeployConfig
from .network import SecurityGroupManager
from .poller import ReadinessPoller
from .provisioner import InstanceProvisioner
from .ssh import SecretExtractor, register_key
from .teardown import TeardownSequencer


class K3sLauncher:
    """Creates or destroys one k3s cluster. Handles all AWS interactions."""

    def __init__(self, config: DeployConfig, ec2=None):
        self.config = config

        if ec2 is not None:
            self.ec2 = ec2
            return
        try:
            self.ec2 = boto3.client('ec2', region_name=config.region)
        except NoCredentialsError:
            print("ERROR: AWS credentials not found. Run: aws configure")
            sys.exit(1)

    # --- Public Methods ---

    def execute(self, spec: ClusterSpec) -> Optional[ClusterResult]:
        """Main entry point: destroy when spec.delete is set, otherwise create."""
        self._validate_spec(spec)

        if spec.delete:
            return self._mode_delete(spec)
        return self._mode_create(spec)

    # --- Mode Implementations ---

    def _mode_create(self, spec: ClusterSpec) -> ClusterResult:
        print("\n" + "="*80)
        print(f"CREATE MODE: Setting up cluster {spec.cluster_name}")
        print("="*80)

        # agent forwarding needs the key loaded before the first ssh call
        register_key(spec.key_path, self.config.key_registration_timeout)

        poller = ReadinessPoller(self.ec2, self.config, spec.cluster_name)
        extractor = SecretExtractor(self.config, spec.cluster_name)
        provisioner = InstanceProvisioner(
            self.ec2, self.config, spec,
            SecurityGroupManager(self.ec2, self.config),
            poller, extractor
        )

        vpc_id = provisioner.validate_subnets(spec.subnets)
        print(f"INFO: Using VPC {vpc_id}")

        bastion_id, bastion_ip = provisioner.create_bastion(vpc_id)
        records = provisioner.create_instances(vpc_id, spec.subnets, bastion_ip)

        result = ClusterResult(
            cluster_name=spec.cluster_name,
            bastion_instance_id=bastion_id,
            bastion_public_ip=bastion_ip,
            main_instance_id=records[0].instance_id,
            main_private_ip=records[0].private_ip,
            worker_instance_ids=[r.instance_id for r in records[1:]],
            security_group_ids=list(provisioner.security_group_ids),
            kubeconfig_path=self.config.kubeconfig_path,
        )
        self._display_setup_complete(result)
        return result

    def _mode_delete(self, spec: ClusterSpec) -> None:
        print("\n" + "="*80)
        print("DELETE MODE")
        print("="*80)

        poller = ReadinessPoller(self.ec2, self.config, spec.cluster_name)
        TeardownSequencer(self.ec2, self.config, spec.cluster_name, poller).run()

    # --- Utility/Internal Methods ---

    def _validate_spec(self, spec: ClusterSpec):
        if not spec.cluster_name:
            print("ERROR: Missing cluster name")
            sys.exit(1)
        if not spec.is_valid():
            print("ERROR: Specify either a positive instance count or a cluster to delete, not both")
            sys.exit(1)
        if not spec.delete and (not spec.key_path or not spec.subnets):
            print("ERROR: Creating a cluster requires a key and at least one subnet")
            sys.exit(1)

    def _display_setup_complete(self, result: ClusterResult):
        print("\n" + "="*80)
        print("SETUP COMPLETE")
        print("="*80)

        print(f"\nBastion: {result.bastion_instance_id}")
        print(f"    IP: {result.bastion_public_ip}")
        print(f"\nMain: {result.main_instance_id}")
        print(f"    Private IP: {result.main_private_ip}")
        for worker_id in result.worker_instance_ids:
            print(f"Worker: {worker_id}")
        print(f"\nSecurity Groups: {', '.join(result.security_group_ids)}")
        print(f"Kubeconfig written to: {result.kubeconfig_path}")

        print("\nNEXT STEP: Open a tunnel to the API server, then use the kubeconfig:")
        print(f"\n ssh -NT -L 6443:{result.main_private_ip}:6443 "
              f"{self.config.ssh_user}@{result.bastion_public_ip}\n")
