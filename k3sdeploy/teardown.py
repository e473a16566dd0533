# k3sdeploy/teardown.py

import sys
from typing import List, Tuple

from botocore.exceptions import ClientError

from .dataclasses import DeployConfig, STATE_SHUTTING_DOWN, STATE_TERMINATED
from .poller import ReadinessPoller
from .tagging import ownership_filters

BOLD = "\033[1m"
RED = "\033[31m"
RESET = "\033[0m"

CONFIRMATION = "YES"


def confirm(prompt: str) -> bool:
    """Only the exact literal YES is accepted."""
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip() == CONFIRMATION


class TeardownSequencer:
    """Finds everything tagged for one cluster and destroys it after two confirmations."""

    def __init__(self, ec2, config: DeployConfig, cluster_name: str, poller: ReadinessPoller):
        self.ec2 = ec2
        self.config = config
        self.cluster_name = cluster_name
        self.poller = poller

    def run(self) -> None:
        print(f"\n{BOLD}{'#' * 80}{RESET}")
        print(f"\nThe '-d' flag was found. This {RED}DESTROYS THE CLUSTER and BASTION{RESET}.")
        print(f"Are you sure you want to continue with the {RED}DESTROY{RESET}? "
              f"Only {BOLD}'{CONFIRMATION}'{RESET} will be accepted.")
        if not confirm(f"{BOLD}{RED}CONTINUE DESTROY?{RESET}: "):
            print("Cancelling.")
            sys.exit(1)

        instance_ids, group_ids = self.discover()
        if not instance_ids and not group_ids:
            print(f"\nINFO: No resources found associated with the {self.cluster_name} cluster. Exiting.")
            return

        self.render(instance_ids, group_ids)
        print(f"\nThere is no going back. Only {BOLD}'{CONFIRMATION}'{RESET} will be accepted.")
        if not confirm(f"{BOLD}{RED}FINALIZE DESTROY?{RESET}: "):
            print("Cancelling.")
            sys.exit(1)

        self.destroy(instance_ids, group_ids)

    def discover(self) -> Tuple[List[str], List[str]]:
        """Returns (instance ids, security group ids) owned by the cluster."""
        filters = ownership_filters(self.config, self.cluster_name)
        instance_ids = [
            r.instance_id for r in self.poller.describe()
            if r.state_code not in (STATE_SHUTTING_DOWN, STATE_TERMINATED)
        ]

        try:
            response = self.ec2.describe_security_groups(Filters=filters)
        except ClientError as e:
            print(f"ERROR: Failed to describe security groups for cluster {self.cluster_name}: {e}")
            sys.exit(1)
        group_ids = [g['GroupId'] for g in response.get('SecurityGroups', [])]

        return instance_ids, group_ids

    def render(self, instance_ids: List[str], group_ids: List[str]) -> None:
        print(f"\n{BOLD}{'#' * 20}{RESET}")
        print(f"The following resources were found to belong to the {BOLD}{self.cluster_name}{RESET} cluster.")
        print(f"\nThe instances that will be {RED}DESTROYED{RESET} are:")
        for instance_id in instance_ids:
            print(f"   {instance_id}")
        print(f"\nAssociated security groups that will also be {RED}DESTROYED{RESET} are:")
        for group_id in group_ids:
            print(f"   {group_id}")
        print(f"{BOLD}{'#' * 20}{RESET}")

    def destroy(self, instance_ids: List[str], group_ids: List[str]) -> None:
        """Terminates instances first; groups still attached to live instances cannot be deleted."""
        print(f"\nINFO: Destroying cluster {self.cluster_name}")

        if not instance_ids:
            print(f"INFO: No live instances found for the {self.cluster_name} cluster. Skipping.")
        for instance_id in instance_ids:
            self.terminate_instance(instance_id)
            self.poller.wait_for_termination(instance_id)

        if not group_ids:
            print(f"INFO: No security groups found for the {self.cluster_name} cluster. Skipping.")
        for group_id in group_ids:
            self.delete_security_group(group_id)

        print(f"\nSUCCESS: Cluster {self.cluster_name} destroyed.")

    def terminate_instance(self, instance_id: str) -> None:
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
        except ClientError as e:
            print(f"ERROR: Failed to terminate instance {instance_id}: {e}")
            sys.exit(1)
        print(f"INFO: Terminating instance {instance_id}")

    def delete_security_group(self, group_id: str) -> None:
        try:
            self.ec2.delete_security_group(GroupId=group_id)
        except ClientError as e:
            print(f"ERROR: Failed to delete security group {group_id}: {e}")
            print("    Instances may still be shutting down. Re-run the delete to finish cleanup.")
            sys.exit(1)
        print(f"SUCCESS: Deleted security group {group_id}")
