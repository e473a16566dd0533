# k3sdeploy/poller.py

import sys
import time
from typing import Callable, List, Optional, TypeVar

from botocore.exceptions import ClientError

from .dataclasses import (
    DeployConfig, InstanceRecord, RetryBudget,
    STATE_RUNNING, STATE_TERMINATED, state_name,
)
from .tagging import ownership_filters, role_name

T = TypeVar('T')


def poll(check: Callable[[], Optional[T]], budget: RetryBudget, description: str) -> Optional[T]:
    """Calls check until it returns something other than None or the budget runs out.

    Sleeps budget.interval between attempts, not after the last one.
    Returns None when every attempt came back empty.
    """
    for attempt in range(1, budget.max_attempts + 1):
        result = check()
        if result is not None:
            return result
        if attempt < budget.max_attempts:
            print(f"WAITING: {description} (attempt {attempt}/{budget.max_attempts})")
            time.sleep(budget.interval)
    return None


class ReadinessPoller:
    """Waits for tagged instances of one cluster to reach a lifecycle state."""

    def __init__(self, ec2, config: DeployConfig, cluster_name: str):
        self.ec2 = ec2
        self.config = config
        self.cluster_name = cluster_name

    def describe(self, role: Optional[str] = None, instance_id: Optional[str] = None) -> List[InstanceRecord]:
        """Lists instances owned by this cluster, optionally narrowed by role suffix and id."""
        name = role_name(self.cluster_name, role) if role else None
        filters = ownership_filters(self.config, self.cluster_name, name=name, instance_id=instance_id)
        try:
            response = self.ec2.describe_instances(Filters=filters)
        except ClientError as e:
            print(f"ERROR: Failed to describe instances for cluster {self.cluster_name}: {e}")
            sys.exit(1)

        return [
            InstanceRecord.from_response(instance)
            for reservation in response.get('Reservations', [])
            for instance in reservation.get('Instances', [])
        ]

    def wait_for_state(self, role: str, target_state: int = STATE_RUNNING,
                       instance_id: Optional[str] = None,
                       budget: Optional[RetryBudget] = None) -> InstanceRecord:
        """Returns the first live matching instance once it reports target_state.

        Terminated records are skipped so a stale instance with the same tags
        is never mistaken for the one being waited on.
        """
        budget = budget or self.config.readiness_budget
        label = instance_id or role_name(self.cluster_name, role)
        target = state_name(target_state)
        last_seen = []

        def check() -> Optional[InstanceRecord]:
            live = [r for r in self.describe(role, instance_id) if r.state_code != STATE_TERMINATED]
            if live:
                last_seen.append(live[0].state_code)
            if not live or live[0].state_code != target_state:
                return None
            record = live[0]
            if record.state_code == STATE_RUNNING and not record.private_ip:
                print(f"ERROR: Instance {record.instance_id} is running without a private IP address")
                sys.exit(1)
            return record

        record = poll(check, budget, f"{label} to reach state {target}")
        if record is None:
            seen = state_name(last_seen[-1]) if last_seen else "not found"
            print(f"ERROR: {label} did not reach state {target} after {budget.max_attempts} attempts "
                  f"(last seen: {seen})")
            sys.exit(1)

        print(f"SUCCESS: {record.instance_id} ({label}) reached state {target}")
        return record

    def wait_for_termination(self, instance_id: str, budget: Optional[RetryBudget] = None) -> bool:
        """Waits until no live instance matches instance_id. Advisory: returns False on timeout."""
        budget = budget or self.config.termination_budget

        def check() -> Optional[bool]:
            live = [r for r in self.describe(instance_id=instance_id) if r.state_code != STATE_TERMINATED]
            return True if not live else None

        terminated = poll(check, budget, f"{instance_id} to reach state {state_name(STATE_TERMINATED)}")
        if not terminated:
            print(f"WARNING: {instance_id} not terminated after {budget.max_attempts} attempts, continuing")
            return False
        return True
