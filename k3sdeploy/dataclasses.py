# k3sdeploy/dataclasses.py

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional, Tuple

# EC2 instance state codes (low byte of State.Code)
STATE_PENDING = 0
STATE_RUNNING = 16
STATE_SHUTTING_DOWN = 32
STATE_TERMINATED = 48

STATE_NAMES = {
    STATE_PENDING: "pending",
    STATE_RUNNING: "running",
    STATE_SHUTTING_DOWN: "shutting-down",
    STATE_TERMINATED: "terminated",
}


def state_name(code: int) -> str:
    return STATE_NAMES.get(code, str(code))


@dataclass(frozen=True)
class RetryBudget:
    """Bounded attempts at a fixed interval, scoped to one wait."""
    max_attempts: int
    interval: float


@dataclass(frozen=True)
class DeployConfig:
    """Deployment settings shared by every component."""
    region: str = "us-east-1"
    ami_id: Optional[str] = None
    ami_name_pattern: str = "amzn2-ami-hvm-*-x86_64-gp2"
    bastion_instance_type: str = "t2.micro"
    node_instance_type: str = "t2.micro"
    ssh_user: str = "ec2-user"

    tag_name: str = "Name"
    tag_cluster: str = "k3sdeploycluster"
    tag_source: str = "source"
    tag_source_value: str = "https://github.com/zherner/k3sdeploy"
    tag_owner: str = "k3sdeploy"
    tag_owner_value: str = "true"

    ip_lookup_url: str = "http://ip-api.com/json/"
    ip_lookup_timeout: float = 10.0

    token_path: str = "/var/lib/rancher/k3s/server/node-token"
    remote_kubeconfig_path: str = "/etc/rancher/k3s/k3s.yaml"
    kubeconfig_path: str = "k3s_kubeconfig"
    min_secret_length: int = 50

    readiness_budget: RetryBudget = RetryBudget(max_attempts=45, interval=2.0)
    connectivity_budget: RetryBudget = RetryBudget(max_attempts=10, interval=2.0)
    termination_budget: RetryBudget = RetryBudget(max_attempts=45, interval=2.0)
    command_timeout: float = 15.0
    key_registration_timeout: float = 3.0
    extraction_timeout: float = 90.0

    @classmethod
    def from_dict(cls, data: Dict, region: Optional[str] = None) -> "DeployConfig":
        """Builds a config from a JSON mapping, ignoring unknown keys.

        Raises ValueError naming the key when a retry budget is malformed.
        """
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in ("readiness_budget", "connectivity_budget", "termination_budget"):
            if key not in values:
                continue
            raw = values[key]
            try:
                values[key] = RetryBudget(max_attempts=int(raw['max_attempts']), interval=float(raw['interval']))
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(
                    f"Invalid settings value for '{key}': {raw!r} "
                    "(expected {\"max_attempts\": <int>, \"interval\": <seconds>})"
                ) from e
        if region:
            values["region"] = region
        return cls(**values)


@dataclass(frozen=True)
class ClusterSpec:
    """What one invocation was asked to do."""
    cluster_name: str
    count: int = 0
    key_path: Optional[str] = None
    subnets: Tuple[str, ...] = ()
    delete: bool = False

    @property
    def key_name(self) -> Optional[str]:
        # EC2 key pair name is the key file's base name without extension
        if not self.key_path:
            return None
        return Path(self.key_path).stem

    def is_valid(self) -> bool:
        return (self.count > 0) != self.delete


@dataclass
class InstanceRecord:
    """Container for one EC2 instance as reported by the provider."""
    instance_id: str
    state_code: int
    private_ip: str = ""
    public_ip: str = ""
    subnet_id: str = ""
    name: str = ""

    @classmethod
    def from_response(cls, instance: Dict) -> "InstanceRecord":
        tags = {t["Key"]: t["Value"] for t in instance.get("Tags", [])}
        return cls(
            instance_id=instance["InstanceId"],
            # high byte is reserved for provider internal use
            state_code=instance["State"]["Code"] & 0xFF,
            private_ip=instance.get("PrivateIpAddress") or "",
            public_ip=instance.get("PublicIpAddress") or "",
            subnet_id=instance.get("SubnetId", ""),
            name=tags.get("Name", ""),
        )


@dataclass(frozen=True)
class SecurityGroupRule:
    protocol: str
    from_port: int
    to_port: int
    cidr: str

    def as_permission(self) -> Dict:
        return {
            "IpProtocol": self.protocol,
            "FromPort": self.from_port,
            "ToPort": self.to_port,
            "IpRanges": [{"CidrIp": self.cidr}],
        }


@dataclass
class SecurityGroupRecord:
    group_id: str
    vpc_id: str
    ingress: List[SecurityGroupRule] = field(default_factory=list)
    egress: List[SecurityGroupRule] = field(default_factory=list)


@dataclass
class ClusterResult:
    """Container for the cluster and supporting resource results."""
    cluster_name: str
    bastion_instance_id: str
    bastion_public_ip: str
    main_instance_id: Optional[str] = None
    main_private_ip: Optional[str] = None
    worker_instance_ids: List[str] = field(default_factory=list)
    security_group_ids: List[str] = field(default_factory=list)
    kubeconfig_path: Optional[str] = None
