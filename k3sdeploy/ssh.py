# k3sdeploy/ssh.py

"""
Two-hop SSH access to the cluster's main node through the bastion.

Every remote command is an OpenSSH client process with an explicit timeout.
Agent forwarding (-A) carries the operator's key from the bastion to the
main node, so the key has to be registered with ssh-agent first.
"""

import functools
import os
import re
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional

from .dataclasses import DeployConfig
from .poller import poll

# k3s writes its kubeconfig with this placeholder for cluster, user and context
KUBECONFIG_PLACEHOLDER = "default"
_PLACEHOLDER_RE = re.compile(
    r'^([ \t]*-?[ \t]*(?:name|cluster|user|current-context):[ \t]*)' + KUBECONFIG_PLACEHOLDER + r'[ \t]*$',
    re.MULTILINE
)


def register_key(key_path: str, timeout: float) -> None:
    """Adds the operator's private key to ssh-agent and waits for it to finish."""
    if not os.path.isfile(key_path):
        print(f"ERROR: The key file {key_path} does not exist")
        sys.exit(1)

    try:
        subprocess.run(
            ['ssh-add', key_path],
            check=True,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
        print(f"ERROR: Failed to add key {key_path} to ssh-agent: {e}")
        sys.exit(1)

    print(f"SUCCESS: Added key {key_path} to ssh-agent")


def validate_secret(value: str, label: str, min_length: int) -> str:
    """Rejects values too short to be a real token or kubeconfig."""
    if len(value) < min_length:
        print(f"ERROR: Extracted {label} is only {len(value)} characters, expected at least {min_length}")
        sys.exit(1)
    return value


def rewrite_kubeconfig(text: str, cluster_name: str) -> str:
    """Replaces the placeholder cluster, user and context names with cluster_name."""
    return _PLACEHOLDER_RE.sub(lambda m: m.group(1) + cluster_name, text)


class SecretExtractor:
    """Fetches the join token and kubeconfig from the main node via the bastion."""

    def __init__(self, config: DeployConfig, cluster_name: str):
        self.config = config
        self.cluster_name = cluster_name
        self._deadline = None

    def extract(self, bastion_ip: str, main_ip: str) -> str:
        """Returns the cluster join token and writes the kubeconfig locally."""
        self._deadline = time.monotonic() + self.config.extraction_timeout

        self.wait_for_bastion(bastion_ip)

        print("INFO: Getting K3s token.")
        token = self.read_remote_file(bastion_ip, main_ip, self.config.token_path, "k3s token")

        print("INFO: Getting K3s kubeconfig.")
        kubeconfig = self.read_remote_file(
            bastion_ip, main_ip, self.config.remote_kubeconfig_path, "k3s kubeconfig"
        )
        self.write_kubeconfig(rewrite_kubeconfig(kubeconfig, self.cluster_name))

        return token

    def wait_for_bastion(self, bastion_ip: str) -> None:
        """Opens a plain session to the bastion so its host key is accepted before jumping."""
        cmd = self._ssh_base() + [f"{self.config.ssh_user}@{bastion_ip}"]

        def check() -> Optional[bool]:
            return True if self._run(cmd) is not None else None

        if poll(check, self.config.connectivity_budget, f"SSH to bastion {bastion_ip}") is None:
            print(f"ERROR: Unable to reach bastion {bastion_ip} over SSH "
                  f"after {self.config.connectivity_budget.max_attempts} attempts")
            sys.exit(1)
        print(f"SUCCESS: Bastion {bastion_ip} is reachable over SSH")

    def read_remote_file(self, bastion_ip: str, main_ip: str, path: str, label: str) -> str:
        """Runs 'sudo cat path' on the main node through the bastion."""
        cmd = self._ssh_base() + [
            '-J', f"{self.config.ssh_user}@{bastion_ip}",
            f"{self.config.ssh_user}@{main_ip}",
            f"sudo cat {path}",
        ]

        def check() -> Optional[str]:
            out = self._run(cmd)
            return out if out else None

        out = poll(check, self.config.connectivity_budget, f"{label} from {main_ip} via {bastion_ip}")
        if out is None:
            print(f"ERROR: Failed to get {label} from k3s main {main_ip} via bastion {bastion_ip}")
            sys.exit(1)

        return validate_secret(out.rstrip('\n'), label, self.config.min_secret_length)

    def write_kubeconfig(self, text: str) -> Path:
        path = Path(self.config.kubeconfig_path)
        try:
            with open(path, 'w', opener=functools.partial(os.open, mode=0o600)) as f:
                # mode only applies on creation; an existing file is narrowed here
                os.fchmod(f.fileno(), 0o600)
                f.write(text + '\n')
        except OSError as e:
            print(f"ERROR: Failed to write kubeconfig to {path}: {e}")
            sys.exit(1)
        print(f"SUCCESS: Wrote kubeconfig to {path}")
        return path

    def _ssh_base(self) -> List[str]:
        return ['ssh', '-A', '-o', 'StrictHostKeyChecking=no']

    def _remaining(self) -> float:
        if self._deadline is None:
            return self.config.command_timeout
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            print(f"ERROR: Secret extraction did not finish within {self.config.extraction_timeout} seconds")
            sys.exit(1)
        return remaining

    def _run(self, cmd: List[str]) -> Optional[str]:
        """Returns stdout on success, None on a failure worth retrying."""
        timeout = min(self.config.command_timeout, self._remaining())
        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            return None
        except OSError as e:
            print(f"ERROR: Failed to run ssh: {e}")
            sys.exit(1)

        if result.returncode != 0:
            return None
        return result.stdout
