#!/usr/bin/env python3
"""
k3s Cluster Launcher
====================
Provisions a small k3s cluster on EC2: one bastion host in a public subnet
and N nodes spread round-robin over private subnets. The first node is the
k3s server ("main"); its join token and kubeconfig are fetched over SSH
through the bastion before the workers are launched.

Every resource is tagged with the cluster name so it can be found again
for deletion.

Usage:
    # Create a 3 node cluster
    python k3s_launcher.py -c 3 -n demo -k ~/.ssh/demo.pem -s subnet-a,subnet-b

    # Same, from the environment
    K3S_COUNT=3 K3S_NAME=demo K3S_KEY=~/.ssh/demo.pem K3S_SUBNETS=subnet-a python k3s_launcher.py

    # Destroy everything created for the cluster
    python k3s_launcher.py -d demo
"""

import argparse
import json
import os
import sys
from typing import Dict, List, Optional

# Check for required external dependencies first
try:
    import boto3  # noqa: F401
    from botocore.exceptions import NoCredentialsError
except ImportError:
    print("ERROR: boto3 is required. Install with: pip install boto3")
    sys.exit(1)

from k3sdeploy.cluster_manager import K3sLauncher
from k3sdeploy.dataclasses import ClusterSpec, DeployConfig

ENV_VARS = {
    'count': 'K3S_COUNT',
    'name': 'K3S_NAME',
    'key': 'K3S_KEY',
    'subnets': 'K3S_SUBNETS',
}


def load_config(config_path: Optional[str]) -> Dict:
    """Load the optional settings JSON file."""
    if not config_path:
        return {}
    try:
        with open(config_path, 'r') as f:
            settings = json.load(f)
    except FileNotFoundError:
        print(f"ERROR: Configuration file not found at {config_path}")
        sys.exit(1)
    except json.JSONDecodeError:
        print(f"ERROR: Invalid JSON format in {config_path}")
        sys.exit(1)

    if not isinstance(settings, dict):
        print(f"ERROR: {config_path} must contain a JSON object of settings")
        sys.exit(1)
    return settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Provision or destroy a k3s cluster behind a bastion host on EC2."
    )
    parser.add_argument('-c', '--count', type=str, help='The number of k3s cluster instances (env K3S_COUNT).')
    parser.add_argument('-n', '--name', type=str, help='The name of the k3s cluster (env K3S_NAME).')
    parser.add_argument('-k', '--key', type=str,
                        help='The full path to the ssh key to use when provisioning instances (env K3S_KEY).')
    parser.add_argument('-s', '--subnets', type=str,
                        help='Comma separated list of subnet-ids to place instances in (env K3S_SUBNETS).')
    parser.add_argument('-d', '--delete', type=str, metavar='NAME', help='The name of the cluster to terminate.')
    parser.add_argument(
        '--region',
        type=str,
        help='AWS region (default: settings file, then AWS_REGION env var, then us-east-1).'
    )
    parser.add_argument('--config', type=str, help='Optional JSON file overriding deployment settings.')
    return parser


def parse_spec(args: argparse.Namespace, parser: argparse.ArgumentParser) -> ClusterSpec:
    """Builds the ClusterSpec from flags, falling back to K3S_* env vars."""
    if args.delete:
        if args.count or args.name or args.key or args.subnets:
            parser.print_usage()
            print("ERROR: -d cannot be combined with -c, -n, -k or -s")
            sys.exit(1)
        return ClusterSpec(cluster_name=args.delete, delete=True)

    values = {}
    for field_name, env_name in ENV_VARS.items():
        value = getattr(args, field_name) or os.environ.get(env_name)
        if not value:
            parser.print_usage()
            print(f"ERROR: Missing required input for '{field_name}' from command line flag or ENV {env_name} variable.")
            sys.exit(1)
        values[field_name] = value

    try:
        count = int(values['count'])
    except ValueError:
        count = 0
    if count < 1:
        print(f"ERROR: Instance count must be a positive integer, got '{values['count']}'")
        sys.exit(1)

    subnets: List[str] = [s.strip() for s in values['subnets'].split(',') if s.strip()]
    return ClusterSpec(
        cluster_name=values['name'],
        count=count,
        key_path=os.path.expanduser(values['key']),
        subnets=tuple(subnets),
    )


def main(argv: Optional[List[str]] = None):
    """Parses arguments and executes the k3s Launcher."""
    parser = build_parser()
    args = parser.parse_args(argv)

    spec = parse_spec(args, parser)
    settings = load_config(args.config)
    region = args.region or settings.get('region') or os.environ.get('AWS_REGION', 'us-east-1')
    try:
        config = DeployConfig.from_dict(settings, region=region)
    except ValueError as e:
        print(f"ERROR: {e} in {args.config}")
        sys.exit(1)

    print(f"Running in AWS Region: {config.region}")

    try:
        launcher = K3sLauncher(config)
        launcher.execute(spec)
    except NoCredentialsError:
        print("\nFATAL ERROR: AWS credentials not found. Ensure you have run 'aws configure'.")
        sys.exit(1)
    except Exception as e:
        print(f"\nFATAL ERROR: A critical error occurred during execution: {type(e).__name__}")
        print(f"   Error details: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
