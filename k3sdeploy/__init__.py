"""k3sdeploy: provision and tear down a small k3s cluster on EC2."""

__version__ = "0.1.0"
