"""Deployment of previews and shipped changes."""

from .deployer import DeployResult, VercelDeployer

__all__ = ["DeployResult", "VercelDeployer"]
