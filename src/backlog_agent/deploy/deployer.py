"""Vercel deployments through the ``vercel`` CLI."""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..core.config import DeployConfig
from ..utils.subprocess_utils import SubprocessError, run_command

logger = logging.getLogger(__name__)

LINK_TIMEOUT = 60
ALIAS_TIMEOUT = 30
MAX_SUBDOMAIN_LENGTH = 63

_DEPLOY_URL_PATTERN = re.compile(r"https://[^\s]+\.vercel\.app\S*")


@dataclass
class DeployResult:
    success: bool
    url: Optional[str] = None
    deployment_url: Optional[str] = None  # Raw *.vercel.app URL before aliasing
    error: Optional[str] = None


def branch_to_subdomain(branch_name: str) -> str:
    """``task/AbC_123`` -> ``task-abc-123``, at most 63 chars."""
    subdomain = re.sub(r"[^a-z0-9-]", "-", branch_name.lower())
    subdomain = re.sub(r"-+", "-", subdomain).strip("-")
    return subdomain[:MAX_SUBDOMAIN_LENGTH]


def extract_deployment_url(output: str) -> Optional[str]:
    """Last ``*.vercel.app`` URL printed by the CLI."""
    matches = _DEPLOY_URL_PATTERN.findall(output)
    if matches:
        return matches[-1].rstrip(".,)")
    for line in output.strip().splitlines():
        if ".vercel.app" in line:
            return line.strip()
    return None


class VercelDeployer:
    """Preview and production deploys of a checkout."""

    def __init__(self, config: DeployConfig):
        self.config = config

    @property
    def is_configured(self) -> bool:
        return self.config.enabled and bool(self.config.token)

    def _vercel(self, *args: str) -> List[str]:
        cmd = [self.config.cli_executable, *args, f"--token={self.config.token}"]
        if self.config.team_id:
            cmd.append(f"--scope={self.config.team_id}")
        return cmd

    def _link(self, cwd: Path) -> None:
        if not self.config.project_name:
            return
        logger.info(f"   Linking to project: {self.config.project_name}")
        try:
            run_command(
                self._vercel("link", "--project", self.config.project_name, "--yes"),
                cwd=cwd, timeout=LINK_TIMEOUT,
            )
        except (SubprocessError, subprocess.TimeoutExpired) as e:
            logger.warning(f"   ⚠️ Link warning (continuing): {e}")

    def _deploy(self, cwd: Path, production: bool) -> DeployResult:
        if not self.is_configured:
            return DeployResult(success=False, error="No Vercel token configured")

        self._link(cwd)
        args = ["deploy", "--yes", "--force"]
        if production:
            args.append("--prod")
        logger.info(f"📦 Running: vercel {' '.join(args)} --token=***")
        try:
            result = run_command(self._vercel(*args), cwd=cwd, timeout=self.config.timeout)
        except SubprocessError as e:
            return DeployResult(success=False, error=(e.stderr or str(e)).strip()[:500])
        except subprocess.TimeoutExpired:
            return DeployResult(success=False, error=f"Deployment timed out after {self.config.timeout}s")

        url = extract_deployment_url(result.stdout) or extract_deployment_url(result.stderr)
        if not url:
            return DeployResult(success=False, error="Could not extract deployment URL from Vercel output")
        logger.info(f"✅ Deployed: {url}")
        return DeployResult(success=True, url=url, deployment_url=url)

    def _alias(self, deployment_url: str, hostname: str) -> Optional[str]:
        logger.info(f"🔗 Creating alias: {hostname}")
        try:
            run_command(self._vercel("alias", deployment_url, hostname), timeout=ALIAS_TIMEOUT)
        except (SubprocessError, subprocess.TimeoutExpired) as e:
            logger.warning(f"⚠️ Alias creation failed: {e}")
            return None
        return f"https://{hostname}"

    def deploy_preview(self, cwd: Path, branch_name: Optional[str] = None) -> DeployResult:
        """Preview deploy; aliased to ``<branch>.<preview_domain>`` when configured."""
        logger.info(f"🚀 Triggering Vercel preview deployment for {branch_name or cwd}")
        result = self._deploy(cwd, production=False)
        if result.success and self.config.preview_domain and branch_name:
            hostname = f"{branch_to_subdomain(branch_name)}.{self.config.preview_domain}"
            result.url = self._alias(result.deployment_url, hostname) or result.deployment_url
        return result

    def deploy_production(self, cwd: Path) -> DeployResult:
        logger.info("📦 Triggering Vercel production deployment")
        return self._deploy(cwd, production=True)
