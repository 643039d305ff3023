"""Pulls environment-specific configuration files with the datateer CLI."""

from typing import Callable, List

from pipelinedeployer.constants import DATATEER_CLI
from pipelinedeployer.models import CloudTarget, CredentialBundle, RunConfiguration


class ConfigFetcher:
    def __init__(self, logger, console):
        self.logger = logger
        self.console = console

    def build_command(self, config: RunConfiguration) -> List[str]:
        cmd = [
            DATATEER_CLI,
            "config",
            "pull",
            "--environment",
            config.environment,
            "--cloud",
            config.cloud.value,
        ]
        if config.cloud == CloudTarget.GCP:
            cmd += ["--region", config.region, "--config-bucket", config.config_bucket]
        return cmd

    def pull(
        self,
        config: RunConfiguration,
        bundle: CredentialBundle,
        project_dir: str,
        run_cmd: Callable,
    ):
        self.console.print(f"[blue]Pulling {config.environment} configuration...[/blue]")
        run_cmd(self.build_command(config), env=bundle.subprocess_env(), cwd=project_dir)
        self.console.print("[green]Configuration files pulled.[/green]")
