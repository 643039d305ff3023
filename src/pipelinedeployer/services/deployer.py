"""Builds, pushes and registers the pipeline flow through the datateer CLI."""

from typing import Callable, Dict, List

from pipelinedeployer.constants import DATATEER_CLI
from pipelinedeployer.errors import DeployError
from pipelinedeployer.errors_catalog import actionable_error
from pipelinedeployer.models import CredentialBundle, RunConfiguration, Secrets


class DeployService:
    """Invokes ``datateer pipeline deploy``. Never retried."""

    def __init__(self, logger, console):
        self.logger = logger
        self.console = console

    def build_command(self, config: RunConfiguration) -> List[str]:
        return [
            DATATEER_CLI,
            "pipeline",
            "deploy",
            config.pipeline_name,
            "--environment",
            config.environment,
            "--cloud",
            config.cloud.value,
            "--region",
            config.region,
            "--account",
            config.account_id,
        ]

    def build_env(
        self,
        config: RunConfiguration,
        secrets: Secrets,
        bundle: CredentialBundle,
    ) -> Dict[str, str]:
        extra = {}
        if secrets.deploy_key_prefect_lib:
            extra["DEPLOY_KEY_PREFECT_LIB"] = secrets.deploy_key_prefect_lib
        if secrets.prefect_api_key:
            extra["PREFECT__CLOUD__API_KEY"] = secrets.prefect_api_key
        if config.meltano_version:
            extra["MELTANO_ENV"] = config.meltano_version
        return bundle.subprocess_env(extra)

    def deploy(
        self,
        config: RunConfiguration,
        secrets: Secrets,
        bundle: CredentialBundle,
        project_dir: str,
        run_cmd: Callable,
    ):
        self.console.print(
            f"[bold blue]Deploying pipeline '{config.pipeline_name}' to "
            f"{config.environment} ({config.cloud.value}, {config.region})...[/bold blue]"
        )
        try:
            run_cmd(
                self.build_command(config),
                env=self.build_env(config, secrets, bundle),
                cwd=project_dir,
            )
        except DeployError as exc:
            raise DeployError(
                f"{exc}\n"
                + actionable_error(
                    "deploy_failed",
                    pipeline=config.pipeline_name,
                    environment=config.environment,
                )
            ) from exc
        self.console.print("[green]Pipeline deployed.[/green]")
