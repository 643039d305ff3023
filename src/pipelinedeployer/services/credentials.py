"""Credential setup for source access and cloud providers."""

import json
import os
from typing import Callable, Optional

from pipelinedeployer.constants import GCP_TOKEN_USERNAME
from pipelinedeployer.errors import DeployError
from pipelinedeployer.errors_catalog import actionable_error
from pipelinedeployer.models import (
    CloudTarget,
    CredentialBundle,
    RunConfiguration,
    RunContext,
    Secrets,
)
from pipelinedeployer.services.parameters import PreconditionChecker


class CredentialBroker:
    """Turns secrets into a run-scoped CredentialBundle.

    Nothing is written outside the run scratch directory. gcloud and docker
    state are redirected there through ``CLOUDSDK_CONFIG`` and
    ``DOCKER_CONFIG`` so the registry session ends with the run.
    """

    def __init__(
        self,
        logger,
        console,
        filesystem_service,
        checker: Optional[PreconditionChecker] = None,
        on_secret: Optional[Callable[[str], None]] = None,
    ):
        self.logger = logger
        self.console = console
        self.filesystem_service = filesystem_service
        self.checker = checker or PreconditionChecker()
        self.on_secret = on_secret

    def setup_ssh(
        self,
        secrets: Secrets,
        run_context: RunContext,
        bundle: CredentialBundle,
    ) -> CredentialBundle:
        private_key = self.checker.require_secret(secrets, "deploy_key_prefect_lib")
        key_path = os.path.join(run_context.scratch_dir, "ssh", "deploy_key")
        self.filesystem_service.write_secret_file(key_path, private_key)
        self.logger.info("SSH deploy key installed for this run.")

        ssh_command = (
            f"ssh -i {key_path} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
        )
        return bundle.with_env({"GIT_SSH_COMMAND": ssh_command}, files=(key_path,))

    def configure_cloud(
        self,
        config: RunConfiguration,
        secrets: Secrets,
        run_context: RunContext,
        bundle: CredentialBundle,
        run_cmd: Callable,
    ) -> CredentialBundle:
        self.checker.require_secret(secrets, "prefect_api_key")
        if config.cloud == CloudTarget.AWS:
            return self.configure_aws(config, secrets, bundle)
        return self.configure_gcp(config, secrets, run_context, bundle, run_cmd)

    def configure_aws(
        self,
        config: RunConfiguration,
        secrets: Secrets,
        bundle: CredentialBundle,
    ) -> CredentialBundle:
        access_key = self.checker.require_secret(secrets, "aws_access_key_id")
        secret_key = self.checker.require_secret(secrets, "aws_secret_access_key")
        self.console.print("[blue]Configuring AWS credentials...[/blue]")
        return bundle.with_env(
            {
                "AWS_ACCESS_KEY_ID": access_key,
                "AWS_SECRET_ACCESS_KEY": secret_key,
                "AWS_REGION": config.region,
                "AWS_DEFAULT_REGION": config.region,
            }
        )

    def load_google_credentials(self, raw: str) -> str:
        document = raw
        if not raw.lstrip().startswith("{") and os.path.isfile(raw):
            with open(raw, "r", encoding="utf-8") as file_obj:
                document = file_obj.read()

        try:
            parsed = json.loads(document)
        except json.JSONDecodeError as exc:
            raise DeployError(actionable_error("invalid_google_credentials")) from exc
        if not isinstance(parsed, dict):
            raise DeployError(actionable_error("invalid_google_credentials"))
        return document

    def configure_gcp(
        self,
        config: RunConfiguration,
        secrets: Secrets,
        run_context: RunContext,
        bundle: CredentialBundle,
        run_cmd: Callable,
    ) -> CredentialBundle:
        raw = self.checker.require_secret(secrets, "google_credentials")
        document = self.load_google_credentials(raw)

        key_path = os.path.join(run_context.scratch_dir, "gcp", "credentials.json")
        self.filesystem_service.write_secret_file(key_path, document)

        bundle = bundle.with_env(
            {
                "GOOGLE_APPLICATION_CREDENTIALS": key_path,
                "CLOUDSDK_CONFIG": os.path.join(run_context.scratch_dir, "gcloud"),
                "CLOUDSDK_CORE_PROJECT": config.account_id,
                "DOCKER_CONFIG": os.path.join(run_context.scratch_dir, "docker"),
            },
            files=(key_path,),
        )
        env = bundle.subprocess_env()

        self.console.print("[blue]Authenticating to Google Cloud...[/blue]")
        run_cmd(
            ["gcloud", "auth", "activate-service-account", "--key-file", key_path],
            capture_output=True,
            env=env,
        )
        result = run_cmd(["gcloud", "auth", "print-access-token"], capture_output=True, env=env)
        token = (result.stdout or "").strip()
        if not token:
            raise DeployError("Google Cloud did not return an access token for the service account.")
        if self.on_secret:
            self.on_secret(token)

        self.logger.info("Logging in to %s", config.registry_host)
        run_cmd(
            [
                "docker",
                "login",
                "-u",
                GCP_TOKEN_USERNAME,
                "--password-stdin",
                config.registry_host,
            ],
            capture_output=True,
            env=env,
            input_text=token,
        )
        self.console.print(f"[green]Authenticated to {config.registry_host}.[/green]")
        return bundle
