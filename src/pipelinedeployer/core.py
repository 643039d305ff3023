import logging
import os
import shlex
import subprocess
import tempfile
import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from rich.console import Console
from rich.table import Table

from .constants import DEFAULT_MANIFEST_FILE, DB_PORT, DB_SECURITY_GROUP_NAME
from .errors import DeployError
from .models import (
    CacheResult,
    CloudTarget,
    CredentialBundle,
    RunConfiguration,
    RunContext,
    SecurityGroupHandle,
)
from .services.command_runner import CommandRunner
from .services.config_fetch import ConfigFetcher
from .services.credentials import CredentialBroker
from .services.deployer import DeployService
from .services.filesystem import FileSystemService
from .services.layer_cache import LayerCacheService
from .services.manifest import ManifestService
from .services.network_access import NetworkAccessService
from .services.parameters import ParameterResolver, PreconditionChecker
from .services.prebuild import PreBuildHook
from .services.tooling import ToolProvisioner

console = Console()
logger = logging.getLogger("pipelinedeployer")

DEFAULT_CACHE_DIR = os.path.join(os.path.expanduser("~"), ".cache", "pipelinedeployer", "docker-layers")


class PipelineDeployer:
    VALID_CLOUDS = [cloud.value for cloud in CloudTarget]

    def __init__(
        self,
        cloud: str,
        inputs: Mapping[str, Any],
        secret_store: Mapping[str, str],
        project_dir: Optional[str] = None,
        cache_dir: Optional[str] = None,
        use_cache: bool = True,
        public_ip: Optional[str] = None,
        keep_ingress_rule: bool = False,
        skip_system_packages: bool = False,
        skip_project_install: bool = False,
        dry_run: bool = False,
        manifest_file: Optional[str] = None,
    ):
        if cloud not in self.VALID_CLOUDS:
            raise DeployError(f"Invalid cloud. Supported clouds: {', '.join(self.VALID_CLOUDS)}")

        self.cloud = CloudTarget(cloud)
        self.inputs = dict(inputs)
        self.project_dir = os.path.abspath(project_dir or os.getcwd())
        self.cache_dir = cache_dir or DEFAULT_CACHE_DIR
        self.use_cache = use_cache
        self.public_ip = public_ip
        self.keep_ingress_rule = keep_ingress_rule
        self.skip_system_packages = skip_system_packages
        self.skip_project_install = skip_project_install
        self.dry_run = dry_run
        self.manifest_file = manifest_file or os.path.join(self.project_dir, DEFAULT_MANIFEST_FILE)

        self.parameter_resolver = ParameterResolver(secret_store)
        self.precondition_checker = PreconditionChecker()
        self.secrets = self.parameter_resolver.read_secrets()

        self.command_runner = CommandRunner(logger=logger, secrets=self.secrets.values())
        self.manifest_service = ManifestService(manifest_file=self.manifest_file, logger=logger)
        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.tool_provisioner = ToolProvisioner(logger=logger, console=console)
        self.credential_broker = CredentialBroker(
            logger=logger,
            console=console,
            filesystem_service=self.filesystem_service,
            checker=self.precondition_checker,
            on_secret=self.command_runner.add_secret,
        )
        self.config_fetcher = ConfigFetcher(logger=logger, console=console)
        self.pre_build_hook = PreBuildHook(
            logger=logger,
            console=console,
            filesystem_service=self.filesystem_service,
        )
        self.network_access_service = NetworkAccessService(logger=logger, console=console)
        self.layer_cache_service = LayerCacheService(
            logger=logger,
            console=console,
            cache_dir=self.cache_dir,
        )
        self.deploy_service = DeployService(logger=logger, console=console)

        self.run_context = self._build_run_context()
        self.config: Optional[RunConfiguration] = None
        self.bundle = CredentialBundle(cloud=self.cloud)
        self.opened_ingress: Optional[SecurityGroupHandle] = None

    def _build_run_context(self) -> RunContext:
        run_id = uuid.uuid4().hex[:10]
        return RunContext(
            run_id=run_id,
            scratch_dir=os.path.join(tempfile.gettempdir(), f"pipelinedeployer_{run_id}"),
        )

    def _run_step(self, name: str, callback, *args, **kwargs):
        self.manifest_service.step_started(name)
        logger.debug("Step started: %s", name)

        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            self.manifest_service.step_finished(name, "failed", error=str(exc))
            raise

        self.manifest_service.step_finished(name, "success")
        return result

    def _skip_step(self, name: str, reason: str):
        logger.info("Skipping %s: %s", name, reason)
        self.manifest_service.step_skipped(name, reason)

    def _run_cmd(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        input_text: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        return self.command_runner.run(
            cmd,
            check=check,
            capture_output=capture_output,
            env=env,
            cwd=cwd,
            input_text=input_text,
        )

    def _require_config(self) -> RunConfiguration:
        if self.config is None:
            raise DeployError("Run configuration has not been resolved.")
        return self.config

    def _describe_configuration(self) -> Dict[str, Any]:
        data = asdict(self._require_config())
        data["cloud"] = self.cloud.value
        data["project_dir"] = self.project_dir
        data["use_cache"] = self.use_cache
        return data

    def resolve_parameters(self) -> RunConfiguration:
        config = self.parameter_resolver.resolve(self.cloud, self.inputs)
        logger.info(
            "Resolved %s deployment of '%s' to environment '%s' (client '%s', region '%s').",
            config.cloud.value,
            config.pipeline_name,
            config.environment or "<missing>",
            config.client_code or "<missing>",
            config.region or "<missing>",
        )
        return config

    def check_preconditions(self):
        self.precondition_checker.check(self._require_config())

    def prepare_workspace(self):
        os.makedirs(self.run_context.scratch_dir, mode=0o700, exist_ok=True)

    def install_system_packages(self):
        self.tool_provisioner.install_system_packages(self._run_cmd)

    def install_cli(self):
        self.tool_provisioner.install_cli(self._require_config().cli_version, self._run_cmd)

    def setup_ssh(self):
        self.bundle = self.credential_broker.setup_ssh(self.secrets, self.run_context, self.bundle)

    def install_project(self):
        self.tool_provisioner.install_project(
            self.project_dir,
            self.bundle.subprocess_env(),
            self._run_cmd,
        )

    def configure_cloud_credentials(self):
        self.bundle = self.credential_broker.configure_cloud(
            self._require_config(),
            self.secrets,
            self.run_context,
            self.bundle,
            self._run_cmd,
        )

    def pull_config(self):
        self.config_fetcher.pull(self._require_config(), self.bundle, self.project_dir, self._run_cmd)

    def run_pre_build_hook(self):
        self.pre_build_hook.run(self.project_dir, self.bundle, self._run_cmd)

    def find_database_security_group(self) -> Optional[SecurityGroupHandle]:
        return self.network_access_service.find_security_group(self._require_config(), self.bundle)

    def open_database_access(self, handle: SecurityGroupHandle):
        public_ip = self.network_access_service.discover_public_ip(self.public_ip)
        self.opened_ingress = self.network_access_service.open_ingress(
            handle,
            self._require_config(),
            self.bundle,
            public_ip,
        )

    def load_layer_cache(self) -> Tuple[CacheResult, Optional[Set[str]]]:
        result = self.layer_cache_service.restore(self._require_config(), self._run_cmd)
        images_before = self.layer_cache_service.snapshot_images(self._run_cmd)
        return result, images_before

    def deploy_pipeline(self):
        self.deploy_service.deploy(
            self._require_config(),
            self.secrets,
            self.bundle,
            self.project_dir,
            self._run_cmd,
        )

    def save_layer_cache(self, images_before: Optional[Set[str]]) -> Optional[str]:
        return self.layer_cache_service.save(self._require_config(), images_before, self._run_cmd)

    def build_plan(self) -> List[Tuple[str, str]]:
        config = self._require_config()
        plan: List[Tuple[str, str]] = []

        if not self.skip_system_packages:
            plan.append(
                ("install_system_packages", shlex.join(self.tool_provisioner.system_packages_command()))
            )
        for cmd in self.tool_provisioner.cli_install_commands(config.cli_version):
            plan.append(("install_datateer_cli", shlex.join(cmd)))
        plan.append(("setup_ssh", "write deploy key and set GIT_SSH_COMMAND"))
        if not self.skip_project_install:
            plan.append(
                ("install_pipeline_project", shlex.join(self.tool_provisioner.project_install_command()))
            )
        if config.cloud == CloudTarget.AWS:
            plan.append(("configure_cloud_credentials", "export AWS access key for this run"))
        else:
            plan.append(
                (
                    "configure_cloud_credentials",
                    f"gcloud auth print-access-token | docker login {config.registry_host}",
                )
            )
        plan.append(("pull_config", shlex.join(self.config_fetcher.build_command(config))))
        plan.append(("run_pre_build_hook", shlex.join(self.pre_build_hook.build_command(self.project_dir))))
        if config.cloud == CloudTarget.AWS:
            plan.append(
                (
                    "open_database_access",
                    f"allow tcp/{DB_PORT} on {DB_SECURITY_GROUP_NAME} when present",
                )
            )
        if self.use_cache:
            plan.append(("load_layer_cache", f"restore {config.cache_key_prefix}* from {self.cache_dir}"))
        plan.append(("deploy_pipeline", shlex.join(self.deploy_service.build_command(config))))
        return plan

    def print_plan(self):
        table = Table(title="Deployment plan (dry run)")
        table.add_column("Step", style="cyan")
        table.add_column("Action")
        for step_name, action in self.build_plan():
            table.add_row(step_name, action)
        console.print(table)

    def cleanup(self):
        if self.opened_ingress is not None and self.config is not None:
            if self.keep_ingress_rule:
                logger.warning(
                    "Leaving ingress rule %s open on %s. Remove it when it is no longer needed.",
                    self.opened_ingress.cidr,
                    self.opened_ingress.group_id,
                )
            else:
                self.network_access_service.revoke_ingress(self.opened_ingress, self.config, self.bundle)
            self.opened_ingress = None

        for path in self.bundle.files:
            self.filesystem_service.remove_file(path)
        self.filesystem_service.cleanup_dir(self.run_context.scratch_dir)

    def run(self) -> int:
        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None

        try:
            logger.info("Starting pipelinedeployer...")
            self.manifest_service.start_run(self.run_context.run_id, dry_run=self.dry_run)

            self.config = self._run_step("resolve_parameters", self.resolve_parameters)
            self._run_step("check_preconditions", self.check_preconditions)
            self.manifest_service.set_configuration(self._describe_configuration())

            if self.dry_run:
                self.print_plan()
                manifest_status = "success"
                exit_code = 0
                return exit_code

            self.prepare_workspace()

            if self.skip_system_packages:
                self._skip_step("install_system_packages", "disabled by --skip-system-packages")
            else:
                self._run_step("install_system_packages", self.install_system_packages)
            self._run_step("install_datateer_cli", self.install_cli)
            self._run_step("setup_ssh", self.setup_ssh)
            if self.skip_project_install:
                self._skip_step("install_pipeline_project", "disabled by --skip-project-install")
            else:
                self._run_step("install_pipeline_project", self.install_project)
            self._run_step("configure_cloud_credentials", self.configure_cloud_credentials)
            self._run_step("pull_config", self.pull_config)
            self._run_step("run_pre_build_hook", self.run_pre_build_hook)

            if self.cloud == CloudTarget.AWS:
                handle = self._run_step(
                    "find_database_security_group",
                    self.find_database_security_group,
                )
                if handle is None:
                    self._skip_step(
                        "open_database_access",
                        f"no {DB_SECURITY_GROUP_NAME} security group found",
                    )
                else:
                    self.manifest_service.add_artifact("security_group_id", handle.group_id)
                    self._run_step("open_database_access", self.open_database_access, handle)

            images_before: Optional[Set[str]] = None
            if self.use_cache:
                cache_result, images_before = self._run_step("load_layer_cache", self.load_layer_cache)
                self.manifest_service.add_artifact(
                    "layer_cache",
                    {"outcome": cache_result.outcome.value, "key": cache_result.key},
                )
            else:
                self._skip_step("load_layer_cache", "disabled by --no-cache")

            self._run_step("deploy_pipeline", self.deploy_pipeline)

            if self.use_cache:
                saved_key = self._run_step("save_layer_cache", self.save_layer_cache, images_before)
                if saved_key:
                    self.manifest_service.add_artifact("saved_layer_cache", saved_key)

            config = self._require_config()
            console.print(
                f"[bold green]Pipeline '{config.pipeline_name}' deployed to {config.environment}.[/bold green]"
            )
            manifest_status = "success"
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            manifest_status = "aborted"
            manifest_error = "Operation cancelled by user."
            return exit_code
        except DeployError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            manifest_error = str(exc)
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            manifest_error = str(exc)
            return exit_code
        finally:
            try:
                self.manifest_service.finalize(manifest_status, error=manifest_error)
            finally:
                if not self.dry_run:
                    self.cleanup()
