"""Runs the repository-local pre-build script."""

import os
from typing import Callable, List

from pipelinedeployer.constants import PRE_BUILD_SCRIPT, SCRIPT_MODE
from pipelinedeployer.errors import DeployError
from pipelinedeployer.errors_catalog import actionable_error
from pipelinedeployer.models import CredentialBundle


class PreBuildHook:
    """Last-mile preparation hook executed right before the image build."""

    def __init__(self, logger, console, filesystem_service):
        self.logger = logger
        self.console = console
        self.filesystem_service = filesystem_service

    def script_path(self, project_dir: str) -> str:
        return os.path.join(project_dir, *PRE_BUILD_SCRIPT.split("/"))

    def build_command(self, project_dir: str) -> List[str]:
        return [self.script_path(project_dir)]

    def run(self, project_dir: str, bundle: CredentialBundle, run_cmd: Callable):
        script = self.script_path(project_dir)
        if not os.path.isfile(script):
            raise DeployError(actionable_error("pre_build_script_missing", path=script))

        self.filesystem_service.set_permissions(script, SCRIPT_MODE)
        self.console.print("[blue]Running pre-build script...[/blue]")
        self.logger.info("Running %s", script)
        run_cmd(self.build_command(project_dir), env=bundle.subprocess_env(), cwd=project_dir)
