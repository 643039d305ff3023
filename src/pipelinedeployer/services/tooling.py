"""Installs the datateer CLI, its native dependencies and the pipeline project."""

import os
import sys
from typing import Callable, List, Mapping, Optional

from pipelinedeployer.constants import (
    DATATEER_CLI_EXTRA,
    DATATEER_CLI_PACKAGE,
    SYSTEM_PACKAGES,
)


class ToolProvisioner:
    """Builds and runs the install commands for the deployment tooling."""

    def __init__(self, logger, console, python_executable: str = sys.executable):
        self.logger = logger
        self.console = console
        self.python = python_executable

    def _needs_sudo(self) -> bool:
        geteuid = getattr(os, "geteuid", None)
        return geteuid is not None and geteuid() != 0

    def system_packages_command(self) -> List[str]:
        cmd = ["apt-get", "install", "-y", *SYSTEM_PACKAGES]
        if self._needs_sudo():
            cmd.insert(0, "sudo")
        return cmd

    def cli_install_commands(self, cli_version: Optional[str]) -> List[List[str]]:
        pin = f"=={cli_version}" if cli_version else ""
        return [
            [self.python, "-m", "pip", "install", f"{DATATEER_CLI_PACKAGE}{pin}"],
            [
                self.python,
                "-m",
                "pip",
                "install",
                f"{DATATEER_CLI_PACKAGE}[{DATATEER_CLI_EXTRA}]{pin}",
            ],
        ]

    def project_install_command(self) -> List[str]:
        return [self.python, "-m", "pip", "install", "-e", "."]

    def install_system_packages(self, run_cmd: Callable):
        self.console.print("[blue]Installing graph rendering libraries...[/blue]")
        run_cmd(self.system_packages_command(), capture_output=True)

    def install_cli(self, cli_version: Optional[str], run_cmd: Callable):
        label = cli_version or "latest"
        self.console.print(f"[blue]Installing {DATATEER_CLI_PACKAGE} ({label})...[/blue]")
        self.logger.info("Installing %s version %s", DATATEER_CLI_PACKAGE, label)
        for cmd in self.cli_install_commands(cli_version):
            run_cmd(cmd, capture_output=True)
        self.console.print(f"[green]{DATATEER_CLI_PACKAGE} installed.[/green]")

    def install_project(self, project_dir: str, env: Mapping[str, str], run_cmd: Callable):
        self.console.print("[blue]Installing pipeline project...[/blue]")
        run_cmd(self.project_install_command(), capture_output=True, env=env, cwd=project_dir)
