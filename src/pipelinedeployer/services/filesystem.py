"""Filesystem helpers for pipelinedeployer."""

import logging
import os
import shutil
import sys

from rich.console import Console

from pipelinedeployer.constants import SECRET_FILE_MODE


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def write_secret_file(self, path: str, content: str):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
        fd = os.open(path, flags, SECRET_FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as file_obj:
            file_obj.write(content)
            if not content.endswith("\n"):
                file_obj.write("\n")
        self.set_permissions(path, SECRET_FILE_MODE)

    def remove_file(self, path: str):
        if not os.path.exists(path):
            return
        try:
            os.remove(path)
            self.logger.debug("Removed file: %s", path)
        except OSError as exc:
            self.logger.warning("Could not remove %s: %s", path, exc)

    def cleanup_dir(self, path: str):
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)
