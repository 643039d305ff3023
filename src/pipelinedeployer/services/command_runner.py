"""Subprocess execution service for pipelinedeployer."""

import subprocess
from typing import Iterable, List, Mapping, Optional

from pipelinedeployer.errors import DeployError

REDACTED = "***"


class CommandRunner:
    """Runs external commands with consistent error handling and secret redaction."""

    def __init__(self, logger, secrets: Iterable[str] = (), default_timeout: Optional[float] = None):
        self.logger = logger
        self.secrets = [value for value in secrets if value]
        self.default_timeout = default_timeout

    def add_secret(self, value: str):
        if value and value not in self.secrets:
            self.secrets.append(value)

    def redact(self, text: str) -> str:
        for value in self.secrets:
            text = text.replace(value, REDACTED)
        return text

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        input_text: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = self.redact(" ".join(cmd))
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout

        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=capture_output,
                timeout=effective_timeout,
                env=dict(env) if env is not None else None,
                cwd=cwd,
                input=input_text,
            )
        except FileNotFoundError as exc:
            raise DeployError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise DeployError(f"Command timed out after {effective_timeout}s: {cmd_str}") from exc
        except OSError as exc:
            raise DeployError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", self.redact(result.stdout.strip()))

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{self.redact(stderr)}"

        if check:
            raise DeployError(message)

        self.logger.warning(message)
        return result
