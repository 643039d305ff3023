"""Configuration loader for pipelinedeployer."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from pipelinedeployer.errors import DeployError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    # YAML would turn unquoted ids like 012345670123 into ints
    STRING_KEYS = {
        "cloud",
        "environment",
        "pipeline_name",
        "account_id",
        "region",
        "client_code",
        "cli_version",
        "meltano_version",
    }

    SUPPORTED_KEYS = {
        "cloud",
        "environment",
        "pipeline_name",
        "account_id",
        "region",
        "client_code",
        "cli_version",
        "meltano_version",
        "project_dir",
        "cache_dir",
        "no_cache",
        "public_ip",
        "keep_ingress_rule",
        "skip_system_packages",
        "skip_project_install",
        "dry_run",
        "verbose",
        "log_file",
        "manifest_file",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise DeployError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise DeployError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise DeployError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise DeployError(f"Unknown configuration keys: {unknown_list}")

        for key in sorted(self.STRING_KEYS & set(parsed.keys())):
            value = parsed[key]
            if value is not None and not isinstance(value, str):
                raise DeployError(
                    f"Configuration key '{key}' must be a string, got {type(value).__name__}. "
                    f"Quote the value, e.g. {key}: '...'."
                )

        return parsed
