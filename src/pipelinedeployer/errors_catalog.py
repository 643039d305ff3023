"""Actionable error catalog for pipelinedeployer."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "missing_parameter": {
        "what": "Could not find {name} in the inputs or in environment variables.",
        "next": "Pass `{option}`, set `{key}` in the config file, or export `{name}`.",
    },
    "missing_secret": {
        "what": "Required secret {name} is not set.",
        "next": "Export `{name}` in the runner environment before deploying.",
    },
    "invalid_cli_version": {
        "what": "Invalid datateer-cli version pin: {version}",
        "next": "Use a published version such as `1.2.3`, or leave it blank for the latest.",
    },
    "invalid_google_credentials": {
        "what": "Google service account credentials are not valid JSON.",
        "next": "Provide the service account key JSON or a path to the key file.",
    },
    "pre_build_script_missing": {
        "what": "Pre-build script not found: {path}",
        "next": "Add `.datateer/build_scripts/pre-build.sh` to the pipeline repository.",
    },
    "deploy_failed": {
        "what": "Deployment of pipeline '{pipeline}' to {environment} failed.",
        "next": "Inspect the datateer CLI output above and re-run after fixing the cause.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
