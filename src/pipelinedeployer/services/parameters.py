"""Run parameter resolution and precondition checks."""

from typing import Any, Dict, Mapping, Optional

from packaging.version import InvalidVersion, Version

from pipelinedeployer.constants import DEFAULT_PIPELINE_NAME
from pipelinedeployer.errors import DeployError
from pipelinedeployer.errors_catalog import actionable_error
from pipelinedeployer.models import CloudTarget, RunConfiguration, Secrets

# field -> secret store key, per cloud
FALLBACK_KEYS: Dict[CloudTarget, Dict[str, str]] = {
    CloudTarget.AWS: {
        "account_id": "AWS_ACCOUNT_ID",
        "region": "AWS_REGION",
        "client_code": "CLIENT_CODE",
        "environment": "DATATEER_ENV",
    },
    CloudTarget.GCP: {
        "account_id": "GCP_PROJECT_ID",
        "region": "GCP_REGION",
        "client_code": "CLIENT_CODE",
        "environment": "DATATEER_ENV",
    },
}

REQUIRED_FIELDS = ("account_id", "region", "client_code", "environment")

OPTION_NAMES = {
    "account_id": "--account-id",
    "region": "--region",
    "client_code": "--client-code",
    "environment": "--environment",
}

SECRET_KEYS = {
    "deploy_key_prefect_lib": "DEPLOY_KEY_PREFECT_LIB",
    "prefect_api_key": "DEPLOY_KEY_PREFECT",
    "aws_access_key_id": "DEPLOYMENT_AGENT_AWS_ACCESS_KEY",
    "aws_secret_access_key": "DEPLOYMENT_AGENT_AWS_ACCESS_KEY_SECRET",
    "google_credentials": "DEPLOY_GOOGLE_CREDENTIALS",
}


def _clean(value: Any, key: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise DeployError(f"Parameter '{key}' must be a string, got {type(value).__name__}.")
    text = value.strip()
    return text or None


class ParameterResolver:
    """Merges explicit inputs with secret store fallbacks into a RunConfiguration."""

    def __init__(self, secret_store: Mapping[str, str]):
        self.secret_store = dict(secret_store)

    def resolve(self, cloud: CloudTarget, inputs: Mapping[str, Any]) -> RunConfiguration:
        fallbacks = FALLBACK_KEYS[cloud]
        values = {}
        for name in REQUIRED_FIELDS:
            explicit = _clean(inputs.get(name), name)
            fallback = _clean(self.secret_store.get(fallbacks[name]), fallbacks[name])
            values[name] = explicit or fallback or ""

        return RunConfiguration(
            cloud=cloud,
            account_id=values["account_id"],
            region=values["region"],
            client_code=values["client_code"],
            environment=values["environment"],
            pipeline_name=_clean(inputs.get("pipeline_name"), "pipeline_name") or DEFAULT_PIPELINE_NAME,
            cli_version=_clean(inputs.get("cli_version"), "cli_version"),
            meltano_version=_clean(inputs.get("meltano_version"), "meltano_version"),
        )

    def read_secrets(self) -> Secrets:
        return Secrets(
            **{field: _clean(self.secret_store.get(key), key) for field, key in SECRET_KEYS.items()}
        )


class PreconditionChecker:
    """Fails fast when the resolved configuration is incomplete."""

    def check(self, config: RunConfiguration):
        fallbacks = FALLBACK_KEYS[config.cloud]
        for name in REQUIRED_FIELDS:
            if not getattr(config, name):
                raise DeployError(
                    actionable_error(
                        "missing_parameter",
                        name=fallbacks[name],
                        option=OPTION_NAMES[name],
                        key=name,
                    )
                )

        if config.cli_version:
            try:
                Version(config.cli_version)
            except InvalidVersion as exc:
                raise DeployError(
                    actionable_error("invalid_cli_version", version=config.cli_version)
                ) from exc

    def require_secret(self, secrets: Secrets, field: str) -> str:
        value = getattr(secrets, field)
        if not value:
            raise DeployError(actionable_error("missing_secret", name=SECRET_KEYS[field]))
        return value
