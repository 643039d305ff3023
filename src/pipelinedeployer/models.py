"""Shared domain models for pipelinedeployer."""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from .constants import (
    CACHE_KEY_BASE,
    CONFIG_BUCKET_SUFFIX,
    DB_PORT,
    DB_PROTOCOL,
    GCP_REGISTRY_SUFFIX,
)


class CloudTarget(str, Enum):
    AWS = "aws"
    GCP = "gcp"


@dataclass(frozen=True)
class RunConfiguration:
    """Resolved deployment parameters, fixed for the whole run."""

    cloud: CloudTarget
    account_id: str
    region: str
    client_code: str
    environment: str
    pipeline_name: str
    cli_version: Optional[str] = None
    meltano_version: Optional[str] = None

    @property
    def config_bucket(self) -> str:
        return f"{self.client_code}-{CONFIG_BUCKET_SUFFIX}"

    @property
    def registry_host(self) -> str:
        return f"{self.region}-{GCP_REGISTRY_SUFFIX}"

    @property
    def cache_key_prefix(self) -> str:
        return f"{CACHE_KEY_BASE}{self.client_code}-{self.environment}-"

    def cache_restore_prefixes(self) -> Tuple[str, ...]:
        return (
            self.cache_key_prefix,
            f"{CACHE_KEY_BASE}{self.client_code}-",
            CACHE_KEY_BASE,
        )


@dataclass(frozen=True)
class Secrets:
    """Secret values read once from the secret store. Never logged."""

    deploy_key_prefect_lib: Optional[str] = None
    prefect_api_key: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    google_credentials: Optional[str] = None

    def values(self) -> Tuple[str, ...]:
        return tuple(
            value
            for value in (
                self.deploy_key_prefect_lib,
                self.prefect_api_key,
                self.aws_access_key_id,
                self.aws_secret_access_key,
                self.google_credentials,
            )
            if value
        )


@dataclass(frozen=True)
class CredentialBundle:
    """Credentials scoped to one run, injected explicitly into child processes."""

    cloud: CloudTarget
    env: Mapping[str, str] = field(default_factory=dict)
    files: Tuple[str, ...] = ()

    def subprocess_env(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.env)
        if extra:
            merged.update(extra)
        return merged

    def with_env(self, values: Mapping[str, str], files: Tuple[str, ...] = ()) -> "CredentialBundle":
        merged = dict(self.env)
        merged.update(values)
        return CredentialBundle(cloud=self.cloud, env=merged, files=self.files + files)


@dataclass(frozen=True)
class SecurityGroupHandle:
    group_id: str
    cidr: Optional[str] = None
    port: int = DB_PORT
    protocol: str = DB_PROTOCOL
    description: str = ""


class CacheOutcome(str, Enum):
    RESTORED = "restored"
    MISS = "miss"
    ERROR = "error"


@dataclass(frozen=True)
class CacheResult:
    outcome: CacheOutcome
    key: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class RunContext:
    """Runtime identifiers isolated per execution."""

    run_id: str
    scratch_dir: str
