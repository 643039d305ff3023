"""Shared constants for pipelinedeployer."""

DATATEER_CLI = "datateer"
DATATEER_CLI_PACKAGE = "datateer-cli"
DATATEER_CLI_EXTRA = "visualization"
SYSTEM_PACKAGES = ("graphviz", "graphviz-dev")

DEFAULT_PIPELINE_NAME = "main"
DEFAULT_CONFIG_FILE = ".pipelinedeployer.yml"
DEFAULT_MANIFEST_FILE = ".datateer/deploy-manifest.json"

PRE_BUILD_SCRIPT = ".datateer/build_scripts/pre-build.sh"
SCRIPT_MODE = 0o755
SECRET_FILE_MODE = 0o600

CONFIG_BUCKET_SUFFIX = "prefect-config-data"
GCP_REGISTRY_SUFFIX = "docker.pkg.dev"
GCP_TOKEN_USERNAME = "oauth2accesstoken"

DB_VPC_NAME = "default"
DB_SECURITY_GROUP_NAME = "meltano-db-sg"
DB_PORT = 5432
DB_PROTOCOL = "tcp"
INGRESS_DESCRIPTION = "Created by pipelinedeployer - will be deleted when finished"
PUBLIC_IP_URL = "https://checkip.amazonaws.com"

CACHE_KEY_BASE = "datateer-docker-pipeline-"
CACHE_FILE_SUFFIX = ".tar"
