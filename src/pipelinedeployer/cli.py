import logging
import os

import click
from rich.logging import RichHandler

from .constants import DEFAULT_CONFIG_FILE
from .core import PipelineDeployer
from .errors import DeployError
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.option(
    "--cloud",
    required=False,
    type=click.Choice(PipelineDeployer.VALID_CLOUDS),
    help="Cloud target that hosts the registry and the Prefect agent.",
)
@click.option(
    "--environment",
    required=False,
    help="Target environment: prod, stg, qa, int, or a development environment (fallback: DATATEER_ENV).",
)
@click.option(
    "--pipeline-name",
    required=False,
    help='Pipeline flow name, e.g. "main" for pipeline_main.py (default: main).',
)
@click.option(
    "--account-id",
    required=False,
    help="AWS account ID or GCP project ID (fallback: AWS_ACCOUNT_ID / GCP_PROJECT_ID).",
)
@click.option(
    "--region",
    required=False,
    help="AWS or GCP region (fallback: AWS_REGION / GCP_REGION).",
)
@click.option(
    "--client-code",
    required=False,
    help="Lowercase Datateer client code, e.g. pkt (fallback: CLIENT_CODE).",
)
@click.option(
    "--cli-version",
    required=False,
    help="datateer-cli version to install. Leave blank for the latest version.",
)
@click.option(
    "--meltano-version",
    required=False,
    help="Value passed to the deploy step as MELTANO_ENV (AWS).",
)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option(
    "--project-dir",
    required=False,
    type=click.Path(file_okay=False),
    help="Pipeline repository directory (default: current directory).",
)
@click.option(
    "--cache-dir",
    required=False,
    type=click.Path(file_okay=False),
    help="Directory holding docker layer cache tarballs.",
)
@click.option("--no-cache", is_flag=True, default=None, help="Skip docker layer cache restore and save.")
@click.option(
    "--public-ip",
    required=False,
    help="Runner public IPv4 address. Detected automatically when omitted.",
)
@click.option(
    "--keep-ingress-rule",
    is_flag=True,
    default=None,
    help=(
        "Leave the tcp/5432 ingress rule open for out-of-band cleanup. By default "
        "the rule opened for the build is revoked when the run ends, even on failure."
    ),
)
@click.option(
    "--skip-system-packages",
    is_flag=True,
    default=None,
    help="Do not apt-get install graphviz libraries.",
)
@click.option(
    "--skip-project-install",
    is_flag=True,
    default=None,
    help="Do not pip install the pipeline project before deploying.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Resolve and check parameters, then print the plan without running anything.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option(
    "--manifest-file",
    required=False,
    type=click.Path(),
    help="Path for the deployment manifest JSON (default: .datateer/deploy-manifest.json).",
)
def main(
    cloud,
    environment,
    pipeline_name,
    account_id,
    region,
    client_code,
    cli_version,
    meltano_version,
    config,
    project_dir,
    cache_dir,
    no_cache,
    public_ip,
    keep_ingress_rule,
    skip_system_packages,
    skip_project_install,
    dry_run,
    verbose,
    log_file,
    manifest_file,
):
    """Build, push and register a Prefect pipeline flow on AWS or GCP."""
    logger = logging.getLogger("pipelinedeployer")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except DeployError as exc:
        raise click.ClickException(str(exc)) from exc

    cloud = _resolve_option(cloud, config_values, "cloud")
    inputs = {
        "environment": _resolve_option(environment, config_values, "environment"),
        "pipeline_name": _resolve_option(pipeline_name, config_values, "pipeline_name"),
        "account_id": _resolve_option(account_id, config_values, "account_id"),
        "region": _resolve_option(region, config_values, "region"),
        "client_code": _resolve_option(client_code, config_values, "client_code"),
        "cli_version": _resolve_option(cli_version, config_values, "cli_version"),
        "meltano_version": _resolve_option(meltano_version, config_values, "meltano_version"),
    }
    project_dir = _resolve_option(project_dir, config_values, "project_dir")
    cache_dir = _resolve_option(cache_dir, config_values, "cache_dir")
    no_cache = bool(_resolve_option(no_cache, config_values, "no_cache", default=False))
    public_ip = _resolve_option(public_ip, config_values, "public_ip")
    keep_ingress_rule = bool(
        _resolve_option(keep_ingress_rule, config_values, "keep_ingress_rule", default=False)
    )
    skip_system_packages = bool(
        _resolve_option(skip_system_packages, config_values, "skip_system_packages", default=False)
    )
    skip_project_install = bool(
        _resolve_option(skip_project_install, config_values, "skip_project_install", default=False)
    )
    dry_run = bool(_resolve_option(dry_run, config_values, "dry_run", default=False))
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    manifest_file = _resolve_option(manifest_file, config_values, "manifest_file")

    if not cloud:
        raise click.ClickException("Missing required option '--cloud' (or provide it in config).")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    try:
        deployer = PipelineDeployer(
            cloud=str(cloud),
            inputs=inputs,
            secret_store=dict(os.environ),
            project_dir=project_dir,
            cache_dir=cache_dir,
            use_cache=not no_cache,
            public_ip=public_ip,
            keep_ingress_rule=keep_ingress_rule,
            skip_system_packages=skip_system_packages,
            skip_project_install=skip_project_install,
            dry_run=dry_run,
            manifest_file=manifest_file,
        )
    except DeployError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(deployer.run())


if __name__ == "__main__":
    main()
