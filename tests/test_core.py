import json
import os
import shutil
import subprocess

import pytest

from pipelinedeployer.core import PipelineDeployer
from pipelinedeployer.errors import DeployError
from pipelinedeployer.models import SecurityGroupHandle

SCENARIO_INPUTS = {
    "environment": "stg",
    "pipeline_name": "main",
    "account_id": "123456789012",
    "region": "us-east-1",
    "client_code": "pkt",
}

AWS_SECRETS = {
    "DEPLOY_KEY_PREFECT_LIB": "ssh-private-key",
    "DEPLOY_KEY_PREFECT": "prefect-api-key",
    "DEPLOYMENT_AGENT_AWS_ACCESS_KEY": "AKIA123",
    "DEPLOYMENT_AGENT_AWS_ACCESS_KEY_SECRET": "aws-secret",
}

DEPLOY_COMMAND = [
    "datateer",
    "pipeline",
    "deploy",
    "main",
    "--environment",
    "stg",
    "--cloud",
    "aws",
    "--region",
    "us-east-1",
    "--account",
    "123456789012",
]


class FakeNetworkAccess:
    def __init__(self, events, group_id=None):
        self.events = events
        self.group_id = group_id

    def find_security_group(self, config, bundle):
        self.events.append("find_security_group")
        if self.group_id is None:
            return None
        return SecurityGroupHandle(group_id=self.group_id)

    def discover_public_ip(self, override=None):
        return override or "203.0.113.7"

    def open_ingress(self, handle, config, bundle, public_ip):
        self.events.append(("open_ingress", handle.group_id, public_ip))
        return SecurityGroupHandle(group_id=handle.group_id, cidr=f"{public_ip}/32")

    def revoke_ingress(self, handle, config, bundle):
        self.events.append(("revoke_ingress", handle.cidr))


@pytest.fixture
def project_dir(tmp_path):
    project = tmp_path / "project"
    script = project / ".datateer" / "build_scripts" / "pre-build.sh"
    script.parent.mkdir(parents=True)
    script.write_text("#!/bin/sh\n", encoding="utf-8")
    return project


def build_deployer(tmp_path, project_dir, inputs=None, secret_store=None, **kwargs):
    return PipelineDeployer(
        cloud=kwargs.pop("cloud", "aws"),
        inputs=SCENARIO_INPUTS if inputs is None else inputs,
        secret_store=AWS_SECRETS if secret_store is None else secret_store,
        project_dir=str(project_dir),
        cache_dir=str(tmp_path / "cache"),
        skip_system_packages=True,
        skip_project_install=True,
        **kwargs,
    )


def install_fakes(monkeypatch, deployer, events, group_id=None, fail_on=None):
    def fake_run_cmd(cmd, check=True, capture_output=False, env=None, cwd=None, input_text=None):
        events.append(list(cmd))
        if fail_on and cmd[: len(fail_on)] == fail_on:
            raise DeployError(f"Command failed (1): {' '.join(cmd)}")
        stdout = "sha256:a\n" if cmd[:3] == ["docker", "image", "ls"] else ""
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    monkeypatch.setattr(deployer, "_run_cmd", fake_run_cmd)
    deployer.network_access_service = FakeNetworkAccess(events, group_id=group_id)


def read_manifest(project_dir):
    return json.loads((project_dir / ".datateer" / "deploy-manifest.json").read_text(encoding="utf-8"))


def test_scenario_deploys_with_resolved_parameters(tmp_path, project_dir, monkeypatch):
    deployer = build_deployer(tmp_path, project_dir)
    events = []
    install_fakes(monkeypatch, deployer, events)

    assert deployer.run() == 0

    assert deployer.config.environment == "stg"
    assert deployer.config.pipeline_name == "main"
    assert deployer.config.account_id == "123456789012"
    assert deployer.config.region == "us-east-1"
    assert deployer.config.client_code == "pkt"
    assert DEPLOY_COMMAND in events
    assert ["datateer", "config", "pull", "--environment", "stg", "--cloud", "aws"] in events

    manifest = read_manifest(project_dir)
    assert manifest["status"] == "success"
    steps = {step["name"]: step["status"] for step in manifest["steps"]}
    assert steps["open_database_access"] == "skipped"
    assert steps["deploy_pipeline"] == "success"


def test_missing_client_code_aborts_before_privileged_steps(tmp_path, project_dir, monkeypatch):
    inputs = dict(SCENARIO_INPUTS)
    del inputs["client_code"]
    deployer = build_deployer(tmp_path, project_dir, inputs=inputs)
    events = []
    install_fakes(monkeypatch, deployer, events, group_id="sg-123")

    assert deployer.run() == 1

    assert events == []
    manifest = read_manifest(project_dir)
    assert "CLIENT_CODE" in manifest["error"]
    assert [step["name"] for step in manifest["steps"]] == [
        "resolve_parameters",
        "check_preconditions",
    ]


def test_security_group_ingress_opens_before_deploy_and_is_revoked(
    tmp_path,
    project_dir,
    monkeypatch,
):
    deployer = build_deployer(tmp_path, project_dir, public_ip="198.51.100.4")
    events = []
    install_fakes(monkeypatch, deployer, events, group_id="sg-123")

    assert deployer.run() == 0

    open_index = events.index(("open_ingress", "sg-123", "198.51.100.4"))
    deploy_index = events.index(DEPLOY_COMMAND)
    assert open_index < deploy_index
    assert events[-1] == ("revoke_ingress", "198.51.100.4/32")
    assert read_manifest(project_dir)["artifacts"]["security_group_id"] == "sg-123"


def test_keep_ingress_rule_leaves_rule_open(tmp_path, project_dir, monkeypatch):
    deployer = build_deployer(tmp_path, project_dir, keep_ingress_rule=True)
    events = []
    install_fakes(monkeypatch, deployer, events, group_id="sg-123")

    assert deployer.run() == 0

    assert not any(isinstance(event, tuple) and event[0] == "revoke_ingress" for event in events)


def test_cache_restore_failure_does_not_change_exit_status(tmp_path, project_dir, monkeypatch):
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    (cache_dir / "datateer-docker-pipeline-pkt-stg-abc.tar").write_bytes(b"broken")

    deployer = build_deployer(tmp_path, project_dir)
    events = []
    install_fakes(monkeypatch, deployer, events, fail_on=["docker", "load"])

    assert deployer.run() == 0
    assert DEPLOY_COMMAND in events
    assert read_manifest(project_dir)["artifacts"]["layer_cache"]["outcome"] == "error"


def test_deploy_failure_fails_run_and_cleans_up_credentials(tmp_path, project_dir, monkeypatch):
    deployer = build_deployer(tmp_path, project_dir)
    events = []
    install_fakes(monkeypatch, deployer, events, fail_on=["datateer", "pipeline", "deploy"])

    assert deployer.run() == 1

    assert events.count(DEPLOY_COMMAND) == 1
    assert deployer.bundle.files
    assert all(not os.path.exists(path) for path in deployer.bundle.files)
    assert not os.path.exists(deployer.run_context.scratch_dir)
    manifest = read_manifest(project_dir)
    assert manifest["status"] == "failed"
    assert "save_layer_cache" not in [step["name"] for step in manifest["steps"]]


def test_missing_secret_fails_before_config_pull(tmp_path, project_dir, monkeypatch):
    secrets = dict(AWS_SECRETS)
    del secrets["DEPLOYMENT_AGENT_AWS_ACCESS_KEY_SECRET"]
    deployer = build_deployer(tmp_path, project_dir, secret_store=secrets)
    events = []
    install_fakes(monkeypatch, deployer, events)

    assert deployer.run() == 1

    assert not any(event[:2] == ["datateer", "config"] for event in events if isinstance(event, list))
    assert "DEPLOYMENT_AGENT_AWS_ACCESS_KEY_SECRET" in read_manifest(project_dir)["error"]


def test_dry_run_prints_plan_without_running_commands(tmp_path, project_dir, monkeypatch):
    deployer = build_deployer(tmp_path, project_dir, dry_run=True)
    events = []
    install_fakes(monkeypatch, deployer, events)
    cleanup_called = {"value": False}
    monkeypatch.setattr(deployer, "cleanup", lambda: cleanup_called.__setitem__("value", True))

    assert deployer.run() == 0

    assert events == []
    assert cleanup_called["value"] is False
    plan = dict(deployer.build_plan())
    assert plan["deploy_pipeline"] == " ".join(DEPLOY_COMMAND)


def test_gcp_run_skips_network_window(tmp_path, project_dir, monkeypatch):
    secret_store = {
        "DEPLOY_KEY_PREFECT_LIB": "ssh-private-key",
        "DEPLOY_KEY_PREFECT": "prefect-api-key",
        "DEPLOY_GOOGLE_CREDENTIALS": '{"type": "service_account"}',
        "GCP_PROJECT_ID": "pkt-prod-1234",
        "GCP_REGION": "us-central1",
        "CLIENT_CODE": "pkt",
    }
    deployer = build_deployer(
        tmp_path,
        project_dir,
        inputs={"environment": "prod"},
        secret_store=secret_store,
        cloud="gcp",
        use_cache=False,
    )
    events = []

    def fake_run_cmd(cmd, check=True, capture_output=False, env=None, cwd=None, input_text=None):
        events.append(list(cmd))
        stdout = "ya29.token" if cmd[:3] == ["gcloud", "auth", "print-access-token"] else ""
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    monkeypatch.setattr(deployer, "_run_cmd", fake_run_cmd)
    deployer.network_access_service = FakeNetworkAccess(events, group_id="sg-123")

    assert deployer.run() == 0

    assert "find_security_group" not in events
    assert [
        "datateer",
        "config",
        "pull",
        "--environment",
        "prod",
        "--cloud",
        "gcp",
        "--region",
        "us-central1",
        "--config-bucket",
        "pkt-prefect-config-data",
    ] in events
    assert events[-1] == [
        "datateer",
        "pipeline",
        "deploy",
        "main",
        "--environment",
        "prod",
        "--cloud",
        "gcp",
        "--region",
        "us-central1",
        "--account",
        "pkt-prod-1234",
    ]


def test_invalid_cloud_is_rejected(tmp_path, project_dir):
    with pytest.raises(DeployError, match="Invalid cloud"):
        build_deployer(tmp_path, project_dir, cloud="azure")


def test_cleanup_runs_when_manifest_cannot_be_written(tmp_path, project_dir, monkeypatch):
    manifest_dir = tmp_path / "manifests"
    deployer = build_deployer(
        tmp_path,
        project_dir,
        manifest_file=str(manifest_dir / "deploy-manifest.json"),
    )
    events = []
    install_fakes(monkeypatch, deployer, events, group_id="sg-123")
    fake_run_cmd = deployer._run_cmd

    def blocking_run_cmd(cmd, **kwargs):
        if cmd[:3] == ["datateer", "pipeline", "deploy"]:
            shutil.rmtree(manifest_dir)
            manifest_dir.write_text("not a directory", encoding="utf-8")
        return fake_run_cmd(cmd, **kwargs)

    monkeypatch.setattr(deployer, "_run_cmd", blocking_run_cmd)

    assert deployer.run() == 0

    assert events[-1] == ("revoke_ingress", "203.0.113.7/32")
    assert not os.path.exists(deployer.run_context.scratch_dir)
    assert all(not os.path.exists(path) for path in deployer.bundle.files)
