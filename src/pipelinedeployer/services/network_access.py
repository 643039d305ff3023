"""Temporary database network access for the image build (AWS only)."""

import ipaddress
from dataclasses import replace
from typing import Any, Dict, Optional

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from pipelinedeployer.constants import (
    DB_PORT,
    DB_PROTOCOL,
    DB_SECURITY_GROUP_NAME,
    DB_VPC_NAME,
    INGRESS_DESCRIPTION,
    PUBLIC_IP_URL,
)
from pipelinedeployer.errors import DeployError
from pipelinedeployer.models import CredentialBundle, RunConfiguration, SecurityGroupHandle


class NetworkAccessService:
    """Finds the meltano database security group and opens/closes runner access to it."""

    def __init__(self, logger, console, session_factory=boto3.Session, requests_module=requests):
        self.logger = logger
        self.console = console
        self.session_factory = session_factory
        self.requests = requests_module

    def _ec2_client(self, config: RunConfiguration, bundle: CredentialBundle):
        session = self.session_factory(
            aws_access_key_id=bundle.env.get("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=bundle.env.get("AWS_SECRET_ACCESS_KEY"),
            region_name=config.region,
        )
        return session.client("ec2")

    def find_security_group(
        self,
        config: RunConfiguration,
        bundle: CredentialBundle,
    ) -> Optional[SecurityGroupHandle]:
        ec2 = self._ec2_client(config, bundle)
        try:
            vpcs = ec2.describe_vpcs(
                Filters=[{"Name": "tag:Name", "Values": [DB_VPC_NAME]}]
            ).get("Vpcs", [])
            if not vpcs:
                self.logger.info("No VPC tagged Name=%s found.", DB_VPC_NAME)
                return None

            vpc_id = vpcs[0]["VpcId"]
            groups = ec2.describe_security_groups(
                Filters=[
                    {"Name": "vpc-id", "Values": [vpc_id]},
                    {"Name": "group-name", "Values": [DB_SECURITY_GROUP_NAME]},
                ]
            ).get("SecurityGroups", [])
        except (BotoCoreError, ClientError) as exc:
            raise DeployError(f"Could not look up the database security group: {exc}") from exc

        if not groups:
            self.logger.info(
                "Security group %s not found in %s. Database access step skipped.",
                DB_SECURITY_GROUP_NAME,
                vpc_id,
            )
            return None

        group_id = groups[0]["GroupId"]
        self.logger.info("Found database security group %s", group_id)
        return SecurityGroupHandle(
            group_id=group_id,
            port=DB_PORT,
            protocol=DB_PROTOCOL,
            description=INGRESS_DESCRIPTION,
        )

    def discover_public_ip(self, override: Optional[str] = None) -> str:
        if override:
            candidate = override.strip()
        else:
            try:
                response = self.requests.get(PUBLIC_IP_URL, timeout=10)
                response.raise_for_status()
            except self.requests.RequestException as exc:
                raise DeployError(f"Could not determine the runner public IP: {exc}") from exc
            candidate = response.text.strip()

        try:
            address = ipaddress.ip_address(candidate)
        except ValueError as exc:
            raise DeployError(f"Invalid runner public IP address: {candidate!r}") from exc
        if address.version != 4:
            raise DeployError(f"Runner public IP must be IPv4, got {candidate}.")
        return str(address)

    def _permissions(self, handle: SecurityGroupHandle, with_description: bool) -> Dict[str, Any]:
        ip_range = {"CidrIp": handle.cidr}
        if with_description:
            ip_range["Description"] = handle.description
        return {
            "IpProtocol": handle.protocol,
            "FromPort": handle.port,
            "ToPort": handle.port,
            "IpRanges": [ip_range],
        }

    def open_ingress(
        self,
        handle: SecurityGroupHandle,
        config: RunConfiguration,
        bundle: CredentialBundle,
        public_ip: str,
    ) -> Optional[SecurityGroupHandle]:
        """Authorizes the runner IP and returns the rule to revoke later.

        Returns ``None`` when the exact rule already existed, so cleanup does not
        remove a rule this run did not create.
        """
        opened = replace(handle, cidr=f"{public_ip}/32")
        ec2 = self._ec2_client(config, bundle)

        self.console.print(
            f"[blue]Opening {opened.protocol.upper()} {opened.port} on {opened.group_id} "
            f"for {opened.cidr}...[/blue]"
        )
        try:
            ec2.authorize_security_group_ingress(
                GroupId=opened.group_id,
                IpPermissions=[self._permissions(opened, with_description=True)],
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code == "InvalidPermission.Duplicate":
                self.logger.warning(
                    "Ingress rule for %s on %s already exists.", opened.cidr, opened.group_id
                )
                return None
            raise DeployError(f"Could not open database access on {opened.group_id}: {exc}") from exc
        except BotoCoreError as exc:
            raise DeployError(f"Could not open database access on {opened.group_id}: {exc}") from exc

        self.logger.info("Opened port %s on %s for %s", opened.port, opened.group_id, opened.cidr)
        return opened

    def revoke_ingress(
        self,
        handle: SecurityGroupHandle,
        config: RunConfiguration,
        bundle: CredentialBundle,
    ):
        try:
            ec2 = self._ec2_client(config, bundle)
            ec2.revoke_security_group_ingress(
                GroupId=handle.group_id,
                IpPermissions=[self._permissions(handle, with_description=False)],
            )
        except (BotoCoreError, ClientError) as exc:
            self.logger.warning(
                "Could not revoke ingress rule %s on %s: %s. Remove it manually.",
                handle.cidr,
                handle.group_id,
                exc,
            )
            return

        self.logger.info("Revoked port %s on %s for %s", handle.port, handle.group_id, handle.cidr)
