"""Cloud provider contract and its EC2 implementation.

Every call blocks. Errors from botocore are converted to ``ProviderError``
with the region and the resource involved.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from functools import cached_property
from typing import TYPE_CHECKING, Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from salter.constants import InstanceState
from salter.exceptions import ProviderError
from salter.types import FirewallGroup, InstanceHandle, InstanceSpec, Permission, SourceGroup

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client


type Filters = Mapping[str, Sequence[str]]


class Provider(Protocol):
    """Operations the orchestrator needs from a cloud region."""

    region: str
    vpc_id: str

    def create_instance(self, spec: InstanceSpec) -> InstanceHandle: ...

    def terminate_instances(self, instance_ids: Sequence[str]) -> None: ...

    def describe_instances(self, filters: Filters) -> list[list[InstanceHandle]]: ...

    def create_tags(self, resource_id: str, tags: Mapping[str, str]) -> None: ...

    def list_key_pairs(self) -> list[tuple[str, str]]: ...

    def list_security_groups(self) -> list[FirewallGroup]: ...

    def create_security_group(self, name: str, description: str) -> tuple[str, str]: ...

    def authorize_ingress(self, group: FirewallGroup, permissions: Sequence[Permission]) -> None: ...


# =============================================================================
# Conversions
# =============================================================================


def _to_handle(instance: Mapping[str, Any]) -> InstanceHandle:
    return InstanceHandle(
        instance_id=instance["InstanceId"],
        state=InstanceState(instance["State"]["Name"]),
        private_ip=instance.get("PrivateIpAddress", "") or "",
        public_ip=instance.get("PublicIpAddress", "") or "",
        dns_name=instance.get("PublicDnsName", "") or "",
    )


def _to_permission(raw: Mapping[str, Any]) -> Permission:
    return Permission(
        protocol=raw["IpProtocol"],
        from_port=raw.get("FromPort", -1),
        to_port=raw.get("ToPort", -1),
        source_ips=tuple(r["CidrIp"] for r in raw.get("IpRanges", [])),
        source_groups=tuple(
            SourceGroup(
                group_id=pair["GroupId"],
                owner_id=pair.get("UserId", ""),
                name=pair.get("GroupName", ""),
            )
            for pair in raw.get("UserIdGroupPairs", [])
        ),
    )


def _from_permission(perm: Permission) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "IpProtocol": perm.protocol,
        "FromPort": perm.from_port,
        "ToPort": perm.to_port,
    }
    if perm.source_ips:
        raw["IpRanges"] = [{"CidrIp": cidr} for cidr in perm.source_ips]
    if perm.source_groups:
        raw["UserIdGroupPairs"] = [
            {"GroupId": g.group_id, "UserId": g.owner_id} if g.owner_id else {"GroupId": g.group_id}
            for g in perm.source_groups
        ]
    return raw


# =============================================================================
# EC2
# =============================================================================


class EC2Provider:
    """Provider backed by a boto3 EC2 client for one region.

    When ``vpc_id`` is set, security groups are listed and created only in
    that VPC.
    """

    def __init__(self, region: str, vpc_id: str = "") -> None:
        self.region = region
        self.vpc_id = vpc_id
        self._log = logger.bind(region=region)

    @cached_property
    def _ec2(self) -> EC2Client:
        import boto3

        return boto3.client("ec2", region_name=self.region)

    @contextmanager
    def _call(self, action: str) -> Iterator[None]:
        try:
            yield
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"{self.region}: {action} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def create_instance(self, spec: InstanceSpec) -> InstanceHandle:
        params: dict[str, Any] = {
            "ImageId": spec.ami,
            "MinCount": 1,
            "MaxCount": 1,
            "KeyName": spec.key_name,
            "InstanceType": spec.flavor,
            "SecurityGroupIds": list(spec.security_group_ids),
        }
        if spec.user_data:
            params["UserData"] = spec.user_data.decode()
        if spec.zone:
            params["Placement"] = {"AvailabilityZone": spec.zone}
        if spec.block_devices:
            params["BlockDeviceMappings"] = [
                {"DeviceName": device, "VirtualName": virtual} for device, virtual in spec.block_devices
            ]

        self._log.debug(f"run_instances: {spec.name} ({spec.flavor}, {spec.ami})")
        with self._call(f"run_instances for {spec.name}"):
            response = self._ec2.run_instances(**params)

        instances = response["Instances"]
        if len(instances) != 1:
            raise ProviderError(f"{self.region}: expected 1 instance for {spec.name}, got {len(instances)}")
        return _to_handle(instances[0])

    def terminate_instances(self, instance_ids: Sequence[str]) -> None:
        if not instance_ids:
            return
        self._log.debug(f"terminate_instances: {', '.join(instance_ids)}")
        with self._call(f"terminate_instances {', '.join(instance_ids)}"):
            self._ec2.terminate_instances(InstanceIds=list(instance_ids))

    def describe_instances(self, filters: Filters) -> list[list[InstanceHandle]]:
        aws_filters = [{"Name": name, "Values": list(values)} for name, values in filters.items()]
        reservations: list[list[InstanceHandle]] = []
        with self._call("describe_instances"):
            paginator = self._ec2.get_paginator("describe_instances")
            for page in paginator.paginate(Filters=aws_filters):
                for reservation in page["Reservations"]:
                    reservations.append([_to_handle(i) for i in reservation["Instances"]])
        return reservations

    def create_tags(self, resource_id: str, tags: Mapping[str, str]) -> None:
        if not tags:
            return
        with self._call(f"create_tags on {resource_id}"):
            self._ec2.create_tags(
                Resources=[resource_id],
                Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
            )

    # -------------------------------------------------------------------------
    # Key pairs
    # -------------------------------------------------------------------------

    def list_key_pairs(self) -> list[tuple[str, str]]:
        with self._call("describe_key_pairs"):
            response = self._ec2.describe_key_pairs()
        return [(kp["KeyName"], kp.get("KeyFingerprint", "")) for kp in response["KeyPairs"]]

    # -------------------------------------------------------------------------
    # Security groups
    # -------------------------------------------------------------------------

    def list_security_groups(self) -> list[FirewallGroup]:
        kwargs: dict[str, Any] = {}
        if self.vpc_id:
            kwargs["Filters"] = [{"Name": "vpc-id", "Values": [self.vpc_id]}]

        groups: list[FirewallGroup] = []
        with self._call("describe_security_groups"):
            paginator = self._ec2.get_paginator("describe_security_groups")
            for page in paginator.paginate(**kwargs):
                for sg in page["SecurityGroups"]:
                    groups.append(
                        FirewallGroup(
                            name=sg["GroupName"],
                            region=self.region,
                            group_id=sg["GroupId"],
                            owner_id=sg.get("OwnerId", ""),
                            permissions=tuple(_to_permission(p) for p in sg.get("IpPermissions", [])),
                            vpc_id=sg.get("VpcId", ""),
                        )
                    )
        return groups

    def create_security_group(self, name: str, description: str) -> tuple[str, str]:
        kwargs: dict[str, Any] = {"GroupName": name, "Description": description}
        if self.vpc_id:
            kwargs["VpcId"] = self.vpc_id

        with self._call(f"create_security_group {name}"):
            group_id = self._ec2.create_security_group(**kwargs)["GroupId"]
            described = self._ec2.describe_security_groups(GroupIds=[group_id])

        owner_id = described["SecurityGroups"][0].get("OwnerId", "")
        return group_id, owner_id

    def authorize_ingress(self, group: FirewallGroup, permissions: Sequence[Permission]) -> None:
        if not permissions:
            return
        with self._call(f"authorize_security_group_ingress on {group.name}"):
            self._ec2.authorize_security_group_ingress(
                GroupId=group.group_id,
                IpPermissions=[_from_permission(p) for p in permissions],  # type: ignore[misc]
            )


__all__ = [
    "EC2Provider",
    "Filters",
    "Provider",
]
