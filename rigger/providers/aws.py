"""
AWS providers backed by boto3: key pair, security group, IAM role and
instance profile, EC2 instances, ECR repositories and the DynamoDB table.
"""

import base64
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from ..errors import PreconditionMissing, ProviderRejected, RiggerError, TransientError
from ..models import ObservedState, ResourceDescriptor, ResourceKind
from ..tags import base_tags, from_aws_tags, to_aws_tags
from .base import KindPolicy, Provider, ProviderContext, T, log_action

logger = logging.getLogger(__name__)

UBUNTU_OWNER = "099720109477"
UBUNTU_IMAGE_PATTERN = "ubuntu/images/hvm-ssd*/ubuntu-noble-24.04-amd64-server-*"

TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "TooManyRequestsException",
    "ProvisionedThroughputExceededException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalServerError",
    "RequestTimeout",
    "DependencyViolation",
    "IncorrectInstanceState",
})

NOT_FOUND_CODES = frozenset({
    "NoSuchEntity",
    "InvalidGroup.NotFound",
    "InvalidKeyPair.NotFound",
    "InvalidInstanceID.NotFound",
    "RepositoryNotFoundException",
    "ResourceNotFoundException",
})

ALREADY_EXISTS_CODES = frozenset({
    "EntityAlreadyExists",
    "InvalidKeyPair.Duplicate",
    "InvalidGroup.Duplicate",
    "InvalidPermission.Duplicate",
    "LimitExceeded.Duplicate",
    "RepositoryAlreadyExistsException",
    "ResourceInUseException",
})

INSTANCE_LIVE_STATES = ["pending", "running", "stopping", "stopped", "shutting-down"]

ECR_POLICY_ACTIONS = [
    "ecr:GetAuthorizationToken",
    "ecr:BatchCheckLayerAvailability",
    "ecr:GetDownloadUrlForLayer",
    "ecr:BatchGetImage",
    "ecr:DescribeRepositories",
    "ecr:ListImages",
    "ecr:DescribeImages",
    "ecr:GetRepositoryPolicy",
]


def ec2_trust_policy() -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }],
    }


def ecr_access_policy() -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Action": list(ECR_POLICY_ACTIONS),
            "Resource": "*",
        }],
    }


def kubeadm_user_data(hostname: str) -> str:
    """
    Cloud-init script preparing a node for kubeadm.

    Args:
        hostname: Hostname to set (k8s-master, k8s-worker1, ...)

    Returns:
        Shell script passed as EC2 user data
    """
    return f"""#!/bin/bash
hostnamectl set-hostname {hostname}
echo "127.0.0.1 $(hostname)" >> /etc/hosts

apt-get update -y
apt-get install -y apt-transport-https ca-certificates curl gnupg lsb-release \\
    software-properties-common git wget vim net-tools unzip

# kubelet refuses to start with swap enabled
swapoff -a
sed -i '/swap/d' /etc/fstab

cat > /etc/modules-load.d/k8s.conf << EOF
overlay
br_netfilter
EOF
modprobe overlay
modprobe br_netfilter

cat > /etc/sysctl.d/k8s.conf << EOF
net.bridge.bridge-nf-call-iptables  = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward                 = 1
EOF
sysctl --system

echo "Instance setup complete!" > /var/log/user-data.log
"""


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def translate_client_error(error: ClientError, describe: str) -> RiggerError:
    """
    Map a botocore ClientError onto the error taxonomy.

    Throttling, 5xx and dependency races are transient. Instance profiles
    that EC2 cannot see yet are transient too (IAM is eventually
    consistent). Not-found outside a probe means a prerequisite is gone.
    Everything else is a rejection that retrying will not fix.
    """
    code = error_code(error)
    message = error.response.get("Error", {}).get("Message", str(error))
    text = f"{describe} failed: {code}: {message}"

    if code in TRANSIENT_CODES:
        return TransientError(text)
    if code.startswith("InvalidParameterValue") and "instance profile" in message.lower():
        return TransientError(text)
    if code in NOT_FOUND_CODES:
        return PreconditionMissing(text)
    return ProviderRejected(text)


class AwsClients:
    """Lazily created boto3 clients for one region. Safe to share between threads."""

    def __init__(self, region: str, clients: Optional[Dict[str, Any]] = None, session: Any = None):
        self.region = region
        self._clients: Dict[str, Any] = dict(clients or {})
        self._session = session
        self._lock = threading.Lock()

    def get(self, service: str) -> Any:
        with self._lock:
            if service not in self._clients:
                # boto3 sessions are not thread safe; clients are
                if self._session is None:
                    self._session = boto3.session.Session(region_name=self.region)
                self._clients[service] = self._session.client(service)
            return self._clients[service]

    def account_id(self) -> str:
        return self.get("sts").get_caller_identity()["Account"]

    def registry_url(self) -> str:
        return f"{self.account_id()}.dkr.ecr.{self.region}.amazonaws.com"


class AwsProvider(Provider):
    """Shared plumbing: client lookup, tagging and error translation."""

    def __init__(self, context: ProviderContext, clients: AwsClients):
        super().__init__(context)
        self.clients = clients

    @property
    def project(self) -> str:
        return self.context.config.project_name

    def tags(self, descriptor: ResourceDescriptor, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        tags = base_tags(self.project, descriptor.name, self.context.config.tags)
        if extra:
            tags.update(extra)
        return tags

    def aws(self, describe: str, fn: Callable[[], T], ignore: FrozenSet[str] = frozenset()) -> Optional[T]:
        """
        Call AWS with retries on transient failures.

        Args:
            describe: Human description for error messages
            fn: Zero-argument callable issuing the boto3 request
            ignore: Error codes that mean "nothing to do"; the call returns None

        Returns:
            The response, or None if the error code was ignored
        """
        def attempt():
            try:
                return fn()
            except ClientError as e:
                if error_code(e) in ignore:
                    logger.debug(f"{describe}: ignoring {error_code(e)}")
                    return None
                raise translate_client_error(e, describe)
            except NoCredentialsError:
                raise PreconditionMissing("AWS credentials are not configured",
                                          remediation="aws configure")
            except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
                raise TransientError(f"{describe} failed: {e}")
            except BotoCoreError as e:
                raise ProviderRejected(f"{describe} failed: {e}")

        return self.call(attempt, describe)


class KeyPairProvider(AwsProvider):
    """EC2 key pair plus its private key file on the operator's machine."""

    kind = ResourceKind.KEY_PAIR

    def _key_file(self, descriptor: ResourceDescriptor) -> Path:
        return Path(descriptor.spec.get("key_file") or f"{descriptor.name}.pem")

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        ec2 = self.clients.get("ec2")
        response = self.aws(
            f"describe key pair {descriptor.name}",
            lambda: ec2.describe_key_pairs(KeyNames=[descriptor.name]),
            ignore=NOT_FOUND_CODES,
        )
        pairs = (response or {}).get("KeyPairs", [])
        if not pairs:
            return ObservedState.not_found()

        key_file = self._key_file(descriptor)
        return ObservedState(
            exists=True,
            phase="available",
            attributes={
                "key_name": descriptor.name,
                "key_pair_id": pairs[0].get("KeyPairId", ""),
                "key_file": str(key_file),
            },
            settings={"local_key_file": key_file.exists()},
        )

    def drift_hint(self, descriptor: ResourceDescriptor, drift: List[str]) -> Optional[str]:
        if "local_key_file" in drift:
            return (f"aws ec2 delete-key-pair --key-name {descriptor.name} --region {self.clients.region} "
                    f"&& rigger up")
        return None

    def create(self, descriptor: ResourceDescriptor) -> None:
        ec2 = self.clients.get("ec2")
        log_action("Creating", descriptor)
        response = self.aws(
            f"create key pair {descriptor.name}",
            lambda: ec2.create_key_pair(
                KeyName=descriptor.name,
                TagSpecifications=[{"ResourceType": "key-pair", "Tags": to_aws_tags(self.tags(descriptor))}],
            ),
        )
        self._write_key(self._key_file(descriptor), response["KeyMaterial"])

    @staticmethod
    def _write_key(path: Path, material: str) -> None:
        if path.exists():
            # Leftover from an earlier key pair; it is read-only
            path.chmod(0o600)
        path.write_text(material)
        os.chmod(path, 0o400)
        logger.info(f"✓ Private key saved to {path}")

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        ec2 = self.clients.get("ec2")
        log_action("Deleting", descriptor)
        self.aws(
            f"delete key pair {descriptor.name}",
            lambda: ec2.delete_key_pair(KeyName=descriptor.name),
            ignore=NOT_FOUND_CODES,
        )


def _normalize_rule(rule: Dict[str, Any]) -> Tuple[str, int, int, str]:
    return (
        str(rule["protocol"]),
        int(rule["from_port"]),
        int(rule.get("to_port", rule["from_port"])),
        str(rule.get("cidr") or rule.get("source", "self")),
    )


class SecurityGroupProvider(AwsProvider):
    """
    Security group with ingress rules.

    Rules in the spec are dicts with protocol, from_port, to_port and either
    ``cidr`` or ``source: self``. Missing rules are authorized in place;
    rules added by hand are left alone.
    """

    kind = ResourceKind.SECURITY_GROUP
    policy = KindPolicy(updatable=frozenset({"ingress"}))

    def _describe(self, descriptor: ResourceDescriptor) -> Optional[Dict[str, Any]]:
        ec2 = self.clients.get("ec2")
        response = self.aws(
            f"describe security group {descriptor.name}",
            lambda: ec2.describe_security_groups(
                Filters=[{"Name": "group-name", "Values": [descriptor.name]}]
            ),
            ignore=NOT_FOUND_CODES,
        )
        groups = (response or {}).get("SecurityGroups", [])
        return groups[0] if groups else None

    @staticmethod
    def _observed_rules(group: Dict[str, Any]) -> List[Tuple[str, int, int, str]]:
        rules = []
        for permission in group.get("IpPermissions", []):
            protocol = permission.get("IpProtocol", "-1")
            from_port = permission.get("FromPort", -1)
            to_port = permission.get("ToPort", -1)
            for ip_range in permission.get("IpRanges", []):
                rules.append((protocol, from_port, to_port, ip_range["CidrIp"]))
            for pair in permission.get("UserIdGroupPairs", []):
                source = "self" if pair.get("GroupId") == group["GroupId"] else pair.get("GroupId")
                rules.append((protocol, from_port, to_port, source))
        return rules

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        group = self._describe(descriptor)
        if group is None:
            return ObservedState.not_found()

        observed = set(self._observed_rules(group))
        desired = descriptor.spec.get("ingress")
        settings = {}
        if isinstance(desired, list):
            # Report the desired rules that are present, so extra rules never count as drift
            settings["ingress"] = [rule for rule in desired if _normalize_rule(rule) in observed]

        return ObservedState(
            exists=True,
            phase="available",
            attributes={"group_id": group["GroupId"], "group_name": group["GroupName"],
                        "vpc_id": group.get("VpcId", "")},
            settings=settings,
        )

    def create(self, descriptor: ResourceDescriptor) -> None:
        ec2 = self.clients.get("ec2")
        log_action("Creating", descriptor)
        params = {
            "GroupName": descriptor.name,
            "Description": descriptor.spec.get("description", f"Security group for {self.project}"),
            "TagSpecifications": [{"ResourceType": "security-group", "Tags": to_aws_tags(self.tags(descriptor))}],
        }
        if descriptor.spec.get("vpc_id"):
            params["VpcId"] = descriptor.spec["vpc_id"]

        response = self.aws(f"create security group {descriptor.name}",
                            lambda: ec2.create_security_group(**params))
        group_id = response["GroupId"]
        self._authorize(group_id, descriptor.spec.get("ingress", []), descriptor)

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        group = self._describe(descriptor)
        if group is None:
            raise PreconditionMissing(f"Security group {descriptor.name} disappeared during update")
        present = set(self._observed_rules(group))
        missing = [rule for rule in descriptor.spec.get("ingress", []) if _normalize_rule(rule) not in present]
        self._authorize(group["GroupId"], missing, descriptor)

    def _authorize(self, group_id: str, rules: List[Dict[str, Any]], descriptor: ResourceDescriptor) -> None:
        ec2 = self.clients.get("ec2")
        for rule in rules:
            protocol, from_port, to_port, source = _normalize_rule(rule)
            permission: Dict[str, Any] = {"IpProtocol": protocol, "FromPort": from_port, "ToPort": to_port}
            if source == "self":
                permission["UserIdGroupPairs"] = [{"GroupId": group_id}]
            else:
                permission["IpRanges"] = [{"CidrIp": source}]
            if rule.get("description"):
                target = permission.get("IpRanges") or permission.get("UserIdGroupPairs")
                target[0]["Description"] = rule["description"]

            self.aws(
                f"authorize {protocol}/{from_port}-{to_port} on {descriptor.name}",
                lambda: ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=[permission]),
                ignore=frozenset({"InvalidPermission.Duplicate"}),
            )

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        ec2 = self.clients.get("ec2")
        group_id = observed.attributes.get("group_id")
        if not group_id:
            return
        log_action("Deleting", descriptor, group_id)
        self.aws(f"delete security group {descriptor.name}",
                 lambda: ec2.delete_security_group(GroupId=group_id),
                 ignore=NOT_FOUND_CODES)


class IamRoleProvider(AwsProvider):
    """IAM role with a trust policy and inline policies."""

    kind = ResourceKind.IAM_ROLE
    policy = KindPolicy(updatable=frozenset({"assume_role_policy", "inline_policies"}))

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        iam = self.clients.get("iam")
        response = self.aws(f"get role {descriptor.name}",
                            lambda: iam.get_role(RoleName=descriptor.name),
                            ignore=NOT_FOUND_CODES)
        if response is None:
            return ObservedState.not_found()

        role = response["Role"]
        settings: Dict[str, Any] = {}
        if "assume_role_policy" in descriptor.spec:
            settings["assume_role_policy"] = role.get("AssumeRolePolicyDocument")

        desired_policies = descriptor.spec.get("inline_policies")
        if isinstance(desired_policies, dict):
            present = {}
            for policy_name in desired_policies:
                policy = self.aws(
                    f"get role policy {policy_name}",
                    lambda: iam.get_role_policy(RoleName=descriptor.name, PolicyName=policy_name),
                    ignore=NOT_FOUND_CODES,
                )
                if policy is not None:
                    present[policy_name] = policy["PolicyDocument"]
            settings["inline_policies"] = present

        return ObservedState(
            exists=True,
            phase="available",
            attributes={"role_name": role["RoleName"], "arn": role["Arn"]},
            settings=settings,
        )

    def create(self, descriptor: ResourceDescriptor) -> None:
        iam = self.clients.get("iam")
        log_action("Creating", descriptor)
        self.aws(
            f"create role {descriptor.name}",
            lambda: iam.create_role(
                RoleName=descriptor.name,
                AssumeRolePolicyDocument=json.dumps(descriptor.spec.get("assume_role_policy", ec2_trust_policy())),
                Description=descriptor.spec.get("description", f"Role for {self.project} nodes"),
                Tags=to_aws_tags(self.tags(descriptor)),
            ),
            ignore=ALREADY_EXISTS_CODES,
        )
        self._put_policies(descriptor)

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        iam = self.clients.get("iam")
        if "assume_role_policy" in descriptor.spec and \
                observed.settings.get("assume_role_policy") != descriptor.spec["assume_role_policy"]:
            self.aws(
                f"update trust policy of {descriptor.name}",
                lambda: iam.update_assume_role_policy(
                    RoleName=descriptor.name,
                    PolicyDocument=json.dumps(descriptor.spec["assume_role_policy"]),
                ),
            )
        self._put_policies(descriptor)

    def _put_policies(self, descriptor: ResourceDescriptor) -> None:
        iam = self.clients.get("iam")
        for policy_name, document in descriptor.spec.get("inline_policies", {}).items():
            self.aws(
                f"put role policy {policy_name}",
                lambda: iam.put_role_policy(
                    RoleName=descriptor.name,
                    PolicyName=policy_name,
                    PolicyDocument=json.dumps(document),
                ),
            )

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        iam = self.clients.get("iam")
        role = descriptor.name
        log_action("Deleting", descriptor)

        # A role cannot be deleted while profiles or policies still reference it
        profiles = self.aws(f"list instance profiles for {role}",
                            lambda: iam.list_instance_profiles_for_role(RoleName=role),
                            ignore=NOT_FOUND_CODES) or {}
        for profile in profiles.get("InstanceProfiles", []):
            self.aws(
                f"detach {role} from {profile['InstanceProfileName']}",
                lambda: iam.remove_role_from_instance_profile(
                    InstanceProfileName=profile["InstanceProfileName"], RoleName=role),
                ignore=NOT_FOUND_CODES,
            )

        inline = self.aws(f"list role policies for {role}",
                          lambda: iam.list_role_policies(RoleName=role),
                          ignore=NOT_FOUND_CODES) or {}
        for policy_name in inline.get("PolicyNames", []):
            self.aws(f"delete role policy {policy_name}",
                     lambda: iam.delete_role_policy(RoleName=role, PolicyName=policy_name),
                     ignore=NOT_FOUND_CODES)

        attached = self.aws(f"list attached policies for {role}",
                            lambda: iam.list_attached_role_policies(RoleName=role),
                            ignore=NOT_FOUND_CODES) or {}
        for policy in attached.get("AttachedPolicies", []):
            self.aws(f"detach policy {policy['PolicyArn']}",
                     lambda: iam.detach_role_policy(RoleName=role, PolicyArn=policy["PolicyArn"]),
                     ignore=NOT_FOUND_CODES)

        self.aws(f"delete role {role}", lambda: iam.delete_role(RoleName=role), ignore=NOT_FOUND_CODES)


class InstanceProfileProvider(AwsProvider):
    """
    Instance profile wrapping the node role.

    Ready only once the profile exists *and* lists the role; the executor
    polls this composite condition instead of sleeping.
    """

    kind = ResourceKind.INSTANCE_PROFILE
    policy = KindPolicy(updatable=frozenset({"role_name"}))

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        iam = self.clients.get("iam")
        response = self.aws(f"get instance profile {descriptor.name}",
                            lambda: iam.get_instance_profile(InstanceProfileName=descriptor.name),
                            ignore=NOT_FOUND_CODES)
        if response is None:
            return ObservedState.not_found()

        profile = response["InstanceProfile"]
        roles = [role["RoleName"] for role in profile.get("Roles", [])]
        wanted = descriptor.spec.get("role_name")
        attached = wanted in roles if wanted else bool(roles)

        return ObservedState(
            exists=True,
            phase="attached" if attached else "detached",
            attributes={
                "profile_name": profile["InstanceProfileName"],
                "arn": profile["Arn"],
                "role_name": roles[0] if roles else "",
            },
            settings={"role_name": roles[0] if roles else None},
        )

    def is_ready(self, descriptor: ResourceDescriptor, observed: ObservedState) -> bool:
        return observed.exists and observed.phase == "attached"

    def create(self, descriptor: ResourceDescriptor) -> None:
        iam = self.clients.get("iam")
        log_action("Creating", descriptor)
        self.aws(
            f"create instance profile {descriptor.name}",
            lambda: iam.create_instance_profile(
                InstanceProfileName=descriptor.name,
                Tags=to_aws_tags(self.tags(descriptor)),
            ),
            ignore=ALREADY_EXISTS_CODES,
        )
        self._attach(descriptor)

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        iam = self.clients.get("iam")
        current = observed.settings.get("role_name")
        if current and current != descriptor.spec.get("role_name"):
            self.aws(
                f"detach {current} from {descriptor.name}",
                lambda: iam.remove_role_from_instance_profile(
                    InstanceProfileName=descriptor.name, RoleName=current),
                ignore=NOT_FOUND_CODES,
            )
        self._attach(descriptor)

    def _attach(self, descriptor: ResourceDescriptor) -> None:
        iam = self.clients.get("iam")
        role_name = descriptor.spec["role_name"]
        self.aws(
            f"add {role_name} to {descriptor.name}",
            lambda: iam.add_role_to_instance_profile(InstanceProfileName=descriptor.name, RoleName=role_name),
            ignore=ALREADY_EXISTS_CODES,
        )

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        iam = self.clients.get("iam")
        log_action("Deleting", descriptor)
        role_name = observed.settings.get("role_name") or observed.attributes.get("role_name")
        if role_name:
            self.aws(
                f"detach {role_name} from {descriptor.name}",
                lambda: iam.remove_role_from_instance_profile(
                    InstanceProfileName=descriptor.name, RoleName=role_name),
                ignore=NOT_FOUND_CODES,
            )
        self.aws(f"delete instance profile {descriptor.name}",
                 lambda: iam.delete_instance_profile(InstanceProfileName=descriptor.name),
                 ignore=NOT_FOUND_CODES)


class InstanceProvider(AwsProvider):
    """
    EC2 instance found by its Name tag.

    Ready means running with a public IP. A stopped instance is started in
    place; a different AMI or key pair forces replacement.
    """

    kind = ResourceKind.INSTANCE
    policy = KindPolicy(recreate_on=frozenset({"ami_id", "key_name"}), update_phases=frozenset({"stopped"}))
    ready_timeout_field = "instance_timeout_seconds"

    def __init__(self, context: ProviderContext, clients: AwsClients):
        super().__init__(context, clients)
        self._ami_lock = threading.Lock()
        self._default_ami: Optional[str] = None

    def _find(self, name: str) -> Optional[Dict[str, Any]]:
        ec2 = self.clients.get("ec2")
        response = self.aws(
            f"describe instance {name}",
            lambda: ec2.describe_instances(Filters=[
                {"Name": "tag:Name", "Values": [name]},
                {"Name": "instance-state-name", "Values": INSTANCE_LIVE_STATES},
            ]),
        )
        instances = [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        if not instances:
            return None
        if len(instances) > 1:
            logger.warning(f"⚠ {len(instances)} live instances are tagged {name}; using the newest")
        return max(instances, key=lambda i: str(i.get("LaunchTime", "")))

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        instance = self._find(descriptor.name)
        if instance is None:
            return ObservedState.not_found()

        tags = from_aws_tags(instance.get("Tags"))
        settings: Dict[str, Any] = {
            "ami_id": instance.get("ImageId"),
            "key_name": instance.get("KeyName"),
            "instance_type": instance.get("InstanceType"),
        }
        return ObservedState(
            exists=True,
            phase=instance["State"]["Name"],
            attributes={
                "instance_id": instance["InstanceId"],
                "public_ip": instance.get("PublicIpAddress", ""),
                "private_ip": instance.get("PrivateIpAddress", ""),
                "role": tags.get("Role", ""),
            },
            settings=settings,
        )

    def is_ready(self, descriptor: ResourceDescriptor, observed: ObservedState) -> bool:
        if observed.phase != "running":
            return False
        if descriptor.spec.get("require_public_ip", True):
            return bool(observed.attributes.get("public_ip"))
        return True

    def default_ami(self) -> str:
        """Latest Ubuntu 24.04 LTS AMI in the region. Looked up once per process."""
        with self._ami_lock:
            if self._default_ami is None:
                ec2 = self.clients.get("ec2")
                response = self.aws(
                    "look up Ubuntu 24.04 AMI",
                    lambda: ec2.describe_images(
                        Owners=[UBUNTU_OWNER],
                        Filters=[{"Name": "name", "Values": [UBUNTU_IMAGE_PATTERN]}],
                    ),
                )
                images = sorted(response.get("Images", []), key=lambda image: image.get("CreationDate", ""))
                if not images:
                    raise PreconditionMissing(
                        f"No Ubuntu 24.04 AMI found in {self.clients.region}",
                        remediation="set ami_id in rigger.yaml",
                    )
                self._default_ami = images[-1]["ImageId"]
                logger.info(f"ℹ Using Ubuntu 24.04 AMI {self._default_ami}")
            return self._default_ami

    def create(self, descriptor: ResourceDescriptor) -> None:
        ec2 = self.clients.get("ec2")
        spec = descriptor.spec
        ami_id = spec.get("ami_id") or self.default_ami()
        role = spec.get("role", "node")
        log_action("Launching", descriptor, ami_id)

        params: Dict[str, Any] = {
            "ImageId": ami_id,
            "InstanceType": spec.get("instance_type", self.context.config.instance_type),
            "MinCount": 1,
            "MaxCount": 1,
            "KeyName": spec["key_name"],
            "SecurityGroupIds": [spec["security_group_id"]],
            "UserData": kubeadm_user_data(spec.get("hostname", descriptor.name)),
            "BlockDeviceMappings": [{
                "DeviceName": "/dev/sda1",
                "Ebs": {"VolumeSize": int(spec.get("volume_size_gb", 20)), "VolumeType": "gp3"},
            }],
            "TagSpecifications": [{
                "ResourceType": "instance",
                "Tags": to_aws_tags(self.tags(descriptor, {"Role": role})),
            }],
        }
        if spec.get("instance_profile"):
            params["IamInstanceProfile"] = {"Name": spec["instance_profile"]}

        response = self.aws(f"run instance {descriptor.name}", lambda: ec2.run_instances(**params))
        logger.info(f"✓ Instance {descriptor.name} launched: {response['Instances'][0]['InstanceId']}")

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        ec2 = self.clients.get("ec2")
        instance_id = observed.attributes["instance_id"]
        if observed.phase == "stopped":
            log_action("Starting", descriptor, instance_id)
            self.aws(f"start instance {descriptor.name}",
                     lambda: ec2.start_instances(InstanceIds=[instance_id]))

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        ec2 = self.clients.get("ec2")
        instance_id = observed.attributes.get("instance_id")
        if not instance_id:
            instance = self._find(descriptor.name)
            if instance is None:
                return
            instance_id = instance["InstanceId"]
        log_action("Terminating", descriptor, instance_id)
        self.aws(f"terminate instance {descriptor.name}",
                 lambda: ec2.terminate_instances(InstanceIds=[instance_id]),
                 ignore=NOT_FOUND_CODES)


class EcrRepositoryProvider(AwsProvider):
    """ECR repository with scan-on-push."""

    kind = ResourceKind.ECR_REPOSITORY
    policy = KindPolicy(updatable=frozenset({"scan_on_push"}))

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        ecr = self.clients.get("ecr")
        response = self.aws(f"describe repository {descriptor.name}",
                            lambda: ecr.describe_repositories(repositoryNames=[descriptor.name]),
                            ignore=NOT_FOUND_CODES)
        repositories = (response or {}).get("repositories", [])
        if not repositories:
            return ObservedState.not_found()

        repository = repositories[0]
        uri = repository["repositoryUri"]
        scanning = repository.get("imageScanningConfiguration", {})
        return ObservedState(
            exists=True,
            phase="available",
            attributes={
                "repository_uri": uri,
                "registry": uri.split("/", 1)[0],
                "arn": repository.get("repositoryArn", ""),
            },
            settings={"scan_on_push": bool(scanning.get("scanOnPush", False))},
            created_at=repository.get("createdAt"),
        )

    def create(self, descriptor: ResourceDescriptor) -> None:
        ecr = self.clients.get("ecr")
        log_action("Creating", descriptor)
        self.aws(
            f"create repository {descriptor.name}",
            lambda: ecr.create_repository(
                repositoryName=descriptor.name,
                imageScanningConfiguration={"scanOnPush": bool(descriptor.spec.get("scan_on_push", True))},
                imageTagMutability="MUTABLE",
                tags=to_aws_tags(self.tags(descriptor)),
            ),
            ignore=ALREADY_EXISTS_CODES,
        )

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        ecr = self.clients.get("ecr")
        self.aws(
            f"set scan-on-push for {descriptor.name}",
            lambda: ecr.put_image_scanning_configuration(
                repositoryName=descriptor.name,
                imageScanningConfiguration={"scanOnPush": bool(descriptor.spec.get("scan_on_push", True))},
            ),
        )

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        ecr = self.clients.get("ecr")
        log_action("Deleting", descriptor)
        self.aws(f"delete repository {descriptor.name}",
                 lambda: ecr.delete_repository(repositoryName=descriptor.name, force=True),
                 ignore=NOT_FOUND_CODES)


class DynamoTableProvider(AwsProvider):
    """DynamoDB table. Key schema changes force replacement."""

    kind = ResourceKind.DYNAMO_TABLE
    policy = KindPolicy(recreate_on=frozenset({"hash_key"}))
    ready_timeout_field = "table_timeout_seconds"

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        dynamodb = self.clients.get("dynamodb")
        response = self.aws(f"describe table {descriptor.name}",
                            lambda: dynamodb.describe_table(TableName=descriptor.name),
                            ignore=NOT_FOUND_CODES)
        if response is None:
            return ObservedState.not_found()

        table = response["Table"]
        hash_key = next((k["AttributeName"] for k in table.get("KeySchema", []) if k["KeyType"] == "HASH"), None)
        return ObservedState(
            exists=True,
            phase=table["TableStatus"],
            attributes={"table_name": table["TableName"], "arn": table.get("TableArn", ""),
                        "region": self.clients.region},
            settings={"hash_key": hash_key},
            created_at=table.get("CreationDateTime"),
        )

    def create(self, descriptor: ResourceDescriptor) -> None:
        dynamodb = self.clients.get("dynamodb")
        spec = descriptor.spec
        hash_key = spec.get("hash_key", "id")
        log_action("Creating", descriptor)

        definitions = {hash_key: "S"}
        indexes = []
        for index in spec.get("global_secondary_indexes", []):
            definitions[index["hash_key"]] = index.get("type", "S")
            indexes.append({
                "IndexName": index["name"],
                "KeySchema": [{"AttributeName": index["hash_key"], "KeyType": "HASH"}],
                "Projection": {"ProjectionType": index.get("projection", "ALL")},
            })

        params: Dict[str, Any] = {
            "TableName": descriptor.name,
            "AttributeDefinitions": [{"AttributeName": k, "AttributeType": v} for k, v in definitions.items()],
            "KeySchema": [{"AttributeName": hash_key, "KeyType": "HASH"}],
            "BillingMode": spec.get("billing_mode", "PAY_PER_REQUEST"),
            "Tags": to_aws_tags(self.tags(descriptor)),
        }
        if indexes:
            params["GlobalSecondaryIndexes"] = indexes

        self.aws(f"create table {descriptor.name}", lambda: dynamodb.create_table(**params),
                 ignore=ALREADY_EXISTS_CODES)

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        dynamodb = self.clients.get("dynamodb")
        log_action("Deleting", descriptor)
        self.aws(f"delete table {descriptor.name}",
                 lambda: dynamodb.delete_table(TableName=descriptor.name),
                 ignore=NOT_FOUND_CODES)


class EcrCredentials:
    """Registry login (user, token) for image pull secrets. Tokens last 12 hours."""

    def __init__(self, clients: AwsClients):
        self.clients = clients

    def __call__(self) -> Tuple[str, str]:
        ecr = self.clients.get("ecr")
        try:
            response = ecr.get_authorization_token()
        except ClientError as e:
            raise translate_client_error(e, "get ECR authorization token")
        except NoCredentialsError:
            raise PreconditionMissing("AWS credentials are not configured", remediation="aws configure")

        token = response["authorizationData"][0]["authorizationToken"]
        username, password = base64.b64decode(token).decode().split(":", 1)
        return username, password
