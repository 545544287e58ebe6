"""Resource backend: the EC2 calls region-proxy needs, behind a small protocol."""

import configparser
import os
import time
import urllib.request
import uuid
from contextlib import contextmanager
from typing import Iterator, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

from .errors import BackendRejectedError, NotFoundError
from .retry import RetryPolicy, Sleep, poll, retry_call
from .types import Architecture, OrphanSet
from .utils import debug, log, warn

RESOURCE_PREFIX = "region-proxy"
OWNER_TAG_KEY = "CreatedBy"
OWNER_TAG_VALUE = RESOURCE_PREFIX

# Error codes meaning the resource is already gone
ALREADY_DELETED_CODES = (
    "InvalidGroup.NotFound",
    "InvalidKeyPair.NotFound",
    "InvalidInstanceID.NotFound",
)

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]


class ResourceBackend(Protocol):
    region: str

    def validate_auth(self) -> None: ...

    def find_latest_image(self, arch: Architecture) -> str: ...

    def create_security_group(self) -> str: ...

    def authorize_ingress(self, group_id: str, port: int, cidr: str) -> None: ...

    def create_key_pair(self) -> tuple[str, str]: ...

    def launch_instance(
        self, image_id: str, instance_type: str, group_id: str, key_name: str
    ) -> str: ...

    def wait_until_running(self, instance_id: str) -> str: ...

    def terminate_instance(self, instance_id: str) -> None: ...

    def wait_until_terminated(self, instance_id: str) -> None: ...

    def delete_security_group(self, group_id: str) -> None: ...

    def delete_key_pair(self, key_name: str) -> None: ...

    def find_tagged_resources(self) -> OrphanSet: ...


def get_aws_config(profile: str | None = None) -> dict:
    """Load AWS configuration for boto3 session initialization.

    Reads profile names from the AWS config files and AWS_PROFILE. Does not
    validate credentials; that happens in EC2Backend.validate_auth().

    :param profile: Explicit AWS profile name (overrides AWS_PROFILE env var)
    :return: Dict with an optional profile_name key for boto3.Session()
    """
    load_dotenv()

    aws_config = {}
    available_profiles = set()
    for path in ["~/.aws/credentials", "~/.aws/config"]:
        path = os.path.expanduser(path)
        if os.path.exists(path):
            cfg = configparser.ConfigParser()
            cfg.read(path)
            for section in cfg.sections():
                if section.startswith("profile "):
                    available_profiles.add(section[8:])
                else:
                    available_profiles.add(section)

    profile_name = profile or os.getenv("AWS_PROFILE")
    if not profile_name and "default" in available_profiles:
        profile_name = "default"
    if profile_name:
        if profile_name in available_profiles:
            aws_config["profile_name"] = profile_name
        else:
            log(f"AWS profile '{profile_name}' not found, using default credential chain...")
            os.environ.pop("AWS_PROFILE", None)

    return aws_config


def get_my_ip() -> str | None:
    """Get the current public IP address for SSH restriction.

    :return: Public IP address string, or None if detection fails
    """
    try:
        with urllib.request.urlopen("https://api.ipify.org", timeout=5) as response:
            return response.read().decode("utf8").strip()
    except OSError:
        return None


def detect_ssh_cidr() -> str:
    my_ip = get_my_ip()
    if not my_ip:
        warn("Could not determine your public IP, using 0.0.0.0/0 for SSH access")
        return "0.0.0.0/0"
    log(f"Restricting SSH access to your IP: '{my_ip}'")
    return f"{my_ip}/32"


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "Unknown")


@contextmanager
def _aws_call(action: str) -> Iterator[None]:
    """Translate botocore failures into BackendRejectedError."""
    try:
        yield
    except ClientError as e:
        code = _error_code(e)
        raise BackendRejectedError(f"{action} failed ({code}): {e}", code=code) from e
    except BotoCoreError as e:
        raise BackendRejectedError(f"{action} failed: {e}") from e


def _owner_tags(resource_type: str, name: str | None = None) -> list[dict]:
    tags = [{"Key": OWNER_TAG_KEY, "Value": OWNER_TAG_VALUE}]
    if name:
        tags.insert(0, {"Key": "Name", "Value": name})
    return [{"ResourceType": resource_type, "Tags": tags}]


class EC2Backend:
    """Resource backend for one AWS region.

    Every wait is a RetryPolicy attribute so callers (and tests) can shorten
    it on an instance without touching the class defaults.
    """

    RUNNING_POLL = RetryPolicy(attempts=60, delay=5)
    SETTLE_DELAY = 15
    TERMINATED_POLL = RetryPolicy(attempts=30, delay=2)
    DELETE_GROUP_RETRY = RetryPolicy(attempts=5, delay=5)

    IMAGE_OWNER = "amazon"
    IMAGE_NAME_PATTERN = "al2023-ami-2023.*-{arch}"

    def __init__(
        self,
        region: str,
        *,
        aws_config: dict | None = None,
        client=None,
        sleep: Sleep = time.sleep,
    ):
        self.region = region
        self.aws_config = aws_config if aws_config is not None else get_aws_config()
        self.sleep = sleep
        self._client = client

    def _get_session(self):
        """Get boto3 session using aws_config."""
        return boto3.Session(**self.aws_config)

    @property
    def ec2(self):
        if self._client is None:
            self._client = self._get_session().client("ec2", region_name=self.region)
        return self._client

    def validate_auth(self) -> None:
        """Fail fast with a clear error if credentials are missing or expired.

        :raises BackendRejectedError: If STS rejects the credentials
        """
        profile = self.aws_config.get("profile_name")
        try:
            sts = self._get_session().client("sts", region_name=self.region)
            identity = sts.get_caller_identity()
        except ClientError as e:
            code = _error_code(e)
            if code in ("ExpiredToken", "ExpiredTokenException"):
                login_cmd = f"aws sso login --profile {profile}" if profile else "aws sso login"
                raise BackendRejectedError(
                    f"AWS credentials expired. Run:\n  {login_cmd}", code=code
                ) from e
            raise BackendRejectedError(
                f"AWS authentication failed ({code}): {e}", code=code
            ) from e
        except BotoCoreError as e:
            raise BackendRejectedError(
                f"AWS authentication failed: {e}\n"
                "Configure credentials with 'aws configure' or set AWS_PROFILE"
            ) from e
        account = identity.get("Account", "unknown")
        log(f"AWS: region={self.region}  profile={profile or 'default chain'}  account={account}")

    def find_latest_image(self, arch: Architecture) -> str:
        """Newest available Amazon Linux 2023 image for the architecture.

        :raises NotFoundError: If no image matches
        """
        log(f"Finding latest Amazon Linux 2023 AMI for {arch}")
        with _aws_call("DescribeImages"):
            response = self.ec2.describe_images(
                Filters=[
                    {"Name": "name", "Values": [self.IMAGE_NAME_PATTERN.format(arch=arch)]},
                    {"Name": "state", "Values": ["available"]},
                    {"Name": "architecture", "Values": [arch]},
                ],
                Owners=[self.IMAGE_OWNER],
            )

        if not response["Images"]:
            raise NotFoundError(f"No Amazon Linux 2023 AMI found for architecture {arch}")

        images = sorted(
            response["Images"], key=lambda x: x["CreationDate"], reverse=True
        )
        ami_id = images[0]["ImageId"]
        log(f"Using AMI: '{ami_id}'")
        return ami_id

    def create_security_group(self) -> str:
        group_name = f"{RESOURCE_PREFIX}-{uuid.uuid4()}"
        log(f"Creating security group: '{group_name}'")
        with _aws_call("CreateSecurityGroup"):
            response = self.ec2.create_security_group(
                GroupName=group_name,
                Description="Temporary security group for region-proxy SSH access",
                TagSpecifications=_owner_tags("security-group", group_name),
            )
        group_id = response["GroupId"]
        log(f"Created security group: '{group_id}'")
        return group_id

    def authorize_ingress(self, group_id: str, port: int, cidr: str) -> None:
        with _aws_call("AuthorizeSecurityGroupIngress"):
            self.ec2.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[
                    {
                        "IpProtocol": "tcp",
                        "FromPort": port,
                        "ToPort": port,
                        "IpRanges": [{"CidrIp": cidr, "Description": "SSH access"}],
                    }
                ],
            )

    def create_key_pair(self) -> tuple[str, str]:
        """:return: (key_name, private_key_material)"""
        key_name = f"{RESOURCE_PREFIX}-{uuid.uuid4()}"
        log(f"Creating key pair: '{key_name}'")
        with _aws_call("CreateKeyPair"):
            response = self.ec2.create_key_pair(
                KeyName=key_name,
                TagSpecifications=_owner_tags("key-pair"),
            )
        return key_name, response["KeyMaterial"]

    def launch_instance(
        self, image_id: str, instance_type: str, group_id: str, key_name: str
    ) -> str:
        log(f"Launching instance: type={instance_type}, ami={image_id}")
        with _aws_call("RunInstances"):
            response = self.ec2.run_instances(
                ImageId=image_id,
                InstanceType=instance_type,
                MinCount=1,
                MaxCount=1,
                SecurityGroupIds=[group_id],
                KeyName=key_name,
                TagSpecifications=_owner_tags("instance", f"{RESOURCE_PREFIX}-instance"),
            )
        instance_id = response["Instances"][0]["InstanceId"]
        log(f"Launched instance: '{instance_id}'")
        return instance_id

    def _describe_instance(self, instance_id: str) -> dict:
        with _aws_call("DescribeInstances"):
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        reservations = response["Reservations"]
        if not reservations or not reservations[0]["Instances"]:
            raise NotFoundError(f"Instance '{instance_id}' not found")
        return reservations[0]["Instances"][0]

    def wait_until_running(self, instance_id: str) -> str:
        """Wait for the instance to run with a public IP, then let sshd come up.

        :return: Public IP address
        :raises BackendRejectedError: If the instance starts terminating
        :raises WaitTimeoutError: If it is not running within RUNNING_POLL
        """
        log(
            f"Waiting for instance '{instance_id}' to be running "
            f"(up to {self.RUNNING_POLL.budget:g}s)..."
        )

        def running_ip() -> str | None:
            try:
                instance = self._describe_instance(instance_id)
            except NotFoundError:
                return None
            except BackendRejectedError as e:
                # New instance IDs can take a moment to become visible
                if e.code != "InvalidInstanceID.NotFound":
                    raise
                debug(f"Instance '{instance_id}' not visible yet")
                return None
            state = instance.get("State", {}).get("Name", "pending")
            debug(f"Instance state: {state}")
            if state in ("shutting-down", "terminated"):
                raise BackendRejectedError(
                    f"Instance '{instance_id}' terminated unexpectedly (state: {state})"
                )
            if state == "running":
                return instance.get("PublicIpAddress")
            return None

        ip = poll(running_ip, self.RUNNING_POLL, sleep=self.sleep, what=f"instance '{instance_id}' to run")
        log(f"Instance is running with IP: '{ip}'")
        log("Waiting for SSH to be ready...")
        self.sleep(self.SETTLE_DELAY)
        return ip

    def terminate_instance(self, instance_id: str) -> None:
        log(f"Terminating instance: '{instance_id}'")
        try:
            with _aws_call("TerminateInstances"):
                self.ec2.terminate_instances(InstanceIds=[instance_id])
        except BackendRejectedError as e:
            if e.code not in ALREADY_DELETED_CODES:
                raise
            debug(f"Instance '{instance_id}' already gone")

    def wait_until_terminated(self, instance_id: str) -> None:
        """:raises WaitTimeoutError: If termination is not observed within TERMINATED_POLL"""

        def terminated() -> bool | None:
            try:
                instance = self._describe_instance(instance_id)
            except NotFoundError:
                return True
            except BackendRejectedError as e:
                if e.code in ALREADY_DELETED_CODES:
                    return True
                raise
            return True if instance.get("State", {}).get("Name") == "terminated" else None

        poll(terminated, self.TERMINATED_POLL, sleep=self.sleep, what=f"instance '{instance_id}' to terminate")
        log("Instance terminated")

    def delete_security_group(self, group_id: str) -> None:
        """Delete a security group, retrying while it detaches from terminated instances."""
        log(f"Deleting security group: '{group_id}'")

        def delete() -> None:
            try:
                with _aws_call("DeleteSecurityGroup"):
                    self.ec2.delete_security_group(GroupId=group_id)
            except BackendRejectedError as e:
                if e.code not in ALREADY_DELETED_CODES:
                    raise
                debug(f"Security group '{group_id}' already gone")

        retry_call(
            delete,
            self.DELETE_GROUP_RETRY,
            retry_on=(BackendRejectedError,),
            sleep=self.sleep,
            what=f"deletion of security group '{group_id}'",
        )
        log("Deleted security group")

    def delete_key_pair(self, key_name: str) -> None:
        log(f"Deleting key pair: '{key_name}'")
        try:
            with _aws_call("DeleteKeyPair"):
                self.ec2.delete_key_pair(KeyName=key_name)
        except BackendRejectedError as e:
            if e.code not in ALREADY_DELETED_CODES:
                raise
        log("Deleted key pair")

    def find_tagged_resources(self) -> OrphanSet:
        """Every live resource in this region carrying the owner tag."""
        owner_filter = {"Name": f"tag:{OWNER_TAG_KEY}", "Values": [OWNER_TAG_VALUE]}

        with _aws_call("DescribeInstances"):
            response = self.ec2.describe_instances(
                Filters=[
                    owner_filter,
                    {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
                ]
            )
        instance_ids = [
            instance["InstanceId"]
            for reservation in response["Reservations"]
            for instance in reservation["Instances"]
        ]

        with _aws_call("DescribeSecurityGroups"):
            response = self.ec2.describe_security_groups(Filters=[owner_filter])
        group_ids = [sg["GroupId"] for sg in response["SecurityGroups"]]

        with _aws_call("DescribeKeyPairs"):
            response = self.ec2.describe_key_pairs(Filters=[owner_filter])
        key_names = [kp["KeyName"] for kp in response["KeyPairs"]]

        return {
            "instance_ids": instance_ids,
            "security_group_ids": group_ids,
            "key_pair_names": key_names,
        }


def get_backend(region: str) -> EC2Backend:
    """Get a backend for region with credentials from the environment."""
    return EC2Backend(region)
