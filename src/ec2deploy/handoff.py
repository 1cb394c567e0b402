"""
Hand published outputs to the deployment step.

The deployment itself (pulling the image, replacing the container) runs on
the provisioned host through a RemoteExecutor. Scanning and notification
are likewise capabilities supplied by the caller.
"""

import shlex
import subprocess
from logging import getLogger
from pathlib import Path
from typing import List, Mapping, Optional, Protocol, Sequence, Tuple

import boto3
from botocore.exceptions import WaiterError
from pydantic import BaseModel, SecretStr, model_validator

from .errors import DeploymentFailed

logger = getLogger(__name__)


class ExecResult(BaseModel, frozen=True):
    success: bool
    returncode: int
    stdout: str = ""
    stderr: str = ""


class RemoteExecutor(Protocol):
    # True when the command text reaches the host without being recorded on the way.
    private_input: bool

    def run(
        self,
        outputs: Mapping[str, str],
        commands: Sequence[str],
        timeout: Optional[int] = None,
    ) -> ExecResult: ...


class Notifier(Protocol):
    def notify(self, subject: str, body: str) -> None: ...


class Finding(BaseModel, frozen=True):
    id: str
    severity: str
    package: str = ""


class ScanReport(BaseModel, frozen=True):
    image: str
    findings: Tuple[Finding, ...] = ()

    def blocking(self, severities: Sequence[str]) -> Tuple[str, ...]:
        wanted = {s.upper() for s in severities}
        return tuple(f.id for f in self.findings if f.severity.upper() in wanted)


class Scanner(Protocol):
    def scan(self, image: str) -> ScanReport: ...


class RegistryCredentials(BaseModel, frozen=True):
    """
    Registry login for the deployment host.

    Attributes:
        username: Registry user
        password: Password or token, sent as part of the remote script
        password_parameter: SSM SecureString name the host reads the password
            from instead; the host role needs ssm:GetParameter and the aws CLI
        registry: Registry host, Docker Hub when unset
    """

    username: str
    password: Optional[SecretStr] = None
    password_parameter: Optional[str] = None
    registry: Optional[str] = None

    @model_validator(mode="after")
    def _check_password_source(self) -> "RegistryCredentials":
        if (self.password is None) == (self.password_parameter is None):
            raise ValueError("Set exactly one of password and password_parameter")
        return self

    @property
    def inline_secret(self) -> bool:
        return self.password is not None


class DeploymentSpec(BaseModel, frozen=True):
    """
    The container to run on the provisioned host.

    Attributes:
        image: Fully qualified image reference
        container_name: Name of the container to replace
        ports: (host, container) port pairs to publish
        env: Environment variables for the container
        restart_policy: Docker restart policy
    """

    image: str
    container_name: str = "app"
    ports: Tuple[Tuple[int, int], ...] = ((80, 80),)
    env: Tuple[Tuple[str, str], ...] = ()
    restart_policy: str = "unless-stopped"


def build_deploy_commands(
    deployment: DeploymentSpec, credentials: Optional[RegistryCredentials] = None
) -> List[str]:
    commands = ["set -e"]
    if credentials is not None:
        login = ["docker", "login", "--username", credentials.username, "--password-stdin"]
        if credentials.registry:
            login.append(credentials.registry)
        if credentials.password is not None:
            password = shlex.quote(credentials.password.get_secret_value())
            source = f"printf '%s' {password}"
        else:
            source = shlex.join(
                [
                    "aws", "ssm", "get-parameter",
                    "--name", str(credentials.password_parameter),
                    "--with-decryption",
                    "--query", "Parameter.Value",
                    "--output", "text",
                ]
            )
        commands.append(f"{source} | {shlex.join(login)}")

    name = deployment.container_name
    commands.append(shlex.join(["docker", "pull", deployment.image]))
    # The previous container may not exist on a fresh host.
    commands.append(shlex.join(["docker", "stop", name]) + " || true")
    commands.append(shlex.join(["docker", "rm", name]) + " || true")

    run = ["docker", "run", "-d", "--name", name, "--restart", deployment.restart_policy]
    for host_port, container_port in deployment.ports:
        run.extend(["-p", f"{host_port}:{container_port}"])
    for key, value in deployment.env:
        run.extend(["-e", f"{key}={value}"])
    run.append(deployment.image)
    commands.append(shlex.join(run))
    return commands


class HandoffNotifier:
    """Runs the deployment commands against the host named by the published outputs."""

    def __init__(
        self,
        executor: RemoteExecutor,
        notifier: Optional[Notifier] = None,
        timeout: int = 600,
        host_output: str = "ec2_public_ip",
    ):
        self.executor = executor
        self.notifier = notifier
        self.timeout = timeout
        self.host_output = host_output

    def handoff(
        self,
        outputs: Mapping[str, str],
        deployment: DeploymentSpec,
        credentials: Optional[RegistryCredentials] = None,
    ) -> ExecResult:
        if credentials is not None and credentials.inline_secret:
            if not self.executor.private_input:
                raise ValueError(
                    f"{type(self.executor).__name__} records the commands it runs; "
                    "use password_parameter instead of an inline registry password"
                )
        host = outputs[self.host_output]
        commands = build_deploy_commands(deployment, credentials)

        logger.info(f"Deploying {deployment.image} to {host}")
        try:
            result = self.executor.run(outputs, commands, timeout=self.timeout)
        except TimeoutError as e:
            result = ExecResult(success=False, returncode=-1, stderr=str(e))

        if not result.success:
            self._notify(f"Deployment of {deployment.image} to {host} failed", result.stderr)
            raise DeploymentFailed(host, result.returncode, result.stderr)

        self._notify(f"Deployed {deployment.image} to {host}", result.stdout)
        return result

    def _notify(self, subject: str, body: str) -> None:
        if self.notifier is not None:
            self.notifier.notify(subject, body)


class LoggingNotifier:
    def notify(self, subject: str, body: str) -> None:
        logger.info(f"{subject}\n{body}".rstrip())


class SshRemoteExecutor:
    """Runs commands over the system ssh client, piping them to a remote shell."""

    private_input = True

    def __init__(
        self,
        user: str = "ubuntu",
        key_file: Optional[Path] = None,
        port: int = 22,
        host_output: str = "ec2_public_ip",
        options: Sequence[str] = ("StrictHostKeyChecking=accept-new", "BatchMode=yes"),
    ):
        self.user = user
        self.key_file = key_file
        self.port = port
        self.host_output = host_output
        self.options = tuple(options)

    def command(self, host: str) -> List[str]:
        cmd = ["ssh", "-p", str(self.port)]
        if self.key_file is not None:
            cmd.extend(["-i", str(self.key_file)])
        for option in self.options:
            cmd.extend(["-o", option])
        cmd.extend([f"{self.user}@{host}", "bash -s"])
        return cmd

    def run(
        self,
        outputs: Mapping[str, str],
        commands: Sequence[str],
        timeout: Optional[int] = None,
    ) -> ExecResult:
        host = outputs[self.host_output]
        try:
            completed = subprocess.run(
                self.command(host),
                input="\n".join(commands) + "\n",
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise TimeoutError(f"Remote command on {host} timed out after {timeout}s") from e

        return ExecResult(
            success=completed.returncode == 0,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


class SsmRemoteExecutor:
    """Runs commands through SSM Run Command; the instance needs the SSM agent and role."""

    # Parameters of a sent command are visible through ListCommands and CloudTrail.
    private_input = False

    def __init__(
        self,
        region: str,
        ssm_client=None,
        instance_output: str = "ec2_instance_id",
        poll_delay: int = 1,
    ):
        self.instance_output = instance_output
        self.poll_delay = poll_delay
        self.ssm_client = ssm_client or boto3.client("ssm", region_name=region)

    def run(
        self,
        outputs: Mapping[str, str],
        commands: Sequence[str],
        timeout: Optional[int] = None,
    ) -> ExecResult:
        instance_id = outputs[self.instance_output]
        response = self.ssm_client.send_command(
            InstanceIds=[instance_id],
            DocumentName="AWS-RunShellScript",
            Parameters={
                "commands": list(commands),
                "executionTimeout": [str(timeout or 3600)],
            },
        )
        command_id = response["Command"]["CommandId"]

        try:
            waiter = self.ssm_client.get_waiter("command_executed")
            waiter.wait(
                CommandId=command_id,
                InstanceId=instance_id,
                WaiterConfig={"Delay": self.poll_delay, "MaxAttempts": timeout or 3600},
            )
        except WaiterError as we:
            logger.debug(f"Command execution failed: {we}")
            if we.last_response and we.last_response.get("Status") == "InProgress":
                logger.warning("Command is still running, cancelling it.")
                self.ssm_client.cancel_command(
                    CommandId=command_id, InstanceIds=[instance_id]
                )
                raise TimeoutError("Command execution timed out.")

        invocation = self.ssm_client.get_command_invocation(
            CommandId=command_id, InstanceId=instance_id
        )
        return_code = invocation.get("ResponseCode", 1)
        return ExecResult(
            success=return_code == 0,
            returncode=return_code,
            stdout=invocation.get("StandardOutputContent", ""),
            stderr=invocation.get("StandardErrorContent", ""),
        )
