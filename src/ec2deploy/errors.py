"""Exceptions raised while reconciling, publishing and handing off an EC2 deployment."""

from typing import Any, Dict, Mapping, Optional, Tuple


class Ec2DeployError(Exception):
    """Base error for everything raised by ec2deploy."""


class StateConflict(Ec2DeployError):
    """The state lock for an environment is held by someone else."""

    def __init__(self, key: str, holder: Optional[str] = None, message: str = ""):
        self.key = key
        self.holder = holder
        detail = message or "state is locked"
        if holder:
            detail = f"{detail} (held by {holder})"
        super().__init__(f"{key}: {detail}")


class ProviderError(Ec2DeployError):
    """A provider API call failed."""

    def __init__(
        self,
        address: str,
        operation: str,
        code: Optional[str] = None,
        message: str = "",
    ):
        self.address = address
        self.operation = operation
        self.code = code
        self.message = message
        # Set when the resource exists even though the operation failed.
        self.resource_id: Optional[str] = None
        self.applied: Optional[Dict[str, Any]] = None
        prefix = f"{operation} {address} failed"
        if code:
            prefix = f"{prefix} [{code}]"
        super().__init__(f"{prefix}: {message}" if message else prefix)

    def left_behind(self, resource_id: str, applied: Mapping[str, Any]) -> "ProviderError":
        """Record the resource a failed create left in place, with the attributes it has."""
        self.resource_id = resource_id
        self.applied = dict(applied)
        return self


class ProviderRejected(ProviderError):
    """The provider refused the declared parameters. Never retried."""


class MissingOutput(Ec2DeployError):
    def __init__(self, name: str, address: Optional[str] = None):
        self.name = name
        self.address = address
        where = f" from {address}" if address else ""
        super().__init__(f"Output '{name}'{where} has no value in applied state")


class ReadinessTimeout(Ec2DeployError):
    def __init__(self, host: str, port: int, timeout: float):
        self.host = host
        self.port = port
        self.timeout = timeout
        super().__init__(
            f"{host}:{port} did not accept connections within {timeout:g} seconds"
        )


class DeploymentFailed(Ec2DeployError):
    """Remote deployment commands exited non-zero."""

    def __init__(self, host: str, returncode: int, stderr: str = ""):
        self.host = host
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Deployment on {host} exited with status {returncode}: {stderr.strip()}"
        )


class ScanRejected(Ec2DeployError):
    def __init__(self, image: str, findings: Tuple[str, ...]):
        self.image = image
        self.findings = findings
        super().__init__(
            f"Image {image} has {len(findings)} blocking finding(s): "
            + ", ".join(findings[:5])
        )
