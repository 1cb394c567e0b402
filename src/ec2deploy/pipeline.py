from dataclasses import dataclass
from logging import getLogger
from typing import Optional, Sequence

from ._reconciler import ApplyResult, Reconciler
from .declaration import ResourceDeclaration
from .errors import DeploymentFailed, Ec2DeployError, ScanRejected
from .handoff import (
    DeploymentSpec,
    ExecResult,
    HandoffNotifier,
    Notifier,
    RegistryCredentials,
    Scanner,
)
from .readiness import ReadinessGate

logger = getLogger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    applied: ApplyResult
    deployed: ExecResult


class DeploymentPipeline:
    """Scan (optional), apply, publish outputs, wait for the host, hand off."""

    def __init__(
        self,
        reconciler: Reconciler,
        gate: ReadinessGate,
        handoff: HandoffNotifier,
        scanner: Optional[Scanner] = None,
        notifier: Optional[Notifier] = None,
        readiness_port: int = 22,
        blocking_severities: Sequence[str] = ("CRITICAL",),
    ):
        self.reconciler = reconciler
        self.gate = gate
        self.handoff = handoff
        self.scanner = scanner
        self.notifier = notifier
        self.readiness_port = readiness_port
        self.blocking_severities = tuple(blocking_severities)

    def run(
        self,
        declaration: ResourceDeclaration,
        deployment: DeploymentSpec,
        credentials: Optional[RegistryCredentials] = None,
    ) -> PipelineResult:
        try:
            if self.scanner is not None:
                self._scan(self.scanner, deployment.image)

            applied = self.reconciler.apply(declaration)
            host = applied.outputs[self.handoff.host_output]
            self.gate.wait(host, self.readiness_port)
            deployed = self.handoff.handoff(applied.outputs, deployment, credentials)
        except DeploymentFailed as e:
            # The handoff step reports through its own notifier when it has one.
            if self.handoff.notifier is None:
                self._report(declaration, e)
            raise
        except Ec2DeployError as e:
            self._report(declaration, e)
            raise
        return PipelineResult(applied=applied, deployed=deployed)

    def _report(self, declaration: ResourceDeclaration, error: Ec2DeployError) -> None:
        logger.error(f"Pipeline for {declaration.environment} failed: {error}")
        if self.notifier is not None:
            self.notifier.notify(f"{declaration.environment} deployment failed", str(error))

    def _scan(self, scanner: Scanner, image: str) -> None:
        report = scanner.scan(image)
        blocking = report.blocking(self.blocking_severities)
        if blocking:
            raise ScanRejected(image, blocking)
        logger.info(f"{image}: {len(report.findings)} finding(s), none blocking")
