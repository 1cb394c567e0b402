from ._provider import Ec2Provider, Provider, ProviderResource
from ._reconciler import ApplyResult, Reconciler
from .declaration import (
    IngressRule,
    InstanceDeclaration,
    OutputDeclaration,
    ResourceDeclaration,
    SecurityGroupDeclaration,
)
from .errors import (
    DeploymentFailed,
    Ec2DeployError,
    MissingOutput,
    ProviderError,
    ProviderRejected,
    ReadinessTimeout,
    ScanRejected,
    StateConflict,
)
from .handoff import (
    DeploymentSpec,
    ExecResult,
    Finding,
    HandoffNotifier,
    LoggingNotifier,
    Notifier,
    RegistryCredentials,
    RemoteExecutor,
    Scanner,
    ScanReport,
    SshRemoteExecutor,
    SsmRemoteExecutor,
)
from .outputs import OutputSet, publish_outputs, write_github_output
from .pipeline import DeploymentPipeline, PipelineResult
from .planner import Action, Change, ChangePlan, plan_changes, plan_destroy
from .readiness import ReadinessGate
from .schema import Ec2DeployConfig
from .state import (
    AppliedState,
    InMemoryStateStore,
    LocalStateStore,
    LockInfo,
    ResourceState,
    S3StateStore,
    StateStore,
)

__all__ = [
    "Action",
    "AppliedState",
    "ApplyResult",
    "Change",
    "ChangePlan",
    "DeploymentFailed",
    "DeploymentPipeline",
    "DeploymentSpec",
    "Ec2DeployConfig",
    "Ec2DeployError",
    "Ec2Provider",
    "ExecResult",
    "Finding",
    "HandoffNotifier",
    "InMemoryStateStore",
    "IngressRule",
    "InstanceDeclaration",
    "LocalStateStore",
    "LockInfo",
    "LoggingNotifier",
    "MissingOutput",
    "Notifier",
    "OutputDeclaration",
    "OutputSet",
    "PipelineResult",
    "Provider",
    "ProviderError",
    "ProviderRejected",
    "ProviderResource",
    "ReadinessGate",
    "ReadinessTimeout",
    "Reconciler",
    "RegistryCredentials",
    "RemoteExecutor",
    "ResourceDeclaration",
    "ResourceState",
    "S3StateStore",
    "ScanRejected",
    "ScanReport",
    "Scanner",
    "SecurityGroupDeclaration",
    "SshRemoteExecutor",
    "SsmRemoteExecutor",
    "StateConflict",
    "StateStore",
    "plan_changes",
    "plan_destroy",
    "publish_outputs",
    "write_github_output",
]
