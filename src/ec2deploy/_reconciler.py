import hashlib
from dataclasses import dataclass
from logging import getLogger
from typing import Dict, List, Optional

from ._provider import Provider
from .declaration import INSTANCE, ResourceDeclaration
from .errors import MissingOutput, ProviderError
from .outputs import OutputSet, publish_outputs
from .planner import Action, Change, ChangePlan, plan_changes, plan_destroy
from .state import AppliedState, LockInfo, ResourceState, StateStore


@dataclass(frozen=True)
class ApplyResult:
    plan: ChangePlan
    state: AppliedState
    outputs: OutputSet


class Reconciler:
    """Converges provider resources towards a ResourceDeclaration.

    Every mutation happens under the store's lock, and state is written
    after each change so a failure part way through leaves the store
    describing what actually exists. Nothing is rolled back; apply again
    to converge.
    """

    logger = getLogger(__name__)

    def __init__(self, store: StateStore, provider: Provider, lock_timeout: float = 0):
        self.store = store
        self.provider = provider
        self.lock_timeout = lock_timeout

    def refresh(self, state: AppliedState) -> AppliedState:
        """Drop resources that no longer exist and update provider-assigned attributes."""
        refreshed = state
        for address, resource in state.resources.items():
            current = self.provider.describe(address, resource.kind, resource.id)
            if current is None:
                self.logger.warning(
                    f"{address} ({resource.id}) no longer exists and will be recreated"
                )
                refreshed = refreshed.without_resource(address)
            elif current.computed != resource.computed:
                refreshed = refreshed.with_resource(
                    address, resource.model_copy(update={"computed": current.computed})
                )
        return refreshed

    def plan(self, declaration: ResourceDeclaration) -> ChangePlan:
        with self.store.locked("plan", self.lock_timeout):
            state = self.refresh(self.store.read())
        return plan_changes(declaration, state)

    def apply(self, declaration: ResourceDeclaration) -> ApplyResult:
        with self.store.locked("apply", self.lock_timeout) as lock:
            state = self._read_refreshed(lock)
            plan = plan_changes(declaration, state)
            if plan.is_empty:
                self.logger.info(f"{self.store.key} is up to date")

            for change in plan:
                state = self._apply_change(change, state, lock)

            outputs = publish_outputs(declaration, state)
            if state.outputs != outputs.to_dict():
                state = state.with_outputs(outputs.to_dict())
                self.store.write(state, lock)

        summary = plan.summary()
        self.logger.info(
            f"Apply complete: {summary['create']} created, "
            f"{summary['update']} updated, {summary['delete']} deleted"
        )
        return ApplyResult(plan=plan, state=state, outputs=outputs)

    def destroy(self) -> ChangePlan:
        with self.store.locked("destroy", self.lock_timeout) as lock:
            state = self._read_refreshed(lock)
            plan = plan_destroy(state)
            for change in plan:
                state = self._apply_change(change, state, lock)
            if state.outputs:
                state = state.with_outputs({})
                self.store.write(state, lock)
        self.logger.info(f"Destroyed {len(plan)} resource(s) in {self.store.key}")
        return plan

    def outputs(self, declaration: Optional[ResourceDeclaration] = None) -> OutputSet:
        state = self.store.read()
        if declaration is not None:
            for output in declaration.outputs:
                if output.name not in state.outputs:
                    raise MissingOutput(output.name, output.address)
        elif not state.outputs:
            raise MissingOutput("*")
        return OutputSet(state.outputs)

    def force_unlock(self, lock_id: str) -> None:
        holder = self.store.lock_holder()
        self.store.unlock(lock_id)
        if holder is not None:
            self.logger.warning(f"Removed state lock held by {holder.describe()}")

    def orphaned_instances(self, environment: str) -> List[Dict[str, str]]:
        """Tagged instances for the environment that state does not track."""
        tracked = {
            resource.id
            for resource in self.store.read().resources.values()
            if resource.kind == INSTANCE
        }
        return [
            instance
            for instance in self.provider.list_tagged_instances(environment)
            if instance["id"] not in tracked
        ]

    def remove_orphans(self, instances: List[Dict[str, str]]) -> None:
        for instance in instances:
            self.logger.info(f"Terminating untracked instance {instance['id']}")
            self.provider.delete("orphan", INSTANCE, instance["id"])

    def _read_refreshed(self, lock: LockInfo) -> AppliedState:
        state = self.store.read()
        refreshed = self.refresh(state)
        if refreshed is not state:
            self.store.write(refreshed, lock)
        return refreshed

    def _apply_change(
        self, change: Change, state: AppliedState, lock: LockInfo
    ) -> AppliedState:
        self.logger.info(f"Applying {change.describe()}")

        if change.action is Action.DELETE:
            resource = state.resources[change.address]
            self.provider.delete(change.address, change.kind, resource.id)
            state = state.without_resource(change.address)
        else:
            if change.after is None:
                raise ValueError(f"{change.describe()} has no target attributes")
            refs = {dep: state.resources[dep].id for dep in change.depends_on}
            if change.action is Action.CREATE:
                try:
                    result = self.provider.create(
                        change.address,
                        change.kind,
                        change.after,
                        refs,
                        client_token=_client_token(state, change.address),
                    )
                except ProviderError as e:
                    if e.resource_id is not None:
                        self._record_left_behind(change, e, state, lock)
                    raise
            else:
                resource = state.resources[change.address]
                result = self.provider.update(
                    change.address,
                    change.kind,
                    resource.id,
                    resource.attributes,
                    change.after,
                    refs,
                )
            state = state.with_resource(
                change.address,
                ResourceState(
                    kind=change.kind,
                    id=result.id,
                    attributes=change.after,
                    computed=result.computed,
                    depends_on=change.depends_on,
                ),
            )

        self.store.write(state, lock)
        return state

    def _record_left_behind(
        self, change: Change, error: ProviderError, state: AppliedState, lock: LockInfo
    ) -> None:
        # The next plan diffs against what the resource actually has.
        self.logger.warning(
            f"{change.address} ({error.resource_id}) exists but was not fully configured"
        )
        state = state.with_resource(
            change.address,
            ResourceState(
                kind=change.kind,
                id=error.resource_id,
                attributes=error.applied if error.applied is not None else change.after,
                depends_on=change.depends_on,
            ),
        )
        self.store.write(state, lock)


def _client_token(state: AppliedState, address: str) -> str:
    # Same token for a retried apply that crashed before recording the create.
    seed = f"{state.lineage}:{state.serial}:{address}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:64]
