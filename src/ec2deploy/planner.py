"""
Diff a ResourceDeclaration against AppliedState into an ordered ChangePlan.

Planning never touches the provider or the state store.
"""

from dataclasses import dataclass, field
from enum import Enum
from graphlib import TopologicalSorter
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .declaration import FORCE_NEW_ATTRIBUTES, ResourceDeclaration
from .state import AppliedState


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


REPLACE = "replace"
REMOVED = "removed from declaration"
DESTROY = "destroy"


@dataclass(frozen=True)
class Change:
    action: Action
    address: str
    kind: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    depends_on: Tuple[str, ...] = ()
    changed: Tuple[str, ...] = ()
    reason: str = ""

    def describe(self) -> str:
        text = f"{self.action.value} {self.address}"
        if self.changed:
            text += f" ({', '.join(self.changed)})"
        if self.reason:
            text += f" [{self.reason}]"
        return text


@dataclass(frozen=True)
class ChangePlan:
    changes: Tuple[Change, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def summary(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts

    def __iter__(self) -> Iterator[Change]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)


def dependency_order(graph: Mapping[str, Iterable[str]]) -> List[str]:
    """Addresses ordered so every resource comes after the ones it depends on."""
    sorter = TopologicalSorter({node: tuple(deps) for node, deps in graph.items()})
    return [node for node in sorter.static_order() if node in graph]


def _changed_attributes(before: Mapping[str, Any], after: Mapping[str, Any]) -> Tuple[str, ...]:
    keys = set(before) | set(after)
    return tuple(sorted(k for k in keys if before.get(k) != after.get(k)))


def plan_changes(declaration: ResourceDeclaration, state: AppliedState) -> ChangePlan:
    desired = declaration.desired_resources()
    current = state.resources

    created: set[str] = set()
    replaced: Dict[str, Tuple[str, ...]] = {}
    updated: Dict[str, Tuple[str, ...]] = {}

    order = dependency_order({a: r.depends_on for a, r in desired.items()})
    for address in order:
        want = desired[address]
        have = current.get(address)
        if have is None:
            created.add(address)
            continue
        changed = _changed_attributes(have.attributes, want.attributes)
        if have.kind != want.kind:
            replaced[address] = changed
        elif any(dep in created or dep in replaced for dep in want.depends_on):
            replaced[address] = changed
        elif set(changed) & set(FORCE_NEW_ATTRIBUTES.get(want.kind, ())):
            replaced[address] = changed
        elif changed:
            updated[address] = changed

    doomed = {a: REMOVED for a in current if a not in desired}
    doomed.update({a: REPLACE for a in replaced})

    changes: List[Change] = list(_deletes(state, doomed))
    for address in order:
        want = desired[address]
        have = current.get(address)
        if address in created or address in replaced:
            changes.append(
                Change(
                    action=Action.CREATE,
                    address=address,
                    kind=want.kind,
                    after=want.attributes,
                    depends_on=want.depends_on,
                    changed=replaced.get(address, ()),
                    reason=REPLACE if address in replaced else "",
                )
            )
        elif address in updated:
            changes.append(
                Change(
                    action=Action.UPDATE,
                    address=address,
                    kind=want.kind,
                    before=have.attributes if have else None,
                    after=want.attributes,
                    depends_on=want.depends_on,
                    changed=updated[address],
                )
            )
    return ChangePlan(changes=tuple(changes))


def plan_destroy(state: AppliedState) -> ChangePlan:
    return ChangePlan(
        changes=tuple(_deletes(state, {a: DESTROY for a in state.resources}))
    )


def _deletes(state: AppliedState, doomed: Mapping[str, str]) -> Iterator[Change]:
    current = state.resources
    graph = {a: tuple(d for d in r.depends_on if d in current) for a, r in current.items()}
    for address in reversed(dependency_order(graph)):
        if address not in doomed:
            continue
        have = current[address]
        yield Change(
            action=Action.DELETE,
            address=address,
            kind=have.kind,
            before=have.attributes,
            depends_on=have.depends_on,
            reason=doomed[address],
        )
