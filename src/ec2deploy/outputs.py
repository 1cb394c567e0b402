"""Named outputs extracted from applied state for downstream automation."""

import json
import uuid
from collections.abc import Mapping
from logging import getLogger
from pathlib import Path
from typing import Dict, Iterator

from .declaration import OutputDeclaration, ResourceDeclaration
from .errors import MissingOutput
from .state import AppliedState

logger = getLogger(__name__)


class OutputSet(Mapping):
    """Read-only mapping of output name to value."""

    def __init__(self, values: Mapping[str, str] | None = None):
        self._values: Dict[str, str] = dict(values or {})

    def __getitem__(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise MissingOutput(name) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"OutputSet({self._values!r})"

    def to_dict(self) -> Dict[str, str]:
        return dict(self._values)

    def to_json(self) -> str:
        return json.dumps(self._values, indent=2, sort_keys=True)


def resolve_output(state: AppliedState, output: OutputDeclaration) -> str:
    resource = state.resources.get(output.address)
    if resource is None:
        raise MissingOutput(output.name, output.address)

    if output.attribute == "id":
        value = resource.id
    else:
        value = resource.computed.get(output.attribute)
        if value is None:
            value = resource.attributes.get(output.attribute)

    if value is None or value == "":
        raise MissingOutput(output.name, output.address)
    return str(value)


def publish_outputs(declaration: ResourceDeclaration, state: AppliedState) -> OutputSet:
    return OutputSet({o.name: resolve_output(state, o) for o in declaration.outputs})


def write_github_output(outputs: Mapping[str, str], output_file: Path) -> None:
    """Append outputs to a GITHUB_OUTPUT file."""
    with output_file.open("a", encoding="utf-8") as f:
        for name, value in outputs.items():
            if "\n" in value:
                delimiter = f"ghadelimiter_{uuid.uuid4()}"
                f.write(f"{name}<<{delimiter}\n{value}\n{delimiter}\n")
            else:
                f.write(f"{name}={value}\n")
    logger.debug(f"Wrote {len(outputs)} output(s) to {output_file}")
