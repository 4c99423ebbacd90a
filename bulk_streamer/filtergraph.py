"""Small intermediate representation for ffmpeg filter graphs.

Stages are named filter chains with explicit input and output pads. External
inputs are referenced by name (``InputPad("background")``) and only turned
into positional ``[N:v]`` references when the graph is serialized against
the final input ordering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Union


@dataclass(frozen=True)
class InputPad:
    """A stream of an external ``-i`` input, resolved to its index at render time."""

    name: str
    stream: str = "v"


@dataclass(frozen=True)
class Label:
    """An intermediate pad produced by one stage and consumed by another."""

    name: str


Pad = Union[InputPad, Label]


@dataclass
class FilterStage:
    filters: List[str]
    inputs: List[Pad] = field(default_factory=list)
    outputs: List[Label] = field(default_factory=list)

    def render(self, indexes: Dict[str, int]) -> str:
        parts = [_render_pad(pad, indexes) for pad in self.inputs]
        parts.append(",".join(self.filters) or "null")
        parts.extend(_render_pad(pad, indexes) for pad in self.outputs)
        return "".join(parts)


def _render_pad(pad: Pad, indexes: Dict[str, int]) -> str:
    if isinstance(pad, InputPad):
        try:
            return f"[{indexes[pad.name]}:{pad.stream}]"
        except KeyError:
            raise ValueError(f"Filter graph references unregistered input {pad.name!r}") from None
    return f"[{pad.name}]"


class FilterGraph:
    """Ordered collection of stages; serialized once with ``render``."""

    def __init__(self) -> None:
        self.stages: List[FilterStage] = []
        self._counters: Dict[str, int] = {}

    def label(self, prefix: str) -> Label:
        count = self._counters.get(prefix, 0)
        self._counters[prefix] = count + 1
        return Label(f"{prefix}{count}")

    def add(self, filters: Sequence[str], inputs: Sequence[Pad] = (), outputs: Sequence[Label] = ()) -> FilterStage:
        stage = FilterStage(list(filters), list(inputs), list(outputs))
        self.stages.append(stage)
        return stage

    def chain(self, source: Pad, filters: Sequence[str], prefix: str = "v") -> Pad:
        """Append a linear chain fed by ``source``; returns the new output pad."""
        if not filters:
            return source
        out = self.label(prefix)
        self.add(filters, [source], [out])
        return out

    def render(self, indexes: Dict[str, int]) -> str:
        return ";".join(stage.render(indexes) for stage in self.stages)

