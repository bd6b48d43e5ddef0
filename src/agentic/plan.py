from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

AD_HOC_ORIGIN = "ad hoc"
PlanKind = Literal["query", "workflow"]


@dataclass(frozen=True, slots=True)
class ResolvedCommand:
    command: str
    origin: str = AD_HOC_ORIGIN
    sequence: int = 0
    description: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "origin": self.origin,
            "sequence": self.sequence,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class Plan:
    """Ordered, non-empty sequence of commands for one pipeline run."""

    steps: tuple[ResolvedCommand, ...]
    source: str
    kind: PlanKind = "query"
    intents: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError("A plan must contain at least one step.")
        sequences = [step.sequence for step in self.steps]
        if sequences != sorted(sequences) or len(set(sequences)) != len(sequences):
            raise ValueError("Plan steps must have strictly increasing sequence numbers.")

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def commands(self) -> list[str]:
        return [step.command for step in self.steps]

    def to_dict(self) -> dict[str, object]:
        return {
            "source": self.source,
            "kind": self.kind,
            "intents": list(self.intents),
            "steps": [step.to_dict() for step in self.steps],
        }
