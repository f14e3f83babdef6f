# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - API error bodies
      - debugging without full tracebacks

    Only raised for problems with the workflow or the engine itself. Step and
    job failures are results, not exceptions (see model.FailureKind).
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class WorkflowError(CIError):
    """Invalid workflow definition (bad graph, bad file, unknown action)."""

    def __init__(self, message: str, **details) -> None:
        super().__init__(kind="workflow_error", message=message, details=details)
