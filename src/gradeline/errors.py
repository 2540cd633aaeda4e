# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class GradelineError(Exception):
    """
    Structured error with enough context for:
      - a clean worker console line
      - an HTTP error body on the server
      - debugging without full tracebacks
    """
    message: str
    details: dict = field(default_factory=dict)

    kind = "error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class AuthError(GradelineError):
    """A worker request failed authentication. Always surfaced as a bare 401."""
    kind = "unauthorized"


@dataclass
class ValidationError(GradelineError):
    """Client supplied something we refuse to accept (bad manifest, bad JSON)."""
    kind = "invalid"


@dataclass
class NotebookFormatError(ValidationError):
    """A notebook document is not the nbformat structure we expect."""
    kind = "invalid-notebook"


@dataclass
class InfrastructureError(GradelineError):
    """
    Something went wrong around the grading, not inside it.

    The worker treats these as transient: the job is not reported and the
    submission stays assigned.
    """
    kind = "infrastructure"
