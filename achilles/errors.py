"""Error taxonomy for Achilles runs.

Every failure that reaches the orchestrator carries the identity of the
step that produced it (analysis ID, heel rule name, or detail shape) so a
failed run can always be attributed.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional


class AchillesError(Exception):
    """Base class for all Achilles errors."""


class ConfigurationError(AchillesError):
    """Invalid options, or a CDM schema the run cannot read; raised before any analysis runs."""


class TemplateError(AchillesError):
    """A SQL template could not be loaded or rendered."""

    def __init__(self, message: str, template: Optional[str] = None):
        super().__init__(message)
        self.template = template


class UnboundParameterError(TemplateError):
    """The rendered SQL still contains ``@name`` placeholders."""

    def __init__(self, names: Iterable[str], template: Optional[str] = None):
        self.names = sorted(set(names))
        where = f" in {template}" if template else ""
        super().__init__(
            f"Unbound parameter(s){where}: {', '.join('@' + n for n in self.names)}",
            template=template,
        )


class ExecutionError(AchillesError):
    """The database rejected or failed a statement."""

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        shape: Optional[str] = None,
        sql: Optional[str] = None,
    ):
        super().__init__(message)
        self.step = step
        self.shape = shape
        self.sql = sql


class DatabaseConnectionError(AchillesError):
    """A session could not be opened, or was lost mid-run."""


class MergeIntegrityError(AchillesError):
    """A declared member's scratch table is missing at merge time."""

    def __init__(self, shape: str, analysis_id, table: str):
        super().__init__(
            f"Cannot merge {shape}: scratch table {table} for "
            f"analysis {analysis_id} does not exist"
        )
        self.shape = shape
        self.analysis_id = analysis_id
        self.table = table


class InvalidTransitionError(AchillesError):
    """A run tried to move between states out of order."""


# ---------------------------------------------------------------------------
# Structured failure records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepFailure:
    """One failed step, as reported in a run's final status."""

    step_kind: str
    step_id: str
    message: str
    shape: Optional[str] = None
    error_type: str = "ExecutionError"

    def describe(self) -> str:
        shape = f" [{self.shape}]" if self.shape else ""
        return f"{self.step_kind} {self.step_id}{shape}: {self.error_type}: {self.message}"


class RunFailedError(AchillesError):
    """Raised by ``RunResult.raise_for_status`` when a run ended in FAILED."""

    def __init__(self, failures: List[StepFailure]):
        self.failures = list(failures)
        lines = [f.describe() for f in self.failures] or ["no step attribution"]
        super().__init__("Achilles run failed:\n  " + "\n  ".join(lines))


def failure_from_exception(
    step_kind: str, step_id, exc: BaseException, shape: Optional[str] = None
) -> StepFailure:
    """Build a ``StepFailure`` from any exception raised by a step."""
    if shape is None:
        shape = getattr(exc, "shape", None)
    return StepFailure(
        step_kind=step_kind,
        step_id=str(step_id),
        message=str(exc)[:500],
        shape=shape,
        error_type=type(exc).__name__,
    )
