"""Ordered, fail-fast execution of provisioning steps."""
import enum
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from kubestrap.errors import ProvisionError
from kubestrap.runner import CommandResult
from kubestrap.utils import log_action, log_error, log_info


@dataclass(frozen=True)
class Step:
    """One named unit of work: skipped when ``guard`` holds, else ``action`` runs.

    A failing gating step aborts the pipeline; a failing non-gating step is
    reported as a warning.
    """

    name: str
    action: Callable[..., None]
    guard: Optional[Callable[..., bool]] = None
    gating: bool = True

    def is_satisfied(self, ctx, runner) -> bool:
        return self.guard is not None and bool(self.guard(ctx, runner))


class StepStatus(enum.Enum):
    SKIPPED = "skipped"
    PLANNED = "planned"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    WARNED = "warned"


class PipelineState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ExecutionResult:
    """What happened to one step."""

    step_name: str
    status: StepStatus
    exit_code: int = 0
    commands: List[CommandResult] = field(default_factory=list)
    error: Optional[ProvisionError] = None

    @property
    def stdout(self) -> str:
        return "".join(c.stdout for c in self.commands)

    @property
    def stderr(self) -> str:
        return "".join(c.stderr for c in self.commands)


@dataclass
class PipelineReport:
    pipeline: str
    state: PipelineState = PipelineState.PENDING
    current: Optional[int] = None
    results: List[ExecutionResult] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[ProvisionError] = None
    warnings: List[ExecutionResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.SUCCEEDED

    @property
    def exit_code(self) -> int:
        if self.state is PipelineState.FAILED and self.error is not None:
            return self.error.exit_code or 1
        if self.state is not PipelineState.SUCCEEDED:
            return 1
        return 0

    def executed(self) -> List[str]:
        """Names of the steps whose action actually ran."""
        return [r.step_name for r in self.results
                if r.status in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.WARNED)]


class Pipeline:
    """An ordered sequence of steps for one flow and OS family."""

    def __init__(self, name: str, steps: Sequence[Step]):
        self.name = name
        self.steps: Tuple[Step, ...] = tuple(steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def run(self, ctx, runner, dry_run: bool = False) -> PipelineReport:
        """Run every step in order, stopping at the first gating failure.

        There are no retries and no rollback: on failure the host is left as
        the failing step left it.
        """
        report = PipelineReport(pipeline=self.name)
        for index, step in enumerate(self.steps):
            report.state = PipelineState.RUNNING
            report.current = index
            result = self._run_step(step, ctx, runner, dry_run)
            report.results.append(result)
            if result.status is StepStatus.FAILED:
                report.state = PipelineState.FAILED
                report.failed_step = step.name
                report.error = result.error
                return report
            if result.status is StepStatus.WARNED:
                report.warnings.append(result)
        report.state = PipelineState.SUCCEEDED
        return report

    def _run_step(self, step: Step, ctx, runner, dry_run: bool) -> ExecutionResult:
        log_info(f"{step.name}...")
        if step.is_satisfied(ctx, runner):
            log_info(f"{step.name}: already satisfied.")
            return ExecutionResult(step.name, StepStatus.SKIPPED)

        if dry_run:
            log_action(f"[DRY RUN] Would run: {step.name}")
            return ExecutionResult(step.name, StepStatus.PLANNED)

        start = len(runner.history)
        try:
            step.action(ctx, runner)
        except ProvisionError as e:
            commands = list(runner.history[start:])
            if not step.gating:
                log_action(f"WARNING: {step.name} did not complete: {e}")
                return ExecutionResult(step.name, StepStatus.WARNED, e.exit_code, commands, e)
            log_error(f"{step.name} failed: {e}")
            return ExecutionResult(step.name, StepStatus.FAILED, e.exit_code, commands, e)
        return ExecutionResult(step.name, StepStatus.SUCCEEDED, 0, list(runner.history[start:]))
