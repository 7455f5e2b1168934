"""
Integration pipeline — per-IR-file rewrite and compile.

State machine of one file:

    PENDING ──► REWRITING ──► COMPILING ──► DONE
       │   └──► SKIPPED ───┘      │
       └──────────┴───────────────┴──────► ERROR

  - The decision is taken first, from an ``llvm-nm`` probe of the object
    rustc already produced for the same codegen unit.
  - REWRITING runs the instrumentation pass through ``opt``; SKIPPED copies
    the IR forward unchanged under its ``-ci`` name.
  - COMPILING runs ``llc`` on the ``-ci`` IR.

Each ``Integrator.process`` call owns exactly one ``PipelineTask``; tasks
are never shared between workers.  Once a task reaches DONE or ERROR only a
``TaskRecord`` of its outcome is kept for the report.
"""
import logging
import shutil
import threading
from dataclasses import dataclass, field
from enum import Enum, unique
from pathlib import Path
from typing import Dict, List, Optional

from ci_integrate.config import BuildOptions, LibraryConfig
from ci_integrate.core.cargo import CompilationUnit
from ci_integrate.core.paths import ci_ir_for, ci_object_for, object_for, unit_ident
from ci_integrate.core.process import ToolRunner, check_output
from ci_integrate.core.symbols import SymbolProbe
from ci_integrate.core.toolchain import Toolchain
from ci_integrate.errors import InvalidTransitionError
from ci_integrate.pipeline.events import EventSink, Stage
from ci_integrate.policy.decision import IntegrationDecision, SkipReason, decide
from ci_integrate.policy.profile import Profile

logger = logging.getLogger(__name__)


@unique
class TaskStage(str, Enum):
    PENDING = "PENDING"
    REWRITING = "REWRITING"
    SKIPPED = "SKIPPED"
    COMPILING = "COMPILING"
    DONE = "DONE"
    ERROR = "ERROR"


_TRANSITIONS = {
    TaskStage.PENDING: {TaskStage.REWRITING, TaskStage.SKIPPED, TaskStage.ERROR},
    TaskStage.REWRITING: {TaskStage.COMPILING, TaskStage.ERROR},
    TaskStage.SKIPPED: {TaskStage.COMPILING, TaskStage.ERROR},
    TaskStage.COMPILING: {TaskStage.DONE, TaskStage.ERROR},
    TaskStage.DONE: set(),
    TaskStage.ERROR: set(),
}


@dataclass
class PipelineTask:
    ir_path: Path
    unit: str
    stage: TaskStage = TaskStage.PENDING
    decision: Optional[IntegrationDecision] = None
    error: Optional[str] = None

    def advance(self, stage: TaskStage) -> None:
        if stage not in _TRANSITIONS[self.stage]:
            raise InvalidTransitionError(
                f"{self.ir_path.name}: cannot move from {self.stage.value} to {stage.value}"
            )
        self.stage = stage

    def fail(self, error: BaseException) -> None:
        self.advance(TaskStage.ERROR)
        self.error = str(error)

    @property
    def ci_ir_path(self) -> Path:
        return ci_ir_for(self.ir_path)

    @property
    def ci_object_path(self) -> Path:
        return ci_object_for(self.ir_path)


@dataclass(frozen=True)
class TaskRecord:
    """Outcome of one finished task."""

    ir_path: Path
    unit: str
    stage: TaskStage
    instrumented: bool = False
    skip_reason: Optional[SkipReason] = None
    error: Optional[str] = None

    @classmethod
    def of(cls, task: PipelineTask) -> "TaskRecord":
        decision = task.decision
        return cls(
            ir_path=task.ir_path,
            unit=task.unit,
            stage=task.stage,
            instrumented=bool(decision and decision.instrument),
            skip_reason=decision.reason if decision else None,
            error=task.error,
        )


class Integrator:
    """Runs the rewrite/compile stages for the IR files a worker claims."""

    def __init__(
        self,
        runner: ToolRunner,
        toolchain: Toolchain,
        profile: Profile,
        library: LibraryConfig,
        options: BuildOptions,
        units: Dict[str, CompilationUnit],
        events: EventSink,
        log_dir: Optional[Path] = None,
        system: str = "",
    ):
        self.runner = runner
        self.toolchain = toolchain
        self.profile = profile
        self.library = library
        self.options = options
        self.units = units
        self.events = events
        # Full diagnostics are dumped only in debug mode
        self.log_dir = log_dir if options.debug else None
        self.large_code_model = profile.needs_large_code_model(system)
        self.probe = SymbolProbe(runner, toolchain.nm, self.log_dir)
        self.records: List[TaskRecord] = []
        self._lock = threading.Lock()

    # ── Commands ─────────────────────────────────────────────────────

    def opt_command(self, task: PipelineTask) -> List[str]:
        defclock = "1" if task.unit in self.units else "0"
        return [
            self.toolchain.opt,
            "-S",
            "-load",
            str(self.library.plugin_path(self.options.debug)),
            "-logicalclock",
            f"-defclock={defclock}",
            *self.library.library_args,
            str(task.ir_path),
            "-o",
            str(task.ci_ir_path),
        ]

    def llc_command(self, task: PipelineTask) -> List[str]:
        cmd = [self.toolchain.llc, "-filetype=obj", str(task.ci_ir_path)]
        if self.large_code_model:
            cmd.append("-code-model=large")
        return cmd

    # ── Stages ───────────────────────────────────────────────────────

    def _decide(self, task: PipelineTask) -> IntegrationDecision:
        is_runtime = self.probe.defines(
            object_for(task.ir_path), self.profile.runtime_marker_symbol, task.unit
        )
        return decide(task.unit, self.options.skip_units, is_runtime)

    def _rewrite(self, task: PipelineTask) -> None:
        logger.info(f"integrating: {task.ir_path}")
        self.events.start(task.unit, Stage.REWRITE)
        check_output(
            self.runner.run(self.opt_command(task)),
            expected=task.ci_ir_path,
            unit=task.unit,
            stage="opt",
            log_dir=self.log_dir,
        )
        self.events.finish(task.unit, Stage.REWRITE)

    def _skip(self, task: PipelineTask) -> None:
        logger.info(f"integration skipped ({task.decision.reason.value}): {task.ir_path}")
        self.events.skipped(task.unit, announce=task.decision.announce)
        shutil.copyfile(task.ir_path, task.ci_ir_path)

    def _compile(self, task: PipelineTask) -> None:
        logger.debug(f"run llc on: {task.ci_ir_path}")
        self.events.start(task.unit, Stage.COMPILE)
        check_output(
            self.runner.run(self.llc_command(task)),
            expected=task.ci_object_path,
            unit=task.unit,
            stage="llc",
            log_dir=self.log_dir,
        )
        self.events.finish(task.unit, Stage.COMPILE)

    # ── Worker entry ─────────────────────────────────────────────────

    def process(self, ir_path: Path) -> PipelineTask:
        """Carry one IR file through the state machine; re-raise on failure."""
        task = PipelineTask(ir_path=ir_path, unit=unit_ident(ir_path))
        try:
            task.decision = self._decide(task)
            if task.decision.instrument:
                task.advance(TaskStage.REWRITING)
                self._rewrite(task)
            else:
                task.advance(TaskStage.SKIPPED)
                self._skip(task)
            task.advance(TaskStage.COMPILING)
            self._compile(task)
            task.advance(TaskStage.DONE)
        except Exception as e:
            task.fail(e)
            self._record(task)
            self.events.error(task.unit, str(e))
            raise

        self._record(task)
        return task

    def _record(self, task: PipelineTask) -> None:
        with self._lock:
            self.records.append(TaskRecord.of(task))


def work_queue(stale_ir: List[Path], ir_files: List[Path]) -> List[Path]:
    """Stale IR files, plus any IR file whose ``-ci`` object is missing."""
    queued = set(stale_ir)
    queued.update(p for p in ir_files if not ci_object_for(p).exists())
    return sorted(queued)
