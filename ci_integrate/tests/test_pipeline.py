"""
test_pipeline — the per-IR-file state machine and the Integrator.

Tests verify invariant properties:
  - A skip-listed file never reaches opt; its -ci object equals a plain
    llc compile of the unchanged IR.
  - A file whose object exports the runtime marker is always SKIPPED,
    whatever the skip list says, and the skip is not announced.
  - A failing tool moves the task to ERROR and names unit and stage.
  - Stage transitions never move backwards.
"""
import io
import queue
from pathlib import Path

import pytest

from ci_integrate.config import BuildOptions
from ci_integrate.errors import (
    InvalidTransitionError,
    MissingOutputError,
    PipelineFailedError,
    ToolInvocationError,
)
from ci_integrate.pipeline.events import EventSink, Stage
from ci_integrate.pipeline.integrate import Integrator, PipelineTask, TaskRecord, TaskStage, work_queue
from ci_integrate.pipeline.pool import run_pool
from ci_integrate.pipeline.progress import ProgressReporter, progress_length
from ci_integrate.policy.decision import SkipReason


def _integrator(fake_runner, toolchain, profile, library, units, options=None, log_dir=None, system="Linux"):
    sink = EventSink(queue.Queue())
    integrator = Integrator(
        fake_runner, toolchain, profile, library,
        options or BuildOptions(), units, sink,
        log_dir=log_dir, system=system,
    )
    return integrator, sink


def _drain(sink):
    events = []
    while not sink.channel.empty():
        events.append(sink.channel.get_nowait())
    return events


class TestStateMachine:

    def test_happy_paths(self):
        task = PipelineTask(ir_path=Path("a.rcgu.ll"), unit="a")
        for stage in (TaskStage.REWRITING, TaskStage.COMPILING, TaskStage.DONE):
            task.advance(stage)
        assert task.stage == TaskStage.DONE

        task = PipelineTask(ir_path=Path("b.rcgu.ll"), unit="b")
        task.advance(TaskStage.SKIPPED)
        task.advance(TaskStage.COMPILING)
        assert task.stage == TaskStage.COMPILING

    def test_no_regression(self):
        task = PipelineTask(ir_path=Path("a.rcgu.ll"), unit="a")
        task.advance(TaskStage.REWRITING)
        task.advance(TaskStage.COMPILING)
        with pytest.raises(InvalidTransitionError):
            task.advance(TaskStage.REWRITING)

    def test_done_is_terminal(self):
        task = PipelineTask(ir_path=Path("a.rcgu.ll"), unit="a")
        task.advance(TaskStage.SKIPPED)
        task.advance(TaskStage.COMPILING)
        task.advance(TaskStage.DONE)
        with pytest.raises(InvalidTransitionError):
            task.fail(RuntimeError("late"))

    def test_cannot_skip_compile(self):
        task = PipelineTask(ir_path=Path("a.rcgu.ll"), unit="a")
        task.advance(TaskStage.REWRITING)
        with pytest.raises(InvalidTransitionError):
            task.advance(TaskStage.DONE)


class TestIntegrator:

    def test_instrument_binary_unit(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, write_ir):
        ir = write_ir(output_dir / "deps", "hello_world")
        integrator, sink = _integrator(fake_runner, toolchain, profile, library, units)

        task = integrator.process(ir)

        assert task.stage == TaskStage.DONE
        assert task.decision.instrument
        opt_cmd = fake_runner.calls_to("opt")[0]
        assert "-defclock=1" in opt_cmd
        assert opt_cmd[3] == str(library.library_path)
        assert opt_cmd[6:9] == library.library_args
        assert "-code-model=large" in fake_runner.calls_to("llc")[0]
        assert task.ci_object_path.is_file()
        assert "instrumented" in task.ci_ir_path.read_text()
        assert integrator.records == [TaskRecord(ir, "hello_world", TaskStage.DONE, instrumented=True)]

        kinds = [(e.stage, e.finished) for e in _drain(sink)]
        assert kinds == [
            (Stage.REWRITE, False), (Stage.REWRITE, True),
            (Stage.COMPILE, False), (Stage.COMPILE, True),
        ]

    def test_dependency_shares_clock(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, write_ir):
        ir = write_ir(output_dir / "deps", "serde")
        integrator, _ = _integrator(fake_runner, toolchain, profile, library, units)

        integrator.process(ir)

        assert "-defclock=0" in fake_runner.calls_to("opt")[0]

    def test_no_large_code_model_off_linux(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, write_ir):
        ir = write_ir(output_dir / "deps", "serde")
        integrator, _ = _integrator(fake_runner, toolchain, profile, library, units, system="Darwin")

        integrator.process(ir)

        assert "-code-model=large" not in fake_runner.calls_to("llc")[0]

    def test_skip_listed_never_runs_opt(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, write_ir):
        deps = output_dir / "deps"
        skipped = write_ir(deps, "serde", cgu=0)
        plain = write_ir(deps, "serde_plain", cgu=0)
        plain.write_text(skipped.read_text())

        integrator, sink = _integrator(
            fake_runner, toolchain, profile, library, units,
            options=BuildOptions(skip_units=["serde"]),
        )
        task = integrator.process(skipped)

        assert "opt" not in fake_runner.programs()
        assert task.decision.reason == SkipReason.SKIP_LIST
        assert task.ci_ir_path.read_text() == skipped.read_text()

        # a plain compile of the same IR gives the same object
        fake_llvm.llc(["llc", "-filetype=obj", str(plain)])
        assert task.ci_object_path.read_bytes() == plain.with_suffix(".o").read_bytes()

        skip_events = [e for e in _drain(sink) if e.stage == Stage.SKIP]
        assert len(skip_events) == 1 and skip_events[0].announce

    def test_runtime_component_always_skipped(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, write_ir):
        ir = write_ir(output_dir / "deps", "compiler_interrupts")
        fake_llvm.symbols[ir.with_suffix(".o").name] = ["intvActionHook", "instr_counter"]

        for skip in ([], ["compiler_interrupts"], ["other"]):
            integrator, sink = _integrator(
                fake_runner, toolchain, profile, library, units,
                options=BuildOptions(skip_units=skip),
            )
            task = integrator.process(ir)

            assert task.decision.reason == SkipReason.RUNTIME_COMPONENT
            skip_events = [e for e in _drain(sink) if e.stage == Stage.SKIP]
            assert not skip_events[0].announce

        assert "opt" not in fake_runner.programs()

    def test_opt_failure(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, write_ir):
        ir = write_ir(output_dir / "deps", "hello_world")
        fake_llvm.fail["opt"] = "\n".join(f"opt: error line {i}" for i in range(30))
        integrator, sink = _integrator(fake_runner, toolchain, profile, library, units)

        with pytest.raises(ToolInvocationError) as exc:
            integrator.process(ir)

        assert exc.value.unit == "hello_world"
        assert exc.value.stage == "opt"
        assert "(truncated)" in exc.value.diagnostic
        assert integrator.records[0].stage == TaskStage.ERROR
        assert "llc" not in fake_runner.programs()

        errors = [e for e in _drain(sink) if e.stage == Stage.ERROR]
        assert errors[0].unit == "hello_world"

    def test_llc_silent_failure(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, write_ir):
        ir = write_ir(output_dir / "deps", "hello_world")
        fake_runner.on("llc", lambda cmd: (0, "", "LLVM ERROR: out of memory"))
        integrator, _ = _integrator(fake_runner, toolchain, profile, library, units)

        with pytest.raises(MissingOutputError) as exc:
            integrator.process(ir)
        assert exc.value.stage == "llc"

    def test_debug_mode_log_path(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, tmp_path, write_ir):
        ir = write_ir(output_dir / "deps", "hello_world")
        fake_llvm.fail["opt"] = "opt: Unknown command line argument '-logicalclock'"
        log_dir = tmp_path / "logs"
        integrator, _ = _integrator(
            fake_runner, toolchain, profile, library, units,
            options=BuildOptions(debug=True), log_dir=log_dir,
        )

        with pytest.raises(ToolInvocationError) as exc:
            integrator.process(ir)

        log_path = exc.value.log_path
        assert log_path.parent == log_dir
        assert log_path.name.startswith("CI-")
        assert f"Path to the log: {log_path}" in str(exc.value)
        assert f"Path to the log: {log_path}" in str(PipelineFailedError("integration", [exc.value]))

    def test_debug_hint_without_log(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, write_ir):
        ir = write_ir(output_dir / "deps", "hello_world")
        fake_llvm.fail["opt"] = "opt: segfault"
        integrator, _ = _integrator(fake_runner, toolchain, profile, library, units)

        with pytest.raises(ToolInvocationError) as exc:
            integrator.process(ir)

        assert exc.value.log_path is None
        assert "--debug" in str(PipelineFailedError("integration", [exc.value]))

    def test_log_path_reaches_progress_output(self, fake_runner, fake_llvm, toolchain, profile, library, units, output_dir, tmp_path, write_ir):
        irs = [write_ir(output_dir / "deps", "hello_world"), write_ir(output_dir / "deps", "worker")]
        fake_llvm.fail["opt"] = "opt: segfault"
        stream = io.StringIO()
        sink = EventSink(queue.Queue())
        reporter = ProgressReporter(sink.channel, total=progress_length(len(irs), 0), stream=stream).start()
        integrator = Integrator(
            fake_runner, toolchain, profile, library, BuildOptions(debug=True), units, sink,
            log_dir=tmp_path / "logs", system="Linux",
        )

        errors = run_pool(irs, integrator.process, 2)
        sink.close()
        assert reporter.join()

        assert errors
        # only the first failure is printed before the reporter freezes
        out = stream.getvalue()
        assert any(f"Path to the log: {e.log_path}" in out for e in errors)


class TestWorkQueue:

    def test_stale_plus_missing_objects(self, output_dir, write_ir):
        deps = output_dir / "deps"
        a = write_ir(deps, "a")
        b = write_ir(deps, "b")
        c = write_ir(deps, "c")
        (deps / c.name.replace(".ll", "-ci.o")).write_text("OBJ")

        assert work_queue([a], [a, b, c]) == [a, b]
