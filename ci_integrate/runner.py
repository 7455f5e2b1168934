"""
Runner — top-level orchestration of one ``ci-integrate build``.

This module ties the build driver, the staleness tracker, the build-log
parser and both pipeline phases together into ``run_build``, which the
CLI calls with values it constructed once at startup.

    library check → toolchain → metadata → snapshot → cargo build
      → parse log → diff ─(empty)→ FRESH
                         └→ phase 1: integrate IR files
                            phase 2: re-link stale binaries → SUCCESS

Any pipeline failure discards the binaries of the recovered linker
invocations so that the next ``cargo build`` relinks them.
"""
import logging
import os
import sys
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, TextIO

from ci_integrate.config import BuildOptions, LibraryConfig, Settings
from ci_integrate.core.build_log import LinkerInvocation, ParsedBuildLog, parse_build_log
from ci_integrate.core.cargo import Cargo, CompilationUnit
from ci_integrate.core.paths import is_ir_file, strip_suffix, unit_ident
from ci_integrate.core.process import ToolRunner
from ci_integrate.core.staleness import FileSnapshot, diff, snapshot, tracked_dirs
from ci_integrate.core.toolchain import Toolchain, resolve_toolchain
from ci_integrate.errors import (
    BinaryNotAvailableError,
    BinaryNotDeterminedError,
    BinaryNotFoundError,
    LibraryNotInstalledError,
    PipelineFailedError,
    ToolInvocationError,
)
from ci_integrate.io.schema import (
    BinaryEntry,
    ElfModel,
    FailureEntry,
    FileEntry,
    IntegrationReport,
    ToolchainModel,
)
from ci_integrate.io.writer import write_report
from ci_integrate.pipeline.events import EventSink
from ci_integrate.pipeline.integrate import Integrator, TaskRecord, work_queue
from ci_integrate.pipeline.link import (
    LinkResult,
    LinkRewriter,
    installed_binary_path,
    select_stale_linkers,
)
from ci_integrate.pipeline.pool import run_pool
from ci_integrate.pipeline.progress import ProgressReporter, progress_length
from ci_integrate.policy.profile import Profile

logger = logging.getLogger(__name__)


class RunStatus:
    FRESH = "FRESH"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def predict_output_dir(target_directory: Path, options: BuildOptions) -> Path:
    """``<target>/[<triple>/]<mode>``, before the build log confirms it."""
    d = target_directory
    if options.target:
        d = d / options.target
    return d / options.build_mode


def discard_partial_binaries(
    linkers: Iterable[LinkerInvocation],
    units: Dict[str, CompilationUnit],
    output_dir: Path,
) -> List[Path]:
    """Remove linker outputs and their ``-ci`` copies; return what was removed."""
    removed: List[Path] = []
    for linker in linkers:
        candidates = [linker.output_path]
        unit = units.get(unit_ident(linker.output_path))
        if unit is not None:
            candidates.append(installed_binary_path(unit, output_dir))
        for path in candidates:
            if path.is_file():
                path.unlink()
                removed.append(path)
                logger.debug(f"removed partial binary: {path}")
    return removed


# ── Report assembly ──────────────────────────────────────────────────────────

def _toolchain_model(toolchain: Toolchain) -> ToolchainModel:
    return ToolchainModel(
        llvm_version=str(toolchain.version),
        suffixed=toolchain.suffix,
        opt=toolchain.opt,
        llc=toolchain.llc,
    )


def _file_entry(record: TaskRecord) -> FileEntry:
    return FileEntry(
        ir_path=str(record.ir_path),
        unit=record.unit,
        stage=record.stage.value,
        instrumented=record.instrumented,
        skip_reason=record.skip_reason.value if record.skip_reason else None,
        error=record.error,
    )


def _binary_entry(result: LinkResult) -> BinaryEntry:
    elf = None
    if result.elf is not None:
        elf = ElfModel(
            elf_class=result.elf.elf_class,
            elf_type=result.elf.elf_type,
            machine=result.elf.machine,
            file_sha256=result.elf.file_sha256,
            file_size=result.elf.file_size,
            runtime_linked=result.elf.runtime_linked,
        )
    return BinaryEntry(
        unit=result.unit,
        output_path=str(result.output_path),
        ci_binary=str(result.ci_binary) if result.ci_binary else None,
        substituted_objects=result.substituted,
        allocator_shims=result.allocator_shims,
        patched_members=result.patched_members,
        elf=elf,
    )


def _failure_entry(error: BaseException) -> FailureEntry:
    if isinstance(error, ToolInvocationError):
        return FailureEntry(
            unit=error.unit,
            stage=error.stage,
            message=error.diagnostic,
            log_path=str(error.log_path) if error.log_path else None,
        )
    return FailureEntry(message=str(error))


# ── Build ────────────────────────────────────────────────────────────────────

def run_build(
    settings: Settings,
    library: LibraryConfig,
    options: BuildOptions,
    profile: Optional[Profile] = None,
    runner: Optional[ToolRunner] = None,
    cargo: Optional[Cargo] = None,
    cwd: Optional[Path] = None,
    progress_stream: TextIO = sys.stderr,
    system: str = "",
) -> IntegrationReport:
    """
    Build the package and integrate Compiler Interrupts into its binaries.

    Returns the written report.  Raises ``PipelineFailedError`` when any
    integration or link task fails, after the report has been written and
    the partial binaries discarded.
    """
    if profile is None:
        profile = Profile.cargo()
    if not library.is_installed():
        raise LibraryNotInstalledError(library.library_path if library.library_path != Path() else None)

    runner = runner or ToolRunner(timeout=settings.TOOL_TIMEOUT)
    cargo = cargo or Cargo(profile, program=settings.CARGO, cwd=cwd)

    # ── Step 1: toolchain + package metadata ─────────────────────────
    toolchain = resolve_toolchain(runner, profile, rustc=settings.RUSTC)
    metadata = cargo.metadata()
    units = metadata.by_ident()
    if not units:
        raise BinaryNotFoundError()
    logger.debug(f"binary units: {sorted(units)}")

    # ── Step 2: snapshot, build, diff ────────────────────────────────
    predicted = predict_output_dir(metadata.target_directory, options)
    pre = snapshot(*tracked_dirs(predicted))

    lines = cargo.build(options)
    t0 = time.monotonic()

    parsed: ParsedBuildLog = parse_build_log(
        lines, profile, target_root=metadata.target_directory
    )
    output_dir = parsed.output_dir
    if output_dir != predicted:
        logger.warning(
            f"build output directory {output_dir} differs from {predicted}, "
            "treating every output as stale"
        )
        pre = FileSnapshot({})

    post = snapshot(*tracked_dirs(output_dir))
    stale = diff(pre, post)

    report = IntegrationReport(
        profile_id=profile.profile_id,
        status=RunStatus.FRESH,
        build_mode=options.build_mode,
        target=options.target,
        output_dir=str(output_dir),
        toolchain=_toolchain_model(toolchain),
        units=sorted(u.name for u in units.values()),
        stale_file_count=len(stale),
    )

    if not stale:
        logger.info("nothing to integrate, all fresh")
        write_report(report, output_dir)
        return report

    # ── Step 3: work lists ───────────────────────────────────────────
    stale_idents = stale.unit_idents(units)
    report.stale_units = sorted(units[i].name for i in stale_idents)
    ir_queue = work_queue(stale.ir_files(), sorted(p for p in post if is_ir_file(p)))
    linkers = select_stale_linkers(parsed.linkers, units, stale_idents)
    logger.info(f"{len(ir_queue)} IR file(s) to integrate, {len(linkers)} binary(ies) to link")

    # ── Step 4: both phases, one reporter ────────────────────────────
    sink = EventSink()
    reporter = ProgressReporter(
        sink.channel,
        total=progress_length(len(ir_queue), len(linkers)),
        enabled=not options.verbose,
        stream=progress_stream,
    ).start()

    log_dir = settings.log_dir if options.debug else None
    integrator = Integrator(
        runner, toolchain, profile, library, options, units, sink,
        log_dir=log_dir, system=system,
    )
    rewriter = LinkRewriter(runner, toolchain, profile, units, output_dir, sink, log_dir=log_dir)

    phase = "integration"
    try:
        errors = run_pool(ir_queue, integrator.process, settings.workers)
        if not errors:
            phase = "linking"
            errors = run_pool(linkers, rewriter.link, settings.workers)
    finally:
        sink.close()
        reporter.join()

    report.files = [_file_entry(r) for r in sorted(integrator.records, key=lambda r: r.ir_path)]
    report.binaries = [_binary_entry(r) for r in sorted(rewriter.results, key=lambda r: r.unit)]
    report.duration_ms = int((time.monotonic() - t0) * 1000)

    if errors:
        discard_partial_binaries(parsed.linkers, units, output_dir)
        report.status = RunStatus.FAILED
        report.failures = [_failure_entry(e) for e in errors]
        write_report(report, output_dir)
        raise PipelineFailedError(phase, errors)

    report.status = RunStatus.SUCCESS
    write_report(report, output_dir)
    logger.info(f"integrated {len(linkers)} target(s)")
    return report


# ── Run ──────────────────────────────────────────────────────────────────────

def find_ci_binaries(output_dir: Path) -> List[Path]:
    """Executable ``*-ci`` files directly inside *output_dir*."""
    if not output_dir.is_dir():
        return []
    return sorted(
        p for p in output_dir.iterdir()
        if p.is_file() and p.name.endswith("-ci") and os.access(p, os.X_OK)
    )


def select_binary(binaries: List[Path], name: Optional[str] = None) -> Path:
    if not binaries:
        raise BinaryNotFoundError()
    names = [strip_suffix(p.name) for p in binaries]
    if name is not None:
        for path, candidate in zip(binaries, names):
            if candidate == name:
                return path
        raise BinaryNotAvailableError(name, names)
    if len(binaries) == 1:
        return binaries[0]
    raise BinaryNotDeterminedError(names)


def run_binary(
    settings: Settings,
    options: BuildOptions,
    name: Optional[str] = None,
    args: Optional[List[str]] = None,
    cargo: Optional[Cargo] = None,
    cwd: Optional[Path] = None,
) -> None:
    """Replace the current process with an instrumented binary."""
    cargo = cargo or Cargo(Profile.cargo(), program=settings.CARGO, cwd=cwd)
    output_dir = predict_output_dir(cargo.metadata().target_directory, options)
    binary = select_binary(find_ci_binaries(output_dir), name)
    logger.info(f"running {binary}")
    os.execv(str(binary), [str(binary), *(args or [])])
