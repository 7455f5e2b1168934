"""
Errors — exception taxonomy for the integration run.

Four families, matching where a run can stop:
  (a) toolchain / installation problems, raised before the build starts;
  (b) build-driver and build-log problems, raised before any integration;
  (c) per-file tool failures inside the integration pipeline;
  (d) link-time failures (archive rewrite, final link).

Pipeline workers raise (c)/(d); the driver collects them into a
``PipelineFailedError`` naming every failing unit and stage.
"""
from pathlib import Path
from typing import List, Optional


class IntegrationError(Exception):
    """Base class for every error raised by ci_integrate."""


# ── (a) Toolchain / installation ─────────────────────────────────────────────

class ToolchainError(IntegrationError):
    """The host compiler or the LLVM toolchain could not be queried."""


class ToolchainNotFoundError(ToolchainError):
    def __init__(self) -> None:
        super().__init__(
            "Unable to locate the LLVM compiler toolchain\n"
            "Check your $PATH variable or reinstall the toolchain"
        )


class ToolchainVersionMismatchError(ToolchainError):
    def __init__(self, host_version: str, llvm_version: str) -> None:
        self.host_version = host_version
        self.llvm_version = llvm_version
        super().__init__(
            f"LLVM version from Rust toolchain ({host_version}) does not match "
            f"with the LLVM version from LLVM toolchain ({llvm_version})"
        )


class UnsupportedToolchainError(ToolchainError):
    def __init__(self, version: str, minimum: str) -> None:
        self.version = version
        self.minimum = minimum
        super().__init__(
            f"LLVM version {version} is not supported. "
            f"Minimum supported LLVM version is {minimum}"
        )


class LibraryNotInstalledError(IntegrationError):
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        where = f" (expected at {path})" if path else ""
        super().__init__(
            f"Compiler Interrupts library is not installed{where}\n"
            "Set `library_path` in the configuration file or CI_LIBRARY_PATH"
        )


class BinaryNotFoundError(IntegrationError):
    def __init__(self) -> None:
        super().__init__("Package does not have any available binaries")


class BinaryNotAvailableError(IntegrationError):
    def __init__(self, name: str, available: List[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(
            f"Failed to execute the binary '{name}'\n"
            f"Available binaries: {', '.join(available)}"
        )


class BinaryNotDeterminedError(IntegrationError):
    def __init__(self, available: List[str]) -> None:
        self.available = available
        super().__init__(
            "Could not determine which binary to run\n"
            "Run `ci-integrate run --bin <BINARY_NAME>` to specify a binary\n"
            f"Available binaries: {', '.join(available)}"
        )


# ── (b) Build driver / build log ─────────────────────────────────────────────

class BuildFailedError(IntegrationError):
    def __init__(self, returncode: int) -> None:
        self.returncode = returncode
        super().__init__(f"failed to execute `cargo build` (exit code {returncode})")


class BuildLogParseError(IntegrationError):
    """The build log could not be turned into linker invocations / output dir."""


# ── (c) Per-file tool invocations ────────────────────────────────────────────

class ToolInvocationError(IntegrationError):
    """An external tool failed while processing one compilation unit."""

    def __init__(
        self,
        unit: str,
        stage: str,
        program: str,
        returncode: int,
        diagnostic: str,
        log_path: Optional[Path] = None,
    ) -> None:
        self.unit = unit
        self.stage = stage
        self.program = program
        self.returncode = returncode
        self.diagnostic = diagnostic
        self.log_path = log_path
        super().__init__(
            f"{stage} failed for `{unit}` ({program}, exit code {returncode})\n"
            f"{diagnostic}\n"
            f"{self.log_hint}"
        )

    @property
    def log_hint(self) -> str:
        if self.log_path is not None:
            return f"Path to the log: {self.log_path}"
        return "Run with `--debug` to save the full log"


class MissingOutputError(ToolInvocationError):
    """The tool exited successfully but its expected output does not exist."""

    def __init__(
        self,
        unit: str,
        stage: str,
        program: str,
        expected: Path,
        stderr: str,
        log_path: Optional[Path] = None,
    ) -> None:
        self.expected = expected
        diagnostic = (
            "process returned success but output file does not exist\n"
            f"expected file: {expected}\n"
            f"--- stderr\n{stderr}"
        )
        super().__init__(unit, stage, program, 0, diagnostic, log_path)


# ── (d) Link time ────────────────────────────────────────────────────────────

class ArchiveRewriteError(IntegrationError):
    def __init__(self, archive: Path, member: str, reason: str) -> None:
        self.archive = archive
        self.member = member
        super().__init__(
            f"failed to replace member `{member}` of {archive}: {reason}"
        )


# ── Aggregation / misuse ─────────────────────────────────────────────────────

class PipelineFailedError(IntegrationError):
    """One or more workers failed; carries every collected failure."""

    def __init__(self, phase: str, failures: List[BaseException]) -> None:
        self.phase = phase
        self.failures = failures
        lines = [f"Compiler Interrupts {phase} failed"]
        for err in failures:
            if isinstance(err, ToolInvocationError):
                lines.append(f"  - {err.unit} [{err.stage}]: {err.diagnostic}")
                lines.append(f"    {err.log_hint}")
            else:
                lines.append(f"  - {err}")
        super().__init__("\n".join(lines))


class InvalidTransitionError(ValueError):
    """A pipeline task was asked to move to a stage it cannot reach."""
