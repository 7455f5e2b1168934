"""
Process — single-shot external tool invocations and their validation.

Responsibilities:
  - Run a command, capture (returncode, stdout, stderr) and its duration.
  - Validate a result twice: non-zero exit is an error; zero exit with the
    expected output file missing is also an error.
  - Shorten diagnostics for the terminal (first 2 + last 10 lines) and, in
    debug mode, dump the full text to a content-addressed log file.

Every LLVM tool (opt, llc, llvm-ar, llvm-nm, llvm-config) and the
re-executed linker go through a ``ToolRunner`` so that tests can swap in a
recording fake.
"""
import hashlib
import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from ci_integrate.errors import MissingOutputError, ToolInvocationError

logger = logging.getLogger(__name__)

HEAD_LINES = 2
TAIL_LINES = 10


@dataclass(frozen=True)
class ToolOutput:
    """Captured result of one external invocation."""

    cmd: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def program(self) -> str:
        return self.cmd[0] if self.cmd else ""

    def describe(self) -> str:
        """Full diagnostic text: command, status, stdout and stderr."""
        parts = [
            f"process didn't exit successfully: `{shlex.join(self.cmd)}` "
            f"(exit status: {self.returncode})"
        ]
        if self.stdout.strip():
            parts.append(f"--- stdout\n{self.stdout.rstrip()}")
        if self.stderr.strip():
            parts.append(f"--- stderr\n{self.stderr.rstrip()}")
        return "\n".join(parts)


class ToolRunner:
    """Runs external tools with captured output."""

    def __init__(self, timeout: Optional[int] = None):
        self.timeout = timeout

    def run(self, cmd: Sequence[str], cwd: Optional[Path] = None) -> ToolOutput:
        cmd = [str(c) for c in cmd]
        logger.debug(f"running: {shlex.join(cmd)}")

        t0 = time.monotonic()
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
            returncode, stdout, stderr = result.returncode, result.stdout, result.stderr
        except subprocess.TimeoutExpired:
            returncode, stdout, stderr = -1, "", f"TIMEOUT after {self.timeout}s"
        except OSError as e:
            # Missing executable, permission denied, ...
            returncode, stdout, stderr = -1, "", str(e)
        duration = int((time.monotonic() - t0) * 1000)

        return ToolOutput(
            cmd=cmd,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration,
        )


# ── Diagnostics ──────────────────────────────────────────────────────────────

def truncate_diagnostic(text: str) -> str:
    """Keep the first 2 and last 10 lines of *text*."""
    lines = text.splitlines()
    if len(lines) <= HEAD_LINES + TAIL_LINES:
        return "\n".join(lines)
    return "\n".join(lines[:HEAD_LINES] + ["(truncated)"] + lines[-TAIL_LINES:])


def dump_diagnostic(text: str, log_dir: Path, now: Optional[datetime] = None) -> Path:
    """
    Write the full diagnostic to ``CI-<yymmddTHHMMSS>-<md5>.log``.

    Returns the path of the written log.
    """
    now = now or datetime.now()
    digest = hashlib.md5(text.encode("utf-8")).hexdigest()
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / f"CI-{now.strftime('%y%m%dT%H%M%S')}-{digest}.log"
    path.write_text(text)
    return path


def check_output(
    output: ToolOutput,
    expected: Optional[Path],
    unit: str,
    stage: str,
    log_dir: Optional[Path] = None,
) -> ToolOutput:
    """
    Validate *output*; raise ``ToolInvocationError`` on failure.

    *log_dir* enables debug mode: the untruncated diagnostic is written
    there and its path attached to the error.
    """
    if not output.ok:
        full = output.describe()
        log_path = dump_diagnostic(full, log_dir) if log_dir is not None else None
        raise ToolInvocationError(
            unit=unit,
            stage=stage,
            program=output.program,
            returncode=output.returncode,
            diagnostic=truncate_diagnostic(full),
            log_path=log_path,
        )

    if expected is not None and not expected.is_file():
        log_path = dump_diagnostic(output.describe(), log_dir) if log_dir is not None else None
        raise MissingOutputError(
            unit=unit,
            stage=stage,
            program=output.program,
            expected=expected,
            stderr=truncate_diagnostic(output.stderr),
            log_path=log_path,
        )

    return output
