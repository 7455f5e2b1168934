"""
Shared pytest fixtures for ci_integrate tests.

Most tests never touch a real toolchain: ``FakeToolRunner`` records every
command and answers it from per-program handlers, and ``FakeLlvm`` wires
handlers that behave like opt / llc / llvm-nm / llvm-ar / cc on real files
in a temporary build tree:

  - opt   copies its input to ``-o`` with an ``; instrumented`` trailer;
  - llc   writes ``<stem>.o`` next to its input;
  - nm    answers from ``FakeLlvm.symbols`` (file name → defined symbols);
  - ar    treats an archive as a text file with one member name per line;
  - cc    writes the ``-o`` output with its argument list as content.

The end-to-end fixtures need cargo, rustc, a matching LLVM toolchain and an
installed Compiler Interrupts library; they skip otherwise.
"""
import os
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from ci_integrate.config import BuildOptions, LibraryConfig, Settings
from ci_integrate.core.cargo import CompilationUnit, UnitKind
from ci_integrate.core.process import ToolOutput
from ci_integrate.core.toolchain import Toolchain, parse_version
from ci_integrate.policy.profile import Profile

Handler = Callable[[List[str]], Tuple[int, str, str]]


class FakeToolRunner:
    """Records commands; answers them from handlers keyed by program name."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.handlers: Dict[str, Handler] = {}

    def on(self, program: str, handler: Handler) -> None:
        self.handlers[program] = handler

    def run(self, cmd: Sequence[str], cwd: Optional[Path] = None) -> ToolOutput:
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        handler = self.handlers.get(cmd[0])
        if handler is None:
            return ToolOutput(cmd=cmd, returncode=-1, stdout="", stderr=f"{cmd[0]}: not found")
        returncode, stdout, stderr = handler(cmd)
        return ToolOutput(cmd=cmd, returncode=returncode, stdout=stdout, stderr=stderr)

    def programs(self) -> List[str]:
        return [c[0] for c in self.calls]

    def calls_to(self, program: str) -> List[List[str]]:
        return [c for c in self.calls if c[0] == program]


def _arg_after(cmd: List[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


class FakeLlvm:
    """File-backed stand-ins for the LLVM tools and the system linker."""

    def __init__(self, runner: FakeToolRunner):
        self.runner = runner
        self.symbols: Dict[str, List[str]] = {}
        self.fail: Dict[str, str] = {}
        runner.on("opt", self.opt)
        runner.on("llc", self.llc)
        runner.on("llvm-nm", self.nm)
        runner.on("llvm-ar", self.ar)
        runner.on("cc", self.cc)

    def _failure(self, program: str) -> Optional[Tuple[int, str, str]]:
        if program in self.fail:
            return 1, "", self.fail[program]
        return None

    def opt(self, cmd: List[str]) -> Tuple[int, str, str]:
        failed = self._failure("opt")
        if failed:
            return failed
        src = Path(cmd[-3])
        Path(_arg_after(cmd, "-o")).write_text(src.read_text() + "; instrumented\n")
        return 0, "", ""

    def llc(self, cmd: List[str]) -> Tuple[int, str, str]:
        failed = self._failure("llc")
        if failed:
            return failed
        src = Path(cmd[2])
        src.with_suffix(".o").write_text(f"OBJ({src.read_text()})")
        return 0, "", ""

    def nm(self, cmd: List[str]) -> Tuple[int, str, str]:
        names = self.symbols.get(Path(cmd[-1]).name, ["main"])
        return 0, "".join(f"{n}\n" for n in names), ""

    def ar(self, cmd: List[str]) -> Tuple[int, str, str]:
        failed = self._failure("llvm-ar")
        if failed and cmd[1] != "t":
            return failed
        op = cmd[1]
        if op == "t":
            return 0, Path(cmd[2]).read_text(), ""
        if op == "rb":
            member, archive, new = cmd[2], Path(cmd[3]), Path(cmd[4])
            members = archive.read_text().splitlines()
            members.insert(members.index(member), new.name)
            archive.write_text("".join(f"{m}\n" for m in members))
            return 0, "", ""
        if op == "d":
            archive, member = Path(cmd[2]), cmd[3]
            members = [m for m in archive.read_text().splitlines() if m != member]
            archive.write_text("".join(f"{m}\n" for m in members))
            return 0, "", ""
        return 1, "", f"unknown operation {op}"

    def cc(self, cmd: List[str]) -> Tuple[int, str, str]:
        failed = self._failure("cc")
        if failed:
            return failed
        out = Path(_arg_after(cmd, "-o"))
        out.write_text(" ".join(cmd[1:]) + "\n")
        out.chmod(0o755)
        return 0, "", ""


# ── Fake tools ───────────────────────────────────────────────────────────────

@pytest.fixture
def fake_runner() -> FakeToolRunner:
    return FakeToolRunner()


@pytest.fixture
def fake_llvm(fake_runner) -> FakeLlvm:
    return FakeLlvm(fake_runner)


@pytest.fixture
def profile() -> Profile:
    return Profile.cargo()


@pytest.fixture
def toolchain() -> Toolchain:
    return Toolchain(version=parse_version("13.0.0"), suffix=False)


@pytest.fixture
def plugin(tmp_path) -> Path:
    p = tmp_path / "lib" / "CompilerInterrupt.so"
    p.parent.mkdir(parents=True)
    p.write_bytes(b"\x7fELF plugin")
    return p


@pytest.fixture
def library(plugin) -> LibraryConfig:
    return LibraryConfig(library_path=plugin)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(CONFIG_DIR=tmp_path / "config", JOBS=2)


@pytest.fixture
def options() -> BuildOptions:
    return BuildOptions(verbose=True)


# ── Build tree ───────────────────────────────────────────────────────────────

@pytest.fixture
def output_dir(tmp_path) -> Path:
    """``target/debug`` with empty ``deps/`` and ``examples/``."""
    d = tmp_path / "target" / "debug"
    (d / "deps").mkdir(parents=True)
    (d / "examples").mkdir()
    return d


@pytest.fixture
def units() -> Dict[str, CompilationUnit]:
    return {
        "hello_world": CompilationUnit.from_target("hello-world", UnitKind.BIN),
        "worker": CompilationUnit.from_target("worker", UnitKind.BIN),
    }


def _write_ir(deps: Path, name: str, cgu: int = 0) -> Path:
    stem = f"{name}-3f2a9c1d.{name}.8b1e2c4f-cgu.{cgu}.rcgu"
    ir = deps / f"{stem}.ll"
    ir.write_text(f"; ModuleID = '{stem}'\ndefine i32 @main() {{ ret i32 0 }}\n")
    (deps / f"{stem}.o").write_text(f"RUSTC({stem})")
    return ir


@pytest.fixture
def write_ir() -> Callable[..., Path]:
    """Factory: IR file plus the object rustc compiled from it."""
    return _write_ir


# ── End-to-end (real toolchain) ──────────────────────────────────────────────

def _tools_available() -> bool:
    return all(shutil.which(t) for t in ("cargo", "rustc", "llvm-config", "opt", "llc"))


@pytest.fixture(scope="session")
def real_toolchain_ok():
    """Skip unless cargo, rustc and LLVM are on PATH and a plugin is configured."""
    if not _tools_available():
        pytest.skip("cargo / rustc / LLVM toolchain not available")
    plugin_path = os.environ.get("CI_LIBRARY_PATH")
    if not plugin_path or not Path(plugin_path).is_file():
        pytest.skip("Compiler Interrupts library not installed (set CI_LIBRARY_PATH)")
    return Path(plugin_path)
