"""
Link rewriter — re-link stale binaries against the instrumented objects.

For one recovered linker invocation:
  1. object arguments: substitute ``<stem>-ci.o`` unless the object is the
     allocator shim (it must not be duplicated) or has no ``-ci`` build;
  2. archive arguments inside the build output directory: replace every
     non-instrumented codegen-unit member that has a ``-ci`` build, one
     archive transaction per member;
  3. re-run the linker with the argument list in its recovered order;
  4. copy the output to ``<unit>-ci`` next to cargo's own copy.

Each invocation is owned by exactly one worker, but dependency archives are
shared between invocations: an archive is listed and patched under its own
lock, so a second invocation finds its members already replaced.
"""
import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from elftools.common.exceptions import ELFError

from ci_integrate.core.archive import ArchiveTool, is_replaceable_member
from ci_integrate.core.build_log import LinkerInvocation
from ci_integrate.core.cargo import CompilationUnit, UnitKind
from ci_integrate.core.elf_reader import ElfMeta, read_elf
from ci_integrate.core.paths import append_suffix, ci_object_for, unit_ident
from ci_integrate.core.process import ToolRunner, check_output
from ci_integrate.core.symbols import SymbolProbe
from ci_integrate.core.toolchain import Toolchain
from ci_integrate.pipeline.events import EventSink, Stage
from ci_integrate.policy.profile import Profile

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    unit: str
    output_path: Path
    ci_binary: Optional[Path] = None
    substituted: List[str] = field(default_factory=list)
    allocator_shims: List[str] = field(default_factory=list)
    patched_members: List[str] = field(default_factory=list)
    elf: Optional[ElfMeta] = None


def installed_binary_path(unit: CompilationUnit, output_dir: Path) -> Path:
    """Where the instrumented copy of *unit*'s binary is placed."""
    parent = output_dir / "examples" if unit.kind == UnitKind.EXAMPLE else output_dir
    return append_suffix(parent / unit.name)


def select_stale_linkers(
    linkers: Iterable[LinkerInvocation],
    units: Dict[str, CompilationUnit],
    stale_idents: Set[str],
) -> List[LinkerInvocation]:
    """Invocations producing a binary unit that owns at least one stale file."""
    selected = []
    for linker in linkers:
        ident = unit_ident(linker.output_path)
        if ident in units and ident in stale_idents:
            selected.append(linker)
        else:
            logger.debug(f"fresh, not relinked: {linker.output_path.name}")
    return selected


class LinkRewriter:
    def __init__(
        self,
        runner: ToolRunner,
        toolchain: Toolchain,
        profile: Profile,
        units: Dict[str, CompilationUnit],
        output_dir: Path,
        events: EventSink,
        log_dir: Optional[Path] = None,
    ):
        self.runner = runner
        self.profile = profile
        self.units = units
        self.output_dir = output_dir
        self.deps_dir = output_dir / "deps"
        self.events = events
        self.log_dir = log_dir
        self.probe = SymbolProbe(runner, toolchain.nm, log_dir)
        self.archives = ArchiveTool(runner, toolchain.ar, log_dir)
        self.results: List[LinkResult] = []
        self._lock = threading.Lock()
        self._archive_locks: Dict[Path, threading.Lock] = {}

    def _substitute_objects(self, linker: LinkerInvocation, result: LinkResult) -> None:
        for arg in linker.objects:
            obj = Path(arg.value)
            if self.probe.defines(obj, self.profile.allocator_shim_symbol, result.unit):
                logger.debug(f"found allocator shim: {obj}")
                result.allocator_shims.append(arg.value)
                continue
            ci_obj = ci_object_for(obj)
            if ci_obj.is_file():
                arg.value = str(ci_obj)
                result.substituted.append(ci_obj.name)
            else:
                logger.debug(f"no instrumented object for {obj.name}, kept")

    def _in_output_dir(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.output_dir.resolve())
        except ValueError:
            return False
        return True

    def _archive_lock(self, archive: Path) -> threading.Lock:
        key = archive.resolve()
        with self._lock:
            return self._archive_locks.setdefault(key, threading.Lock())

    def _patch_archive(self, archive: Path, result: LinkResult) -> None:
        logger.debug(f"replacing object files in archive: {archive}")
        for member in self.archives.members(archive, result.unit):
            if not is_replaceable_member(member):
                continue
            ci_obj = ci_object_for(self.deps_dir / member)
            if not ci_obj.is_file():
                continue
            self.archives.replace_member(archive, member, ci_obj, result.unit)
            result.patched_members.append(f"{archive.name}({member})")

    def _patch_archives(self, linker: LinkerInvocation, result: LinkResult) -> None:
        for arg in linker.archives:
            archive = Path(arg.value)
            if not self._in_output_dir(archive):
                continue
            with self._archive_lock(archive):
                self._patch_archive(archive, result)

    def install(self, unit: CompilationUnit, output_path: Path) -> Path:
        dest = installed_binary_path(unit, self.output_dir)
        shutil.copy2(output_path, dest)
        return dest

    def link(self, linker: LinkerInvocation) -> LinkResult:
        """Rewrite, run and install one linker invocation."""
        ident = unit_ident(linker.output_path)
        unit = self.units[ident]
        result = LinkResult(unit=ident, output_path=linker.output_path)
        with self._lock:
            self.results.append(result)

        logger.info(f"linking: {ident}")
        self.events.start(ident, Stage.LINK)
        try:
            self._substitute_objects(linker, result)
            self._patch_archives(linker, result)
            check_output(
                self.runner.run(linker.argv()),
                expected=linker.output_path,
                unit=ident,
                stage="link",
                log_dir=self.log_dir,
            )
            result.ci_binary = self.install(unit, linker.output_path)
        except Exception as e:
            self.events.error(ident, str(e))
            raise
        self.events.finish(ident, Stage.LINK)

        try:
            result.elf = read_elf(result.ci_binary, self.profile.runtime_marker_symbol)
        except ELFError:
            logger.debug(f"{result.ci_binary.name} is not an ELF file")
        else:
            if result.elf.has_symtab and not result.elf.runtime_linked:
                logger.info(
                    f"{result.ci_binary.name} does not define `{self.profile.runtime_marker_symbol}`"
                )
        return result
