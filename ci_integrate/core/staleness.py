"""
Staleness — which build outputs changed during the last ``cargo build``.

A snapshot maps every plain file directly inside the tracked directories
(``deps/`` and ``examples/`` of the build output dir) to its mtime in
nanoseconds.  A file is stale when it is new in the post-build snapshot or
its mtime is strictly greater than before.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Set

from ci_integrate.core.paths import is_ir_file, unit_ident

logger = logging.getLogger(__name__)

TRACKED_SUBDIRS = ("deps", "examples")


class FileSnapshot(Mapping[Path, int]):
    """Immutable ``path → mtime_ns`` mapping."""

    def __init__(self, mtimes: Mapping[Path, int]):
        self._mtimes: Dict[Path, int] = dict(mtimes)

    def __getitem__(self, key: Path) -> int:
        return self._mtimes[key]

    def __iter__(self) -> Iterator[Path]:
        return iter(self._mtimes)

    def __len__(self) -> int:
        return len(self._mtimes)

    def __repr__(self) -> str:
        return f"FileSnapshot({len(self._mtimes)} files)"


@dataclass(frozen=True)
class StaleSet:
    """Output files that are new or modified since the pre-build snapshot."""

    paths: FrozenSet[Path]

    def __bool__(self) -> bool:
        return bool(self.paths)

    def __len__(self) -> int:
        return len(self.paths)

    def __contains__(self, path: object) -> bool:
        return path in self.paths

    def ir_files(self) -> List[Path]:
        return sorted(p for p in self.paths if is_ir_file(p))

    def unit_idents(self, idents: Iterable[str]) -> Set[str]:
        """Identifiers (out of *idents*) owning at least one stale file."""
        known = set(idents)
        return {unit_ident(p) for p in self.paths if unit_ident(p) in known}


def tracked_dirs(output_dir: Path) -> List[Path]:
    return [output_dir / sub for sub in TRACKED_SUBDIRS]


def snapshot(*dirs: Path) -> FileSnapshot:
    """Record the mtime of every plain file directly inside *dirs*."""
    mtimes: Dict[Path, int] = {}
    for d in dirs:
        if not d.is_dir():
            logger.debug(f"snapshot: {d} does not exist, skipped")
            continue
        for entry in d.iterdir():
            if entry.is_file():
                mtimes[entry] = entry.stat().st_mtime_ns
    return FileSnapshot(mtimes)


def diff(pre: Mapping[Path, int], post: Mapping[Path, int]) -> StaleSet:
    """Stale = absent from *pre*, or strictly newer in *post*."""
    stale = frozenset(
        path
        for path, mtime in post.items()
        if path not in pre or mtime > pre[path]
    )
    logger.debug(f"stale files: {len(stale)} of {len(post)}")
    return StaleSet(stale)
