"""
Cargo — the build driver and package metadata.

Responsibilities:
  - Collapse ``cargo metadata`` into the set of binary/example units.
  - Run ``cargo build`` with the environment that makes rustc keep its IR
    and temporaries and makes rustc/cargo log the linker command and the
    output-file manifest.
  - Stream stderr line by line: tagged lines are kept for the build-log
    parser, everything else is forwarded to the user unchanged.
"""
import json
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from ci_integrate.config import BuildOptions
from ci_integrate.core.build_log import LineKind, classify_line
from ci_integrate.core.paths import normalize_ident
from ci_integrate.errors import BuildFailedError, IntegrationError
from ci_integrate.policy.profile import Profile

logger = logging.getLogger(__name__)


class UnitKind(str, Enum):
    BIN = "bin"
    EXAMPLE = "example"


@dataclass(frozen=True)
class CompilationUnit:
    """A binary or example target of the package."""
    name: str
    ident: str
    kind: UnitKind

    @classmethod
    def from_target(cls, name: str, kind: UnitKind) -> "CompilationUnit":
        return cls(name=name, ident=normalize_ident(name), kind=kind)


@dataclass(frozen=True)
class PackageMetadata:
    units: List[CompilationUnit]
    target_directory: Path
    workspace_root: Path

    def by_ident(self) -> Dict[str, CompilationUnit]:
        return {u.ident: u for u in self.units}


def parse_metadata(raw: dict) -> PackageMetadata:
    """Binary-producing targets out of ``cargo metadata --format-version 1``."""
    units: Dict[str, CompilationUnit] = {}
    for package in raw.get("packages", []):
        for target in package.get("targets", []):
            kinds = target.get("kind", [])
            crate_types = target.get("crate_types", [])
            if "example" in kinds and "bin" in crate_types:
                kind = UnitKind.EXAMPLE
            elif "bin" in kinds:
                kind = UnitKind.BIN
            else:
                continue
            unit = CompilationUnit.from_target(target["name"], kind)
            units.setdefault(unit.ident, unit)

    return PackageMetadata(
        units=sorted(units.values(), key=lambda u: u.ident),
        target_directory=Path(raw["target_directory"]),
        workspace_root=Path(raw.get("workspace_root", ".")),
    )


class Cargo:
    """Runs cargo subcommands for one package."""

    def __init__(
        self,
        profile: Profile,
        program: str = "cargo",
        cwd: Optional[Path] = None,
        passthrough: TextIO = sys.stderr,
    ):
        self.profile = profile
        self.program = program
        self.cwd = cwd
        self.passthrough = passthrough

    def metadata(self) -> PackageMetadata:
        logger.info("running cargo metadata")
        cmd = [self.program, "metadata", "--no-deps", "--format-version", "1"]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.cwd) if self.cwd else None,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise IntegrationError(f"failed to execute `cargo metadata`: {e}") from e
        if result.returncode != 0:
            raise IntegrationError(f"failed to execute `cargo metadata`\n{result.stderr}")
        return parse_metadata(json.loads(result.stdout))

    def build_env(self, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Environment for ``cargo build``; user RUSTFLAGS are kept in front."""
        env = dict(os.environ if base is None else base)
        rustflags = " ".join(filter(None, [env.get("RUSTFLAGS", ""), *self.profile.rustflags]))
        env["RUSTFLAGS"] = rustflags.strip()
        env["CARGO_TERM_COLOR"] = "always"
        env["RUSTC_LOG"] = f"{self.profile.link_tag}=info"
        env["CARGO_LOG"] = ",".join(f"{tag}=debug" for tag in self.profile.manifest_tags)
        return env

    def build(self, options: BuildOptions) -> List[str]:
        """
        Run ``cargo build`` and return the LINK/MANIFEST log lines.

        Raises BuildFailedError on a non-zero exit.
        """
        cmd = [self.program, "build", *options.cargo_build_args()]
        logger.info(f"running {' '.join(cmd)}")

        tagged: List[str] = []
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self.cwd) if self.cwd else None,
                env=self.build_env(),
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise IntegrationError(f"failed to execute `cargo build`: {e}") from e
        for raw in proc.stderr:
            line = raw.rstrip("\n")
            if classify_line(line, self.profile) != LineKind.OTHER:
                tagged.append(line)
            elif line:
                print(line, file=self.passthrough)
        returncode = proc.wait()

        if returncode != 0:
            raise BuildFailedError(returncode)

        logger.debug(f"collected {len(tagged)} tagged build-log line(s)")
        return tagged
