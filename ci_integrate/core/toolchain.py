"""
Toolchain — pick the LLVM binaries that match the host compiler's LLVM.

Responsibilities:
  - Read the LLVM version rustc was built with (``rustc -vV``).
  - Query ``llvm-config`` under its bare name and as ``llvm-config-<major>``.
  - Decide whether LLVM tools need the ``-<major>`` suffix, or fail with a
    version-mismatch / toolchain-not-found error.

Runs once per invocation, before the build starts.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

from packaging.version import InvalidVersion, Version

from ci_integrate.core.process import ToolOutput, ToolRunner
from ci_integrate.errors import (
    ToolchainError,
    ToolchainNotFoundError,
    ToolchainVersionMismatchError,
    UnsupportedToolchainError,
)
from ci_integrate.policy.profile import Profile

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"\d+(?:\.\d+)*")


@dataclass(frozen=True)
class Toolchain:
    """Resolved LLVM toolchain."""

    version: Version
    suffix: bool

    def binary(self, name: str) -> str:
        if self.suffix:
            return f"{name}-{self.version.major}"
        return name

    @property
    def opt(self) -> str:
        return self.binary("opt")

    @property
    def llc(self) -> str:
        return self.binary("llc")

    @property
    def ar(self) -> str:
        return self.binary("llvm-ar")

    @property
    def nm(self) -> str:
        return self.binary("llvm-nm")


def parse_version(text: str) -> Version:
    """
    Parse the leading dotted version of *text*.

    Vendor decorations are dropped: ``14.0.0git`` → 14.0.0,
    ``15.0.7-rust-1.70.0-stable`` → 15.0.7.
    """
    match = _VERSION_RE.search(text.strip())
    if match is None:
        raise InvalidVersion(f"no version number in {text!r}")
    return Version(match.group(0))


def host_llvm_version(output: ToolOutput, profile: Profile) -> Version:
    """Extract the ``LLVM version:`` field from ``rustc -vV`` output."""
    if not output.ok:
        raise ToolchainError(f"failed to execute `rustc -vV`\n{output.describe()}")
    for line in output.stdout.splitlines():
        if line.startswith(profile.host_version_prefix):
            raw = line[len(profile.host_version_prefix):]
            try:
                return parse_version(raw)
            except InvalidVersion as e:
                raise ToolchainError(f"invalid LLVM version in `rustc -vV`: {raw!r}") from e
    raise ToolchainError("`rustc -vV` output has no `LLVM version` field")


def _same_release(a: Version, b: Version) -> bool:
    return (a.major, a.minor) == (b.major, b.minor)


def _queried_version(output: ToolOutput) -> Optional[Version]:
    """Version printed by a successful ``llvm-config --version``, else None."""
    if not output.ok:
        return None
    try:
        return parse_version(output.stdout)
    except InvalidVersion:
        logger.warning(f"unparseable version from `{output.program}`: {output.stdout.strip()!r}")
        return None


def resolve_toolchain(
    runner: ToolRunner,
    profile: Profile,
    rustc: str = "rustc",
) -> Toolchain:
    """Resolve the LLVM toolchain matching *rustc*."""
    host = host_llvm_version(runner.run([rustc, "-vV"]), profile)
    logger.info(f"rustc LLVM version: {host}")

    if host.major < profile.min_llvm_major:
        raise UnsupportedToolchainError(str(host), f"{profile.min_llvm_major}.0.0")

    bare = _queried_version(runner.run(["llvm-config", "--version"]))
    suffixed = _queried_version(runner.run([f"llvm-config-{host.major}", "--version"]))
    logger.debug(f"llvm-config: {bare}, llvm-config-{host.major}: {suffixed}")

    if bare is None and suffixed is None:
        raise ToolchainNotFoundError()

    if bare is not None and _same_release(host, bare):
        return Toolchain(version=host, suffix=False)
    if suffixed is not None and _same_release(host, suffixed):
        return Toolchain(version=host, suffix=True)

    found = bare if bare is not None else suffixed
    raise ToolchainVersionMismatchError(str(host), str(found))
