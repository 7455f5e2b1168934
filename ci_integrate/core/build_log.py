"""
Build-log parser — recover linker invocations and the output directory
from the diagnostic stream of ``cargo build``.

Grammar:
  1. Line-tag dispatch.  ANSI colour codes are stripped, then a line is
     LINK (carries the rustc link tag), MANIFEST (carries a cargo
     compilation-files tag) or OTHER.
  2. LINK lines: everything up to and including the tag is dropped, quote
     characters are removed and the rest is split on whitespace.  Leading
     ``NAME=value`` environment assignments are skipped; the next token is
     the linker program, the remaining tokens its arguments.
  3. MANIFEST lines: the text after ``Target filenames:`` is a list of
     ``OutputFile { path: "…", hardlink: Some("…")|None,
     export_path: Some("…")|None, flavor: Name… }`` records.

Argument roles are decided by filesystem probing, because the log does not
tag them: existing files are objects or archives by extension, everything
else that is not ``-o``/``-L`` (and their values) is an opaque flag.

Any drift in rustc/cargo's log format should surface here, and only here.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from ci_integrate.errors import BuildLogParseError
from ci_integrate.policy.profile import Profile

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_ENV_ASSIGN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_OUTPUT_FILE_RE = re.compile(
    r'OutputFile\s*\{\s*'
    r'path:\s*"(?P<path>[^"]*)",\s*'
    r'hardlink:\s*(?:Some\(\s*"(?P<hardlink>[^"]*)"\s*\)|None),\s*'
    r'export_path:\s*(?:Some\(\s*"(?P<export_path>[^"]*)"\s*\)|None),\s*'
    r'flavor:\s*(?P<flavor>\w+)'
)

BUILD_SCRIPT_NAME = "build-script-build"
EXAMPLES_DIR = "examples"
DEFAULT_TARGET_DIR_NAME = "target"


class LineKind(str, Enum):
    LINK = "link"
    MANIFEST = "manifest"
    OTHER = "other"


class ArgRole(str, Enum):
    """Role of one linker argument."""
    OBJECT = "object"
    ARCHIVE = "archive"
    OUTPUT_FLAG = "output_flag"
    OUTPUT = "output"
    LIBDIR_FLAG = "libdir_flag"
    LIBDIR = "libdir"
    FLAG = "flag"


# ── Data containers ──────────────────────────────────────────────────────────

@dataclass
class LinkerArg:
    value: str
    role: ArgRole


@dataclass
class LinkerInvocation:
    """
    One linker command recovered from the build log.

    Arguments keep their recovered order; the Link Rewriter replaces values
    in place and ``argv()`` hands the same order back to the linker.
    """

    program: str
    args: List[LinkerArg] = field(default_factory=list)

    def _values(self, role: ArgRole) -> List[str]:
        return [a.value for a in self.args if a.role == role]

    @property
    def output_path(self) -> Path:
        return Path(self._values(ArgRole.OUTPUT)[0])

    @property
    def objects(self) -> List[LinkerArg]:
        return [a for a in self.args if a.role == ArgRole.OBJECT]

    @property
    def archives(self) -> List[LinkerArg]:
        return [a for a in self.args if a.role == ArgRole.ARCHIVE]

    @property
    def library_dirs(self) -> List[str]:
        return self._values(ArgRole.LIBDIR)

    @property
    def flags(self) -> List[str]:
        return self._values(ArgRole.FLAG)

    def references(self, needle: str) -> bool:
        return any(needle in a.value for a in self.args)

    def argv(self) -> List[str]:
        return [self.program] + [a.value for a in self.args]


@dataclass(frozen=True)
class OutputFile:
    """One entry of cargo's ``Target filenames`` manifest."""
    path: Path
    hardlink: Optional[Path] = None
    export_path: Optional[Path] = None
    flavor: str = "Normal"


@dataclass
class ParsedBuildLog:
    linkers: List[LinkerInvocation]
    output_files: List[OutputFile]
    output_dir: Path


# ── Line dispatch ────────────────────────────────────────────────────────────

def strip_ansi(line: str) -> str:
    return _ANSI_RE.sub("", line)


def classify_line(line: str, profile: Profile) -> LineKind:
    line = strip_ansi(line)
    if profile.link_tag in line:
        return LineKind.LINK
    if profile.manifest_prefix in line and any(t in line for t in profile.manifest_tags):
        return LineKind.MANIFEST
    return LineKind.OTHER


# ── Linker lines ─────────────────────────────────────────────────────────────

def _is_flag(token: str, marker: str) -> bool:
    """Flag-like token equal to or containing *marker* (paths never start with '-')."""
    return token == marker or (token.startswith("-") and marker in token)


def tokenize_link_line(line: str, profile: Profile) -> List[str]:
    """Program + arguments of a LINK line, tag prefix and quoting removed."""
    line = strip_ansi(line)
    _, _, rest = line.partition(profile.link_tag)
    # env_logger closes the target with "]"
    rest = rest.lstrip("]:")
    tokens = rest.replace('"', "").split()
    # `Command`'s Debug output lists environment overrides first
    while tokens and _ENV_ASSIGN_RE.match(tokens[0]):
        tokens.pop(0)
    return tokens


def parse_linker_line(
    line: str,
    profile: Profile,
    is_file: Callable[[Path], bool] = Path.is_file,
) -> Optional[LinkerInvocation]:
    """
    Parse one LINK line.

    Returns None for lines that are not a binary-producing link: no
    reference to the runtime build artifact, or no output path.
    """
    tokens = tokenize_link_line(line, profile)
    if not tokens:
        return None
    if not any(profile.link_marker in t for t in tokens[1:]):
        logger.debug("link line without runtime artifact, ignored")
        return None

    program, rest = tokens[0], iter(tokens[1:])
    args: List[LinkerArg] = []
    have_output = False

    for token in rest:
        if _is_flag(token, profile.output_flag):
            value = next(rest, None)
            if value is None:
                raise BuildLogParseError(f"missing output file after `{token}`")
            if have_output:
                raise BuildLogParseError(
                    f"linker invocation has more than one output path: {value}"
                )
            have_output = True
            args.append(LinkerArg(token, ArgRole.OUTPUT_FLAG))
            args.append(LinkerArg(value, ArgRole.OUTPUT))
        elif _is_flag(token, profile.library_dir_flag):
            value = next(rest, None)
            if value is None:
                raise BuildLogParseError(f"missing library dir after `{token}`")
            args.append(LinkerArg(token, ArgRole.LIBDIR_FLAG))
            args.append(LinkerArg(value, ArgRole.LIBDIR))
        elif is_file(Path(token)):
            role = ArgRole.ARCHIVE if Path(token).suffix in profile.archive_suffixes else ArgRole.OBJECT
            args.append(LinkerArg(token, role))
        else:
            args.append(LinkerArg(token, ArgRole.FLAG))

    if not have_output:
        logger.debug("link line without output path, ignored")
        return None

    return LinkerInvocation(program=program, args=args)


# ── Manifest lines ───────────────────────────────────────────────────────────

def parse_manifest_line(line: str, profile: Profile) -> List[OutputFile]:
    """Parse the ``Target filenames: [...]`` payload of a MANIFEST line."""
    line = strip_ansi(line)
    _, sep, payload = line.partition(profile.manifest_prefix)
    if not sep:
        raise BuildLogParseError(f"manifest line without payload: {line!r}")

    files = [
        OutputFile(
            path=Path(m.group("path")),
            hardlink=Path(m.group("hardlink")) if m.group("hardlink") is not None else None,
            export_path=Path(m.group("export_path")) if m.group("export_path") is not None else None,
            flavor=m.group("flavor"),
        )
        for m in _OUTPUT_FILE_RE.finditer(payload)
    ]
    if len(files) != payload.count("OutputFile"):
        raise BuildLogParseError(f"malformed output file manifest: {payload.strip()!r}")
    return files


def _split_alias(
    hardlink: Path,
    target_root: Optional[Path],
) -> Tuple[Path, Optional[str], str]:
    """(root, triple, mode) of the directory holding *hardlink*."""
    d = hardlink.parent
    if d.name == EXAMPLES_DIR:
        d = d.parent
    mode = d.name
    d = d.parent
    is_root = d == target_root if target_root is not None else d.name == DEFAULT_TARGET_DIR_NAME
    if is_root:
        return d, None, mode
    return d.parent, d.name, mode


def resolve_output_dir(
    output_files: Iterable[OutputFile],
    target_root: Optional[Path] = None,
) -> Path:
    """
    The build output directory shared by every hardlinked output.

    ``<root>/<mode>`` or ``<root>/<triple>/<mode>``.  Fails if any two
    aliases disagree on root, triple or build mode.
    """
    resolved: Optional[Tuple[Path, Optional[str], str]] = None
    for f in output_files:
        if f.hardlink is None or BUILD_SCRIPT_NAME in f.hardlink.name:
            continue
        alias = _split_alias(f.hardlink, target_root)
        if resolved is None:
            resolved = alias
        elif alias != resolved:
            raise BuildLogParseError(
                "failed to parse target directory: "
                f"{f.hardlink} disagrees with {resolved[0]} ({resolved[1] or 'host'}, {resolved[2]})"
            )

    if resolved is None:
        raise BuildLogParseError("failed to parse target directory: no hardlinked outputs")

    root, triple, mode = resolved
    return root / triple / mode if triple else root / mode


# ── Whole log ────────────────────────────────────────────────────────────────

def parse_build_log(
    lines: Iterable[str],
    profile: Profile,
    target_root: Optional[Path] = None,
    is_file: Callable[[Path], bool] = Path.is_file,
) -> ParsedBuildLog:
    linkers: List[LinkerInvocation] = []
    output_files: List[OutputFile] = []

    for line in lines:
        kind = classify_line(line, profile)
        if kind == LineKind.LINK:
            linker = parse_linker_line(line, profile, is_file=is_file)
            if linker is not None:
                linkers.append(linker)
        elif kind == LineKind.MANIFEST:
            output_files.extend(parse_manifest_line(line, profile))

    output_dir = resolve_output_dir(output_files, target_root)
    logger.debug(f"parsed {len(linkers)} linker(s), output dir {output_dir}")
    return ParsedBuildLog(linkers=linkers, output_files=output_files, output_dir=output_dir)
