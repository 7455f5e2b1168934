"""
Paths — naming conventions shared by every stage.

Cargo/rustc output names look like::

    deps/hello_world-3f2a9c1d.hello_world.8b1e2c4f-cgu.0.rcgu.ll
    deps/hello_world-3f2a9c1d

The owning unit is the file stem up to the first ``.`` and then up to the
first ``-``.  Instrumented counterparts carry a ``-ci`` suffix on the stem
(``…rcgu-ci.ll`` / ``…rcgu-ci.o`` / ``hello-world-ci``).
"""
from pathlib import Path
from typing import Union

from ci_integrate import CI_SUFFIX

PathLike = Union[str, Path]

CGU_MARKER = "rcgu"
CI_MARKER = f"-{CI_SUFFIX}"


def normalize_ident(name: str) -> str:
    """Symbol-safe identifier of a target name (``my-app`` → ``my_app``)."""
    return name.replace("-", "_")


def unit_ident(path: PathLike) -> str:
    """Identifier of the unit owning an output file."""
    stem = Path(path).stem
    return stem.split(".", 1)[0].split("-", 1)[0]


def append_suffix(path: PathLike, suffix: str = CI_SUFFIX) -> Path:
    """``dir/name.ext`` → ``dir/name-<suffix>.ext`` (extension optional)."""
    p = Path(path)
    if p.suffix:
        return p.with_name(f"{p.stem}-{suffix}{p.suffix}")
    return p.with_name(f"{p.name}-{suffix}")


def strip_suffix(name: str, suffix: str = CI_SUFFIX) -> str:
    marker = f"-{suffix}"
    return name[: -len(marker)] if name.endswith(marker) else name


def is_instrumented(path: PathLike) -> bool:
    return CI_MARKER in Path(path).stem


def is_ir_file(path: PathLike) -> bool:
    """Per-codegen-unit IR saved by ``-C save-temps``, excluding our own outputs."""
    p = Path(path)
    return p.suffix == ".ll" and CGU_MARKER in p.stem and not is_instrumented(p)


def object_for(ir_path: PathLike) -> Path:
    """The object rustc produced from the same codegen unit."""
    return Path(ir_path).with_suffix(".o")


def ci_ir_for(ir_path: PathLike) -> Path:
    return append_suffix(ir_path)


def ci_object_for(path: PathLike) -> Path:
    """Instrumented object for an IR file or an original object file."""
    return append_suffix(Path(path).with_suffix(".o"))
