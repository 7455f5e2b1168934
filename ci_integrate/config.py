"""
Configuration — settings, the persisted library record, and build options.

Three values, all built once by the CLI and handed to the components that
need them:
  - Settings:      process-level knobs read from the environment (CI_*).
  - LibraryConfig: the installed Compiler Interrupts library record
                   (<config_dir>/default.json); read-only during a build.
  - BuildOptions:  what the user asked for on the command line.
"""
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "default.json"
DEFAULT_LIBRARY_ARGS = ["-inst-gran=2", "-commit-intv=100", "-all-dev=100"]


def _default_config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "ci-integrate"


class Settings(BaseSettings):
    """Environment-driven settings (prefix ``CI_``)."""

    CONFIG_DIR: Path = Field(default_factory=_default_config_dir)

    # Overrides the library record when set
    LIBRARY_PATH: Optional[Path] = None

    # Worker pool size; 0 means one worker per logical core
    JOBS: int = 0

    # Per-invocation timeout for LLVM tools, seconds
    TOOL_TIMEOUT: int = 600

    # Build driver / host compiler executables
    CARGO: str = "cargo"
    RUSTC: str = "rustc"

    @property
    def workers(self) -> int:
        return self.JOBS if self.JOBS > 0 else (os.cpu_count() or 1)

    @property
    def log_dir(self) -> Path:
        """Directory receiving full diagnostic dumps in debug mode."""
        return self.CONFIG_DIR

    class Config:
        env_prefix = "CI_"
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


class LibraryConfig(BaseModel):
    """Record of the installed Compiler Interrupts library."""

    library_path: Path = Path()
    library_debug_path: Optional[Path] = None
    library_args: List[str] = Field(default_factory=lambda: list(DEFAULT_LIBRARY_ARGS))
    llvm_version: str = ""
    checksum: str = ""
    url: str = ""

    def plugin_path(self, debug: bool) -> Path:
        """The pass plugin to load; the debug build when requested and present."""
        if debug and self.library_debug_path is not None:
            return self.library_debug_path
        return self.library_path

    def is_installed(self) -> bool:
        return self.library_path != Path() and self.library_path.is_file()

    @classmethod
    def load(cls, config_dir: Path) -> "LibraryConfig":
        """
        Load the record from *config_dir*.

        A missing file is replaced by the default record.  A file that cannot
        be read back is kept as ``default-old.json`` and replaced as well.
        """
        path = config_dir / CONFIG_FILE_NAME
        if not path.is_file():
            logger.warning("config file not found, use default config")
            default = cls()
            default.save(config_dir)
            return default

        try:
            return cls.model_validate(json.loads(path.read_text()))
        except (ValueError, ValidationError) as e:
            old_path = path.with_name(f"{path.stem}-old{path.suffix}")
            shutil.copyfile(path, old_path)
            logger.warning("found incompatible config file, replaced with default config")
            logger.warning(f"old config file can be found at: {old_path}")
            logger.debug(f"config parse error: {e}")
            default = cls()
            default.save(config_dir)
            return default

    def save(self, config_dir: Path) -> Path:
        config_dir.mkdir(parents=True, exist_ok=True)
        path = config_dir / CONFIG_FILE_NAME
        path.write_text(
            json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"
        )
        return path


@dataclass(frozen=True)
class BuildOptions:
    """Options of a single ``ci-integrate build`` invocation."""

    target: Optional[str] = None
    release: bool = False
    example: Optional[str] = None
    skip_units: List[str] = field(default_factory=list)
    debug: bool = False
    cargo_args: List[str] = field(default_factory=list)
    verbose: bool = False

    @property
    def build_mode(self) -> str:
        return "release" if self.release else "debug"

    def cargo_build_args(self) -> List[str]:
        """Arguments appended to ``cargo build``."""
        args: List[str] = []
        if self.example:
            args += ["--example", self.example]
        if self.release:
            args.append("--release")
        if self.target:
            args += ["--target", self.target]
        args += self.cargo_args
        return args
