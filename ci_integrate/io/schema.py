"""
Schema — Pydantic models for the integration report.

One output per run:
  <output_dir>/ci-integration.json — toolchain, status, per-file decisions,
  per-binary link results and failures.

Runtime contract fields (present in every output):
  package_name, tool_version, profile_id, schema_version.
"""
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from ci_integrate import PACKAGE_NAME, SCHEMA_VERSION, __version__


# ── Toolchain ────────────────────────────────────────────────────────────────

class ToolchainModel(BaseModel):
    llvm_version: str
    suffixed: bool
    opt: str
    llc: str


# ── Per-file / per-binary entries ────────────────────────────────────────────

class FileEntry(BaseModel):
    """One IR file carried through the integration pipeline."""

    ir_path: str
    unit: str
    stage: str                       # final TaskStage
    instrumented: bool = False
    skip_reason: Optional[str] = None
    error: Optional[str] = None


class ElfModel(BaseModel):
    elf_class: int
    elf_type: str
    machine: str
    file_sha256: str
    file_size: int
    runtime_linked: bool = False


class BinaryEntry(BaseModel):
    """One re-linked binary."""

    unit: str
    output_path: str
    ci_binary: Optional[str] = None
    substituted_objects: List[str] = Field(default_factory=list)
    allocator_shims: List[str] = Field(default_factory=list)
    patched_members: List[str] = Field(default_factory=list)
    elf: Optional[ElfModel] = None


class FailureEntry(BaseModel):
    unit: Optional[str] = None
    stage: Optional[str] = None
    message: str
    log_path: Optional[str] = None


# ── Report ───────────────────────────────────────────────────────────────────

class IntegrationReport(BaseModel):
    """Written as ci-integration.json."""

    package_name: str = PACKAGE_NAME
    tool_version: str = __version__
    schema_version: str = SCHEMA_VERSION
    profile_id: str

    status: str                      # FRESH | SUCCESS | FAILED
    build_mode: str
    target: Optional[str] = None
    output_dir: str

    toolchain: Optional[ToolchainModel] = None
    units: List[str] = Field(default_factory=list)
    stale_units: List[str] = Field(default_factory=list)
    stale_file_count: int = 0

    files: List[FileEntry] = Field(default_factory=list)
    binaries: List[BinaryEntry] = Field(default_factory=list)
    failures: List[FailureEntry] = Field(default_factory=list)

    duration_ms: int = 0
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
