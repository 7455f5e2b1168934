"""
Profile — every string the integration keys on, in one place.

Core code recognises log lines, marker symbols and archive kinds through
the profile only.  Following a new rustc/cargo log format or a renamed
runtime symbol is a profile change, not a code change.
"""
import platform
from dataclasses import dataclass, field
from typing import FrozenSet, List, Tuple


@dataclass(frozen=True)
class Profile:
    """Describes the build driver, the IR toolchain and the runtime markers."""

    # Identity
    profile_id: str

    # Build-log tags
    link_tag: str
    manifest_tags: Tuple[str, ...]
    manifest_prefix: str

    # A linker line only counts if some argument references this artifact
    link_marker: str

    # Symbols
    runtime_marker_symbol: str       # exported by the injected runtime itself
    allocator_shim_symbol: str       # object that must never be substituted

    # Linker argument markers
    output_flag: str = "-o"
    library_dir_flag: str = "-L"
    archive_suffixes: FrozenSet[str] = frozenset({".rlib", ".a"})

    # Host compiler / toolchain
    host_version_prefix: str = "LLVM version: "
    min_llvm_major: int = 9

    # Build-driver environment
    rustflags: List[str] = field(default_factory=list)

    # Code-model fix for relocation mismatches
    large_code_model_systems: FrozenSet[str] = frozenset({"Linux"})

    def needs_large_code_model(self, system: str = "") -> bool:
        return (system or platform.system()) in self.large_code_model_systems

    @classmethod
    def cargo(cls) -> "Profile":
        """The cargo/rustc + LLVM profile."""
        return cls(
            profile_id="cargo-rustc-llvm",
            link_tag="rustc_codegen_ssa::back::link",
            manifest_tags=(
                "cargo::core::compiler::context::compilation_files",
                "cargo::core::compiler::build_runner::compilation_files",
            ),
            manifest_prefix="Target filenames:",
            link_marker="libcompiler_builtins",
            runtime_marker_symbol="intvActionHook",
            allocator_shim_symbol="__rust_alloc",
            # `--emit=llvm-ir` keeps the IR, `-C debuginfo=0` keeps it small,
            # `-C save-temps` keeps the per-codegen-unit objects and IR
            rustflags=["--emit=llvm-ir", "-Cdebuginfo=0", "-Csave-temps"],
        )
