"""
ELF reader — structural metadata of a linked binary.

Responsibilities:
  - Hash the file and record its size.
  - Read class, machine, endianness and object type from the ELF header.
  - Record whether a static symbol table is present, and whether it
    defines the runtime marker symbol.

Only used for the integration report; a non-ELF output (Mach-O on macOS)
raises ``ELFError`` and the caller records no metadata.
"""
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection


@dataclass(frozen=True)
class ElfMeta:
    """Structural metadata extracted from an ELF binary."""

    path: str
    file_sha256: str
    file_size: int

    # ELF header fields
    elf_class: int           # 32 or 64
    elf_type: str            # "ET_EXEC", "ET_DYN", ...
    machine: str             # e.g. "EM_X86_64", "EM_AARCH64"
    endianness: str          # "little" or "big"

    has_symtab: bool = False
    runtime_linked: bool = False


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _defines(elffile: ELFFile, symbol: str) -> bool:
    section = elffile.get_section_by_name(".symtab")
    if not isinstance(section, SymbolTableSection):
        return False
    for sym in section.get_symbol_by_name(symbol) or []:
        if sym["st_shndx"] != "SHN_UNDEF":
            return True
    return False


def read_elf(path: Path, runtime_marker: Optional[str] = None) -> ElfMeta:
    """
    Open *path* as an ELF file and return structural metadata.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ELFError
        If the file is not a valid ELF binary.
    """
    if not path.exists():
        raise FileNotFoundError(f"Binary not found: {path}")

    with open(path, "rb") as f:
        elffile = ELFFile(f)
        elf_type = elffile.header.e_type
        machine = elffile.header.e_machine
        elf_class = elffile.elfclass
        endianness = "little" if elffile.little_endian else "big"
        has_symtab = elffile.get_section_by_name(".symtab") is not None
        runtime_linked = bool(runtime_marker) and _defines(elffile, runtime_marker)

    return ElfMeta(
        path=str(path),
        file_sha256=_sha256(path),
        file_size=path.stat().st_size,
        elf_class=elf_class,
        elf_type=elf_type,
        machine=machine,
        endianness=endianness,
        has_symtab=has_symtab,
        runtime_linked=runtime_linked,
    )
