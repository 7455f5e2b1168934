"""
Symbols — defined-symbol probes on object files.

``llvm-nm -jU`` prints only the names of defined symbols, one per line.
Used to recognise the runtime's own object (never instrumented) and the
allocator shim (never substituted at link time).
"""
from pathlib import Path
from typing import List, Optional

from ci_integrate.core.process import ToolRunner, check_output


class SymbolProbe:
    def __init__(self, runner: ToolRunner, nm: str, log_dir: Optional[Path] = None):
        self.runner = runner
        self.nm = nm
        self.log_dir = log_dir

    def defined_symbols(self, obj: Path, unit: str) -> List[str]:
        output = check_output(
            self.runner.run([self.nm, "-jU", str(obj)]),
            expected=None,
            unit=unit,
            stage="probe",
            log_dir=self.log_dir,
        )
        return [line.strip() for line in output.stdout.splitlines() if line.strip()]

    def defines(self, obj: Path, symbol: str, unit: str) -> bool:
        # Mach-O prefixes C symbols with '_'
        return any(symbol in name for name in self.defined_symbols(obj, unit))
