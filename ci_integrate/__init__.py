"""
ci_integrate — build-time Compiler Interrupts integration for Cargo packages.

Drives a normal ``cargo build``, rewrites the emitted LLVM IR with the
Compiler Interrupts pass, recompiles it to object code and relinks the
binaries of the package against the instrumented objects.
"""

__version__ = "0.1.0"
PACKAGE_NAME = "ci_integrate"
SCHEMA_VERSION = "0.1"
CI_SUFFIX = "ci"
