"""
Decision — should one IR file be instrumented?

Two rules, evaluated in order:
  1. The file's compiled object exports the runtime marker → RUNTIME_COMPONENT
  2. The file's unit is on the user's skip list          → SKIP_LIST

The runtime is therefore never instrumented and never reported as a user
skip, whatever the skip list says.  Policy rules take the probe result as
input and never run tools themselves.
"""
from dataclasses import dataclass
from enum import Enum, unique
from typing import Iterable, Optional

from ci_integrate.core.paths import normalize_ident


@unique
class SkipReason(str, Enum):
    SKIP_LIST = "SKIP_LIST"
    RUNTIME_COMPONENT = "RUNTIME_COMPONENT"


@dataclass(frozen=True)
class IntegrationDecision:
    instrument: bool
    reason: Optional[SkipReason] = None

    @property
    def announce(self) -> bool:
        """Whether the skip is shown to the user."""
        return self.reason == SkipReason.SKIP_LIST

    @classmethod
    def integrate(cls) -> "IntegrationDecision":
        return cls(instrument=True)

    @classmethod
    def skip(cls, reason: SkipReason) -> "IntegrationDecision":
        return cls(instrument=False, reason=reason)


def is_skip_listed(ident: str, skip_units: Iterable[str]) -> bool:
    """Exact match on hyphen-normalised identifiers."""
    ident = normalize_ident(ident)
    return any(normalize_ident(s) == ident for s in skip_units)


def decide(
    ident: str,
    skip_units: Iterable[str],
    is_runtime_component: bool,
) -> IntegrationDecision:
    """Decide for the IR file of unit *ident*, given the marker probe result."""
    if is_runtime_component:
        return IntegrationDecision.skip(SkipReason.RUNTIME_COMPONENT)
    if is_skip_listed(ident, skip_units):
        return IntegrationDecision.skip(SkipReason.SKIP_LIST)
    return IntegrationDecision.integrate()
