# =============================================================================
# CoffeeLeaf Backend
# services/health.py - Component Health Reporting
#
# Every component reports its own HealthStatus; the /health endpoint only
# aggregates them.
# =============================================================================

from dataclasses import dataclass, asdict
from typing import Dict, List


@dataclass(frozen=True)
class HealthStatus:
    """Health of one named component."""
    component: str
    healthy: bool
    detail: str = ''
    critical: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def ok(cls, component: str, detail: str = 'ok', critical: bool = False):
        return cls(component, True, detail, critical)

    @classmethod
    def failed(cls, component: str, detail: str, critical: bool = False):
        return cls(component, False, detail, critical)


def overall_healthy(statuses: List[HealthStatus]) -> bool:
    """True unless a critical component is unhealthy."""
    return all(status.healthy for status in statuses if status.critical)


def summarize(statuses: List[HealthStatus]) -> str:
    """'healthy', 'degraded' (non-critical failures) or 'unhealthy'."""
    if not overall_healthy(statuses):
        return 'unhealthy'
    if all(status.healthy for status in statuses):
        return 'healthy'
    return 'degraded'
