"""
Verification scenarios.

Provides:
- ScenarioResult / RunReport result models
- Scenario base class and ScenarioContext
- Standby and resiliency scenario groups
"""

from standby_verifier.scenarios.base import Scenario, ScenarioContext
from standby_verifier.scenarios.models import RunReport, ScenarioResult, ScenarioStatus
from standby_verifier.scenarios.resiliency import resiliency_scenarios
from standby_verifier.scenarios.standby import standby_scenarios

GROUPS = ("standby", "resiliency", "all")


def scenarios_for(group: str, ctx: ScenarioContext) -> list[Scenario]:
    """Scenarios of a group, in run order."""
    if group == "standby":
        return standby_scenarios(ctx)
    if group == "resiliency":
        return resiliency_scenarios(ctx)
    if group == "all":
        return standby_scenarios(ctx) + resiliency_scenarios(ctx)
    raise ValueError(f"Unknown scenario group: {group}")


__all__ = [
    "GROUPS",
    "RunReport",
    "Scenario",
    "ScenarioContext",
    "ScenarioResult",
    "ScenarioStatus",
    "resiliency_scenarios",
    "scenarios_for",
    "standby_scenarios",
]
