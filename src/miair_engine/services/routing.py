"""Routing — pure classification of units onto backend targets.

=================  =====================  ==============================
policy             public unit            sensitive / unlabeled unit
=================  =====================  ==============================
local-only         local                  local
hybrid             external               local
external-only      skip-if-external-...   skip
=================  =====================  ==============================

``smart-route`` resolves to ``local-only`` when the byte-weighted share of
restricted content reaches the threshold, otherwise to ``hybrid``.
"""

from __future__ import annotations

from typing import Sequence

from miair_engine.domain.entities import (
    RouteTarget,
    RoutingPolicy,
    SensitivityLabel,
    StructuralUnit,
)
from miair_engine.services.sensitivity import sensitivity_density

DEFAULT_SMART_ROUTE_THRESHOLD = 0.3


def resolve_effective_policy(
    policy: RoutingPolicy,
    units: Sequence[StructuralUnit],
    threshold: float = DEFAULT_SMART_ROUTE_THRESHOLD,
) -> RoutingPolicy:
    """Collapse ``smart-route`` into the concrete policy it selects."""
    if policy is not RoutingPolicy.SMART_ROUTE:
        return policy
    if sensitivity_density(units) >= threshold:
        return RoutingPolicy.LOCAL_ONLY
    return RoutingPolicy.HYBRID


def route_label(label: SensitivityLabel, policy: RoutingPolicy) -> RouteTarget:
    """Target for one unit under a concrete (non smart-route) policy."""
    if policy is RoutingPolicy.LOCAL_ONLY:
        return RouteTarget.LOCAL
    if policy is RoutingPolicy.HYBRID:
        return RouteTarget.LOCAL if label.is_restricted else RouteTarget.EXTERNAL
    if policy is RoutingPolicy.EXTERNAL_ONLY:
        return RouteTarget.SKIP if label.is_restricted else RouteTarget.EXTERNAL_OR_SKIP
    raise ValueError(f"Policy {policy.value} must be resolved before routing")


def route_units(
    units: Sequence[StructuralUnit],
    policy: RoutingPolicy,
    threshold: float = DEFAULT_SMART_ROUTE_THRESHOLD,
) -> dict[int, RouteTarget]:
    """Deterministically assign a :class:`RouteTarget` to every unit index."""
    effective = resolve_effective_policy(policy, units, threshold)
    return {unit.index: route_label(unit.sensitivity, effective) for unit in units}
