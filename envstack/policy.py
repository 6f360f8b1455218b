"""
Policy checks run against every plan.

Warnings are attached to the plan and logged. They only stop a plan when
policy is strict, in which case the engine raises PolicyViolation.
"""

import ipaddress
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .composition import Composition
from .config import PolicyConfig
from .logging import get_logger
from .planning.planner import ResolvedPlan
from .types import PlanAction, ResourceType

logger = get_logger(__name__)

OPEN_CIDR = "0.0.0.0/0"
ALL_PROTOCOLS = "-1"


@dataclass(frozen=True)
class PolicyWarning:
    """A non-fatal finding about a plan."""

    rule: str
    address: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


def is_public_range(cidr: str, allowed: Sequence[str] = ()) -> bool:
    """True for 0.0.0.0/0 and for non-private ranges that are not allow-listed."""
    if cidr == OPEN_CIDR:
        return True
    if cidr in allowed:
        return False
    try:
        return not ipaddress.ip_network(cidr, strict=False).is_private
    except ValueError:
        return False


def check_open_security_groups(plan: ResolvedPlan, allowed: Sequence[str] = ()) -> List[PolicyWarning]:
    """Flag security groups admitting any protocol from a public range."""
    warnings = []
    for entry in plan.entries:
        if entry.action is PlanAction.DESTROY or entry.resource_type != ResourceType.SECURITY_GROUP.value:
            continue

        for rule in (entry.desired or {}).get("ingress", []):
            cidrs = rule.get("cidr_blocks")
            if not isinstance(cidrs, list) or rule.get("protocol") != ALL_PROTOCOLS:
                continue
            for cidr in cidrs:
                if isinstance(cidr, str) and is_public_range(cidr, allowed):
                    warnings.append(
                        PolicyWarning(
                            rule="open-security-group",
                            address=entry.address,
                            message=f"ingress on all protocols from {cidr}",
                        )
                    )
    return warnings


def network_cidrs(composition: Composition) -> List[ipaddress.IPv4Network]:
    """Literal CIDR blocks of every network resource in ``composition``."""
    cidrs = []
    for _, spec in composition.resources():
        if spec.type is ResourceType.NETWORK and isinstance(spec.attributes.get("cidr_block"), str):
            cidrs.append(ipaddress.ip_network(spec.attributes["cidr_block"], strict=False))
    return cidrs


def check_overlapping_networks(
    composition: Composition, others: Iterable[Composition]
) -> List[PolicyWarning]:
    """Flag network ranges that overlap a range of another environment."""
    warnings = []
    mine = network_cidrs(composition)
    for other in others:
        if other.name == composition.name:
            continue
        for theirs in network_cidrs(other):
            for cidr in mine:
                if cidr.overlaps(theirs):
                    warnings.append(
                        PolicyWarning(
                            rule="overlapping-network-cidr",
                            address=composition.name,
                            message=f"{cidr} overlaps {theirs} of environment '{other.name}'",
                        )
                    )
    return warnings


def evaluate(
    plan: ResolvedPlan,
    config: PolicyConfig,
    others: Optional[Iterable[Composition]] = None,
) -> List[PolicyWarning]:
    """Run every rule against ``plan`` and attach the warnings to it."""
    warnings = check_open_security_groups(plan, config.allowed_open_cidrs)
    if plan.composition is not None and others is not None:
        warnings.extend(check_overlapping_networks(plan.composition, others))

    for warning in warnings:
        logger.warning(
            "Policy warning",
            environment=plan.environment,
            rule=warning.rule,
            address=warning.address,
            detail=warning.message,
        )

    plan.warnings = warnings
    return warnings
