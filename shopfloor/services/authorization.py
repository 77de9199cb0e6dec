"""
Authorization Resolver.

Decides whether a caller may start/complete a flow step and on whose behalf.
Precedence, first match wins:

    1. admin                  caller holds an administrative role
    2. production_supervisor  caller may operate any station
    3. assigned               caller is assigned to this exact step
                              (for remediation children, the roadmap technician
                              of the matching entry counts as assigned)
    4. supervisor_on_behalf   caller manages the role of the assigned
                              technician; acts as that technician
    5. station_category       a caller role is eligible for the station category
    6. denied

``resolve`` is pure: it only sees role grants and a ``StepContext``.
``load_step_context`` and ``authorize_step`` do the store reads around it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

from sqlalchemy import select

from shopfloor.core.exceptions import NotAssigned, PermissionDenied
from shopfloor.models import db
from shopfloor.models.order import Assignment, FlowStep
from shopfloor.models.remediation import RemediationRoadmapStep
from shopfloor.services.role_repository import RoleGrant, RoleRepository, get_role_repository

logger = logging.getLogger(__name__)

RULE_ADMIN = "admin"
RULE_PRODUCTION_SUPERVISOR = "production_supervisor"
RULE_ASSIGNED = "assigned"
RULE_SUPERVISOR_ON_BEHALF = "supervisor_on_behalf"
RULE_STATION_CATEGORY = "station_category"
RULE_DENIED = "denied"


@dataclass(frozen=True)
class StepContext:
    order_id: int
    station_id: int
    step_order: int
    station_category: str
    assignees: tuple = ()


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    acting_as: int | None
    rule: str


def is_admin(grants: Iterable[RoleGrant]) -> bool:
    return any(g.is_admin or g.is_top_admin for g in grants)


def is_top_admin(grants: Iterable[RoleGrant]) -> bool:
    return any(g.is_top_admin for g in grants)


def resolve(
    caller_id,
    caller_grants: Iterable[RoleGrant],
    context: StepContext,
    assignee_grants: Mapping[int, Iterable[RoleGrant]] | None = None,
) -> AuthorizationDecision:
    """Apply the precedence rules and return the decision."""
    grants = frozenset(caller_grants)
    assignee_grants = assignee_grants or {}

    if is_admin(grants):
        return AuthorizationDecision(True, caller_id, RULE_ADMIN)

    if any(g.is_production_supervisor for g in grants):
        return AuthorizationDecision(True, caller_id, RULE_PRODUCTION_SUPERVISOR)

    if caller_id is not None and caller_id in context.assignees:
        return AuthorizationDecision(True, caller_id, RULE_ASSIGNED)

    managed = set()
    for g in grants:
        managed |= g.manages
    if managed:
        for technician_id in sorted(context.assignees):
            tech_roles = {g.key for g in assignee_grants.get(technician_id, ())}
            if tech_roles & managed:
                return AuthorizationDecision(True, technician_id, RULE_SUPERVISOR_ON_BEHALF)

    category = (context.station_category or "").lower()
    if category and any(category in g.station_categories for g in grants):
        return AuthorizationDecision(True, caller_id, RULE_STATION_CATEGORY)

    return AuthorizationDecision(False, None, RULE_DENIED)


# ── Store-backed helpers ─────────────────────────────────────────────────────


def load_step_context(step: FlowStep) -> StepContext:
    """Build the resolver context for a step, including the roadmap fallback."""
    assignees = set(
        db.session.execute(
            select(Assignment.technician_id).where(
                Assignment.order_id == step.order_id,
                Assignment.station_id == step.station_id,
                Assignment.step_order == step.step_order,
                Assignment.status != "cancelled",
            )
        ).scalars().all()
    )
    if step.is_remediation_order and step.remediation_order_id:
        roadmap_tech = db.session.execute(
            select(RemediationRoadmapStep.assigned_technician_id).where(
                RemediationRoadmapStep.remediation_order_id == step.remediation_order_id,
                RemediationRoadmapStep.step_order == step.step_order,
            )
        ).scalar_one_or_none()
        if roadmap_tech is not None:
            assignees.add(roadmap_tech)
    return StepContext(
        order_id=step.order_id,
        station_id=step.station_id,
        step_order=step.step_order,
        station_category=step.station.category if step.station else "other",
        assignees=tuple(sorted(assignees)),
    )


def authorize_step(
    caller_id, step: FlowStep, repository: RoleRepository | None = None,
) -> AuthorizationDecision:
    """Resolve for a stored step; raise ``NotAssigned`` when denied."""
    repository = repository or get_role_repository()
    context = load_step_context(step)
    caller_grants = repository.roles_for(caller_id)
    assignee_grants = {tid: repository.roles_for(tid) for tid in context.assignees}
    decision = resolve(caller_id, caller_grants, context, assignee_grants)
    if not decision.allowed:
        logger.info(
            "Authorization denied caller=%s order_id=%s step=%s",
            caller_id, step.order_id, step.step_order,
            extra={"station_id": step.station_id, "step_order": step.step_order},
        )
        raise NotAssigned(
            f"User {caller_id} is not assigned to step {step.step_order}",
            details={"station_id": step.station_id, "step_order": step.step_order},
        )
    return decision


def require_admin(caller_id, action: str, repository: RoleRepository | None = None) -> frozenset:
    grants = (repository or get_role_repository()).roles_for(caller_id)
    if not is_admin(grants):
        raise PermissionDenied(f"Admin role required to {action}", details={"caller_id": caller_id})
    return grants


def require_top_admin(caller_id, action: str, repository: RoleRepository | None = None) -> frozenset:
    grants = (repository or get_role_repository()).roles_for(caller_id)
    if not is_top_admin(grants):
        raise PermissionDenied(
            f"Top administrative role required to {action}", details={"caller_id": caller_id},
        )
    return grants
