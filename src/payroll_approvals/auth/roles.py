"""Role catalog: the single source of role hierarchy and permission sets.

Roles are a closed enumeration. Each one maps to exactly one hierarchy level,
one scope tier and one frozen permission set. The catalog is read-only at
runtime; permissions are never granted outside a role's fixed set.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from payroll_approvals.errors import RoleCatalogError


class Scope(str, Enum):
    """Scope tier a role operates in."""

    PLATFORM = "platform"
    ORGANIZATION = "organization"
    COMPANY = "company"
    PROJECT = "project"
    SELF = "self"


class Role(str, Enum):
    """Role identifiers."""

    PLATFORM_SUPER_ADMIN = "platform_super_admin"
    PLATFORM_AUDITOR = "platform_auditor"
    ORG_ADMIN = "org_admin"
    ORG_HR_ADMIN = "org_hr_admin"
    ORG_FINANCE_CONTROLLER = "org_finance_controller"
    ORG_AUDITOR = "org_auditor"
    ORG_VIEWER = "org_viewer"
    COMPANY_PAYROLL_ADMIN = "company_payroll_admin"
    COMPANY_HR = "company_hr"
    COMPANY_VIEWER = "company_viewer"
    PROJECT_MANAGER = "project_manager"
    PROJECT_PAYROLL_OFFICER = "project_payroll_officer"
    PROJECT_VIEWER = "project_viewer"
    SELF_USER = "self_user"
    SELF_CONTRACTOR = "self_contractor"


class Permission(str, Enum):
    """Capability tags."""

    # Administration
    MANAGE_USERS = "manage_users"
    ASSIGN_ROLES = "assign_roles"
    IMPERSONATE = "impersonate"
    SYSTEM_CONFIGURATION = "system_configuration"
    ORGANIZATION_CONFIGURATION = "organization_configuration"

    # People
    VIEW_EMPLOYEES = "view_employees"
    EDIT_EMPLOYEES = "edit_employees"
    VIEW_SENSITIVE_DATA = "view_sensitive_data"
    VIEW_OWN_DATA = "view_own_data"

    # Payroll
    VIEW_PAYROLL = "view_payroll"
    PREPARE_PAYROLL = "prepare_payroll"
    PROCESS_PAYROLL = "process_payroll"
    APPROVE_PAYROLL = "approve_payroll"
    LOCK_PAYROLL = "lock_payroll"
    UNLOCK_PAYROLL = "unlock_payroll"
    EXPORT_BANK_SCHEDULE = "export_bank_schedule"

    # Reporting
    VIEW_FINANCIAL_REPORTS = "view_financial_reports"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    EXPORT_DATA = "export_data"


@dataclass(frozen=True)
class RoleDefinition:
    """Catalog entry for one role."""

    role: Role
    name: str
    level: int  # Higher number = more authority
    scope: Scope
    permissions: frozenset[Permission]


P = Permission

_VIEW_ONLY = frozenset({P.VIEW_EMPLOYEES, P.VIEW_PAYROLL})

_DEFINITIONS: tuple[RoleDefinition, ...] = (
    RoleDefinition(
        Role.PLATFORM_SUPER_ADMIN,
        "Platform Super Administrator",
        100,
        Scope.PLATFORM,
        frozenset(Permission),
    ),
    RoleDefinition(
        Role.ORG_ADMIN,
        "Organization Administrator",
        90,
        Scope.ORGANIZATION,
        frozenset({
            P.MANAGE_USERS, P.ASSIGN_ROLES, P.ORGANIZATION_CONFIGURATION,
            P.VIEW_EMPLOYEES, P.EDIT_EMPLOYEES, P.VIEW_SENSITIVE_DATA,
            P.VIEW_PAYROLL, P.PREPARE_PAYROLL, P.PROCESS_PAYROLL,
            P.APPROVE_PAYROLL, P.LOCK_PAYROLL, P.UNLOCK_PAYROLL,
            P.EXPORT_BANK_SCHEDULE, P.VIEW_FINANCIAL_REPORTS,
            P.VIEW_AUDIT_LOGS, P.EXPORT_DATA,
        }),
    ),
    RoleDefinition(
        Role.ORG_FINANCE_CONTROLLER,
        "Organization Finance Controller",
        80,
        Scope.ORGANIZATION,
        frozenset({
            P.VIEW_EMPLOYEES, P.VIEW_PAYROLL, P.PROCESS_PAYROLL,
            P.APPROVE_PAYROLL, P.LOCK_PAYROLL, P.EXPORT_BANK_SCHEDULE,
            P.VIEW_FINANCIAL_REPORTS, P.EXPORT_DATA,
        }),
    ),
    RoleDefinition(
        Role.ORG_HR_ADMIN,
        "Organization HR Administrator",
        75,
        Scope.ORGANIZATION,
        frozenset({
            P.MANAGE_USERS, P.VIEW_EMPLOYEES, P.EDIT_EMPLOYEES,
            P.VIEW_SENSITIVE_DATA, P.VIEW_PAYROLL,
        }),
    ),
    RoleDefinition(
        Role.PLATFORM_AUDITOR,
        "Platform Auditor",
        70,
        Scope.PLATFORM,
        frozenset({
            P.VIEW_EMPLOYEES, P.VIEW_PAYROLL, P.VIEW_FINANCIAL_REPORTS,
            P.VIEW_AUDIT_LOGS,
        }),
    ),
    RoleDefinition(
        Role.ORG_AUDITOR,
        "Organization Auditor",
        65,
        Scope.ORGANIZATION,
        frozenset({
            P.VIEW_EMPLOYEES, P.VIEW_PAYROLL, P.VIEW_FINANCIAL_REPORTS,
            P.VIEW_AUDIT_LOGS,
        }),
    ),
    RoleDefinition(
        Role.COMPANY_PAYROLL_ADMIN,
        "Company Payroll Administrator",
        60,
        Scope.COMPANY,
        frozenset({
            P.VIEW_EMPLOYEES, P.EDIT_EMPLOYEES, P.VIEW_PAYROLL,
            P.PREPARE_PAYROLL, P.PROCESS_PAYROLL, P.APPROVE_PAYROLL,
        }),
    ),
    RoleDefinition(
        Role.COMPANY_HR,
        "Company HR",
        55,
        Scope.COMPANY,
        frozenset({P.VIEW_EMPLOYEES, P.EDIT_EMPLOYEES}),
    ),
    RoleDefinition(Role.ORG_VIEWER, "Organization Viewer", 50, Scope.ORGANIZATION, _VIEW_ONLY),
    RoleDefinition(Role.COMPANY_VIEWER, "Company Viewer", 45, Scope.COMPANY, _VIEW_ONLY),
    RoleDefinition(
        Role.PROJECT_MANAGER,
        "Project Manager",
        40,
        Scope.PROJECT,
        frozenset({
            P.VIEW_EMPLOYEES, P.VIEW_PAYROLL, P.PREPARE_PAYROLL,
            P.APPROVE_PAYROLL,
        }),
    ),
    RoleDefinition(
        Role.PROJECT_PAYROLL_OFFICER,
        "Project Payroll Officer",
        35,
        Scope.PROJECT,
        frozenset({P.VIEW_EMPLOYEES, P.VIEW_PAYROLL, P.PREPARE_PAYROLL}),
    ),
    RoleDefinition(Role.PROJECT_VIEWER, "Project Viewer", 30, Scope.PROJECT, _VIEW_ONLY),
    RoleDefinition(Role.SELF_USER, "Self-Service User", 20, Scope.SELF, frozenset({P.VIEW_OWN_DATA})),
    RoleDefinition(
        Role.SELF_CONTRACTOR, "Self-Service Contractor", 10, Scope.SELF, frozenset({P.VIEW_OWN_DATA})
    ),
)

ROLE_CATALOG: Mapping[Role, RoleDefinition] = MappingProxyType(
    {definition.role: definition for definition in _DEFINITIONS}
)


def _definition(role: Role | str) -> RoleDefinition:
    try:
        return ROLE_CATALOG[Role(role)]
    except (KeyError, ValueError):
        raise RoleCatalogError(f"Role '{role}' is not in the role catalog") from None


def parse_role(value: str) -> Role:
    """Convert a stored or transmitted role identifier into a Role."""
    return _definition(value).role


def permissions_of(role: Role | str) -> frozenset[Permission]:
    """Permission set for a role."""
    return _definition(role).permissions


def level_of(role: Role | str) -> int:
    """Hierarchy level for a role."""
    return _definition(role).level


def scope_of(role: Role | str) -> Scope:
    """Scope tier for a role."""
    return _definition(role).scope


def is_platform_role(role: Role | str) -> bool:
    """Check if a role operates across all organizations."""
    return scope_of(role) == Scope.PLATFORM

