# roster_app/utils/permissions.py

from roster_app.models.user import ROLE_OPERATOR, ROLE_VIEWER

MANAGE_IMPORTS = "manage_imports"
VIEW_IMPORTS = "view_imports"

ROLE_PERMISSIONS = {
    ROLE_OPERATOR: frozenset({MANAGE_IMPORTS, VIEW_IMPORTS}),
    ROLE_VIEWER: frozenset({VIEW_IMPORTS}),
}


def has_permission(user, permission_name, organization=None):
    """Check if user has a specific permission, optionally in a specific organization"""
    if not user or not user.is_authenticated:
        return False

    # Super admins have all permissions
    if user.is_super_admin:
        return True

    if organization is not None and user.organization_id != organization.id:
        return False

    return permission_name in ROLE_PERMISSIONS.get(user.role, frozenset())


def can_access_organization(user, organization_id):
    """Tenant check: super admins see every organization, others only their own."""
    if not user or not user.is_authenticated:
        return False
    if user.is_super_admin:
        return True
    return user.organization_id is not None and user.organization_id == organization_id
