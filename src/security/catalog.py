"""
Role & Permission Catalog.

Static tables loaded once at process start:
- Role hierarchy with explicit numeric levels
- Permission -> allowed roles mapping, validated exhaustively on construction
"""

from collections.abc import Iterable, Mapping
from enum import Enum
from types import MappingProxyType

import structlog

from src.security.errors import Misconfiguration, UnknownPermission

logger = structlog.get_logger(__name__)

LOWEST_LEVEL = -1


class Role(str, Enum):
    """Platform roles. Ordering is defined by ROLE_LEVELS, not declaration order."""

    MEMBER = "Member"
    COORDINATOR = "Coordinator"
    LEADER = "Leader"
    AMBASSADOR = "Ambassador"
    ADMIN = "Admin"
    SUPERADMIN = "Superadmin"

    @property
    def level(self) -> int:
        return ROLE_LEVELS[self]

    @classmethod
    def parse(cls, value: "str | Role") -> "Role | None":
        """Return the matching Role, or None for unrecognised values."""
        if isinstance(value, Role):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


ROLE_LEVELS: Mapping[Role, int] = MappingProxyType({
    Role.MEMBER: 0,
    Role.COORDINATOR: 1,
    Role.LEADER: 2,
    Role.AMBASSADOR: 3,
    Role.ADMIN: 4,
    Role.SUPERADMIN: 5,
})

# Roles with authority over every chapter and user
GLOBAL_ADMIN_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.SUPERADMIN})

# Roles that manage only the chapters delegated to them
DELEGATE_ROLES: frozenset[Role] = frozenset({Role.LEADER, Role.AMBASSADOR})


class Permission(str, Enum):
    """Named capabilities."""

    # Member
    VIEW_PROFILE = "view_profile"
    EDIT_OWN_PROFILE = "edit_own_profile"
    VIEW_CHAPTERS = "view_chapters"
    JOIN_CHAPTER = "join_chapter"

    # Coordinator
    VIEW_CHAPTER_MEMBERS = "view_chapter_members"

    # Leader
    MANAGE_CHAPTER_MEMBERS = "manage_chapter_members"
    CREATE_EVENTS = "create_events"
    EDIT_EVENTS = "edit_events"
    DELETE_EVENTS = "delete_events"
    SEND_BULK_EMAILS = "send_bulk_emails"
    AWARD_BADGES = "award_badges"
    VIEW_CHAPTER_ANALYTICS = "view_chapter_analytics"

    # Ambassador
    MANAGE_MULTIPLE_CHAPTERS = "manage_multiple_chapters"

    # Admin
    VIEW_ALL_MEMBERS = "view_all_members"
    MANAGE_ALL_MEMBERS = "manage_all_members"
    MANAGE_CHAPTERS = "manage_chapters"
    CREATE_CHAPTERS = "create_chapters"
    DELETE_CHAPTERS = "delete_chapters"
    MANAGE_BADGES = "manage_badges"
    VIEW_SYSTEM_ANALYTICS = "view_system_analytics"

    # Superadmin
    MANAGE_ROLES = "manage_roles"
    MANAGE_ADMINS = "manage_admins"
    SYSTEM_SETTINGS = "system_settings"
    APPROVE_ROLE_APPLICATIONS = "approve_role_applications"
    MANAGE_PERMISSIONS = "manage_permissions"


def _at_least(min_role: Role) -> frozenset[Role]:
    return frozenset(r for r in Role if r.level >= min_role.level)


_MEMBER_UP = _at_least(Role.MEMBER)
_COORDINATOR_UP = _at_least(Role.COORDINATOR)
_LEADER_UP = _at_least(Role.LEADER)
_AMBASSADOR_UP = _at_least(Role.AMBASSADOR)
_ADMIN_UP = _at_least(Role.ADMIN)
_SUPERADMIN_ONLY = frozenset({Role.SUPERADMIN})

DEFAULT_PERMISSIONS: Mapping[Permission, frozenset[Role]] = MappingProxyType({
    Permission.VIEW_PROFILE: _MEMBER_UP,
    Permission.EDIT_OWN_PROFILE: _MEMBER_UP,
    Permission.VIEW_CHAPTERS: _MEMBER_UP,
    Permission.JOIN_CHAPTER: _MEMBER_UP,
    Permission.VIEW_CHAPTER_MEMBERS: _COORDINATOR_UP,
    Permission.MANAGE_CHAPTER_MEMBERS: _LEADER_UP,
    Permission.CREATE_EVENTS: _LEADER_UP,
    Permission.EDIT_EVENTS: _LEADER_UP,
    Permission.DELETE_EVENTS: _LEADER_UP,
    Permission.SEND_BULK_EMAILS: _LEADER_UP,
    Permission.AWARD_BADGES: _LEADER_UP,
    Permission.VIEW_CHAPTER_ANALYTICS: _LEADER_UP,
    Permission.MANAGE_MULTIPLE_CHAPTERS: _AMBASSADOR_UP,
    Permission.VIEW_ALL_MEMBERS: _ADMIN_UP,
    Permission.MANAGE_ALL_MEMBERS: _ADMIN_UP,
    Permission.MANAGE_CHAPTERS: _ADMIN_UP,
    Permission.CREATE_CHAPTERS: _ADMIN_UP,
    Permission.DELETE_CHAPTERS: _ADMIN_UP,
    Permission.MANAGE_BADGES: _ADMIN_UP,
    Permission.VIEW_SYSTEM_ANALYTICS: _ADMIN_UP,
    Permission.MANAGE_ROLES: _SUPERADMIN_ONLY,
    Permission.MANAGE_ADMINS: _SUPERADMIN_ONLY,
    Permission.SYSTEM_SETTINGS: _SUPERADMIN_ONLY,
    Permission.APPROVE_ROLE_APPLICATIONS: _SUPERADMIN_ONLY,
    Permission.MANAGE_PERMISSIONS: _SUPERADMIN_ONLY,
})


def role_level(role: "Role | str") -> int:
    """Hierarchy level of a role; unrecognised roles rank below every known role."""
    parsed = Role.parse(role)
    return parsed.level if parsed is not None else LOWEST_LEVEL


def role_at_least(role: "Role | str", min_role: "Role | str") -> bool:
    """True iff role ranks at or above min_role."""
    required = Role.parse(min_role)
    if required is None:
        raise Misconfiguration(f"Unknown role in hierarchy check: {min_role}")
    return role_level(role) >= required.level


def can_assign_role(assigner: "Role | str", target: "Role | str") -> bool:
    """
    Whether a principal holding `assigner` may grant `target` to someone.

    Superadmin may assign anything, Admin anything below Admin, and a Leader
    may only promote to Coordinator.
    """
    assigner_role = Role.parse(assigner)
    target_role = Role.parse(target)
    if assigner_role is None or target_role is None:
        return False

    if assigner_role is Role.SUPERADMIN:
        return True
    if assigner_role is Role.ADMIN:
        return target_role.level < Role.ADMIN.level
    if assigner_role is Role.LEADER:
        return target_role is Role.COORDINATOR
    return False


def can_change_role(assigner: "Role | str", current: "Role | str", target: "Role | str") -> bool:
    """
    Whether `assigner` may move someone holding `current` to `target`.

    Besides being allowed to grant `target`, the assigner must outrank the
    role the user holds now; only Superadmin may change a peer's role.
    """
    if not can_assign_role(assigner, target):
        return False
    if Role.parse(assigner) is Role.SUPERADMIN:
        return True
    return role_level(current) < role_level(assigner)


class PermissionCatalog:
    """
    Immutable permission -> roles table.

    Construction validates that every Permission has a non-empty set of known
    roles, so a broken table fails at startup instead of on the first request.
    """

    def __init__(self, mapping: Mapping[Permission | str, Iterable[Role | str]] | None = None):
        source = DEFAULT_PERMISSIONS if mapping is None else mapping
        self._table: Mapping[Permission, frozenset[Role]] = MappingProxyType(
            self._validate(source)
        )
        logger.debug("Permission catalog loaded", permissions=len(self._table))

    @staticmethod
    def _validate(
        mapping: Mapping[Permission | str, Iterable[Role | str]],
    ) -> dict[Permission, frozenset[Role]]:
        table: dict[Permission, frozenset[Role]] = {}

        for raw_permission, raw_roles in mapping.items():
            try:
                permission = Permission(raw_permission)
            except ValueError as e:
                raise Misconfiguration(f"Unknown permission in catalog: {raw_permission}") from e

            roles = set()
            for raw_role in raw_roles:
                role = Role.parse(raw_role)
                if role is None:
                    raise Misconfiguration(
                        f"Permission '{permission.value}' references unknown role '{raw_role}'"
                    )
                roles.add(role)

            if not roles:
                raise Misconfiguration(f"Permission '{permission.value}' has no allowed roles")
            table[permission] = frozenset(roles)

        missing = [p.value for p in Permission if p not in table]
        if missing:
            raise Misconfiguration(f"Permissions without allowed roles: {', '.join(missing)}")

        return table

    def allowed_roles(self, permission: Permission | str) -> frozenset[Role]:
        """Roles granted a permission. Unknown names are a server misconfiguration."""
        try:
            key = Permission(permission)
        except ValueError as e:
            raise UnknownPermission(str(permission)) from e

        roles = self._table.get(key)
        if roles is None:
            raise UnknownPermission(key.value)
        return roles

    def is_allowed(self, role: Role | str, permission: Permission | str) -> bool:
        parsed = Role.parse(role)
        if parsed is None:
            return False
        return parsed in self.allowed_roles(permission)

    def permissions_for(self, role: Role | str) -> list[str]:
        """All permission names held by a role, sorted."""
        parsed = Role.parse(role)
        if parsed is None:
            return []
        return sorted(p.value for p, roles in self._table.items() if parsed in roles)

    def __contains__(self, permission: object) -> bool:
        try:
            return Permission(permission) in self._table
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._table)


_catalog: PermissionCatalog | None = None


def get_permission_catalog() -> PermissionCatalog:
    """Get the process-wide default catalog."""
    global _catalog
    if _catalog is None:
        _catalog = PermissionCatalog()
    return _catalog
