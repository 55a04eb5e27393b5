"""
Authorization Module - Access Decision Engine.

Composable, side-effect-free checks evaluated against the resolved principal
and route parameters:
- Permission and role checks backed by the PermissionCatalog
- Ownership checks
- Chapter delegation checks (fresh lookups, never trusted from the token)
- Cross-user resource access through shared chapters

Checks combine with AND semantics and short-circuit on the first denial.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog
from fastapi import Depends, Request

from src.security.authentication import get_current_principal, get_security
from src.security.catalog import (
    DELEGATE_ROLES,
    GLOBAL_ADMIN_ROLES,
    Permission,
    PermissionCatalog,
    Role,
    role_at_least,
)
from src.security.errors import Forbidden, Unauthenticated
from src.security.models import Principal
from src.security.stores import ChapterStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AccessContext:
    """Everything a check may look at."""

    principal: Principal | None
    catalog: PermissionCatalog
    chapters: ChapterStore
    path_params: Mapping[str, Any] = field(default_factory=dict)
    lookup_timeout: float = 2.0

    def param(self, name: str) -> str | None:
        value = self.path_params.get(name)
        if value is None or value == "":
            return None
        return str(value)

    def require_principal(self) -> Principal:
        if self.principal is None:
            raise Unauthenticated("Authentication required")
        return self.principal

    async def lookup(self, awaitable: Awaitable[Any], what: str) -> Any:
        """Collaborator lookup bounded by the timeout; fails closed."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.lookup_timeout)
        except asyncio.TimeoutError as e:
            logger.error("Authorization lookup timed out", lookup=what)
            raise Forbidden("Authorization check could not be completed") from e


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    message: str = ""
    required: Any = None
    actual: Any = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls) -> "AccessDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, message: str, required: Any = None, actual: Any = None, **extra: Any) -> "AccessDecision":
        return cls(False, message, required, actual, extra)

    def to_error(self) -> Forbidden:
        return Forbidden(self.message, required=self.required, actual=self.actual, **self.extra)


def _role_names(roles: Iterable[Role | str]) -> list[str]:
    return sorted(r.value if isinstance(r, Role) else str(r) for r in roles)


class AccessCheck(ABC):
    """A single authorization predicate."""

    @abstractmethod
    async def evaluate(self, context: AccessContext) -> AccessDecision:
        """Decide without side effects. Raises Unauthenticated if no principal."""
        pass

    async def enforce(self, context: AccessContext) -> None:
        decision = await self.evaluate(context)
        if not decision.allowed:
            logger.info(
                "Access denied",
                check=type(self).__name__,
                user_id=context.principal.id if context.principal else None,
                required=decision.required,
                actual=decision.actual,
            )
            raise decision.to_error()


class RequirePermission(AccessCheck):
    def __init__(self, permission: Permission | str):
        self.permission = permission

    async def evaluate(self, context: AccessContext) -> AccessDecision:
        principal = context.require_principal()
        allowed_roles = context.catalog.allowed_roles(self.permission)
        if Role.parse(principal.role) in allowed_roles:
            return AccessDecision.allow()
        permission_name = self.permission.value if isinstance(self.permission, Permission) else self.permission
        return AccessDecision.deny(
            "Insufficient permissions",
            required=permission_name,
            actual=principal.role_name,
        )


class RequireAnyRole(AccessCheck):
    def __init__(self, roles: Iterable[Role | str]):
        self.roles = frozenset(Role.parse(r) or r for r in roles)
        if not self.roles:
            raise ValueError("RequireAnyRole needs at least one role")

    async def evaluate(self, context: AccessContext) -> AccessDecision:
        principal = context.require_principal()
        if principal.role in self.roles:
            return AccessDecision.allow()
        return AccessDecision.deny(
            "Insufficient role permissions",
            required=_role_names(self.roles),
            actual=principal.role_name,
        )


class RequireMinRole(AccessCheck):
    def __init__(self, min_role: Role | str):
        parsed = Role.parse(min_role)
        if parsed is None:
            raise ValueError(f"Unknown role: {min_role}")
        self.min_role = parsed

    async def evaluate(self, context: AccessContext) -> AccessDecision:
        principal = context.require_principal()
        if role_at_least(principal.role, self.min_role):
            return AccessDecision.allow()
        return AccessDecision.deny(
            "Insufficient role level",
            required=self.min_role.value,
            actual=principal.role_name,
        )


OwnerResolver = Callable[[AccessContext], "str | None | Awaitable[str | None]"]


def path_param(name: str) -> OwnerResolver:
    """Owner resolver reading the owner id from a route parameter."""

    def resolve(context: AccessContext) -> str | None:
        return context.param(name)

    return resolve


class RequireOwnerOrRoles(AccessCheck):
    """Allow the resource owner, or any holder of a privileged role."""

    def __init__(
        self,
        owner_of: OwnerResolver | None = None,
        privileged_roles: Iterable[Role | str] = GLOBAL_ADMIN_ROLES,
    ):
        self.owner_of = owner_of or path_param("user_id")
        self.privileged_roles = frozenset(Role.parse(r) or r for r in privileged_roles)

    async def evaluate(self, context: AccessContext) -> AccessDecision:
        principal = context.require_principal()
        if principal.role in self.privileged_roles:
            return AccessDecision.allow()

        owner_id = self.owner_of(context)
        if inspect.isawaitable(owner_id):
            owner_id = await context.lookup(owner_id, "resource_owner")

        if owner_id is not None and str(owner_id) == principal.id:
            return AccessDecision.allow()
        return AccessDecision.deny(
            "Not authorized to access this resource",
            required=["owner", *_role_names(self.privileged_roles)],
            actual=principal.role_name,
        )


class RequireChapterDelegate(AccessCheck):
    """Global admins manage every chapter; delegates only their own."""

    def __init__(
        self,
        param: str = "chapter_id",
        global_roles: Iterable[Role] = GLOBAL_ADMIN_ROLES,
        delegate_roles: Iterable[Role] = DELEGATE_ROLES,
    ):
        self.param = param
        self.global_roles = frozenset(global_roles)
        self.delegate_roles = frozenset(delegate_roles)

    async def evaluate(self, context: AccessContext) -> AccessDecision:
        principal = context.require_principal()
        if principal.role in self.global_roles:
            return AccessDecision.allow()

        required = _role_names(self.global_roles | self.delegate_roles)
        if principal.role not in self.delegate_roles:
            return AccessDecision.deny(
                "Insufficient permissions to manage chapters",
                required=required,
                actual=principal.role_name,
            )

        chapter_id = context.param(self.param)
        if chapter_id is None:
            return AccessDecision.deny(
                "Chapter not specified",
                required=required,
                actual=principal.role_name,
            )

        delegated = await context.lookup(
            context.chapters.delegated_chapter_ids(principal.id), "delegated_chapters"
        )
        if chapter_id in delegated:
            return AccessDecision.allow()
        return AccessDecision.deny(
            "You can only manage chapters you are assigned to",
            required=required,
            actual=principal.role_name,
        )


class RequireUserResourceAccess(AccessCheck):
    """
    Access to another user's resources.

    Allowed for the user themself, privileged roles, and delegates who manage
    a chapter the target belongs to.
    """

    def __init__(
        self,
        param: str = "user_id",
        privileged_roles: Iterable[Role] = GLOBAL_ADMIN_ROLES,
        delegate_roles: Iterable[Role] = DELEGATE_ROLES,
    ):
        self.param = param
        self.privileged_roles = frozenset(privileged_roles)
        self.delegate_roles = frozenset(delegate_roles)

    async def evaluate(self, context: AccessContext) -> AccessDecision:
        principal = context.require_principal()
        target_id = context.param(self.param)
        denied = AccessDecision.deny(
            "You can only access your own resources",
            required=["self", *_role_names(self.privileged_roles | self.delegate_roles)],
            actual=principal.role_name,
        )

        if target_id is None:
            return denied
        if target_id == principal.id:
            return AccessDecision.allow()
        if principal.role in self.privileged_roles:
            return AccessDecision.allow()
        if principal.role not in self.delegate_roles:
            return denied

        delegated = await context.lookup(
            context.chapters.delegated_chapter_ids(principal.id), "delegated_chapters"
        )
        if not delegated:
            return denied
        target_chapters = await context.lookup(
            context.chapters.chapter_membership_ids(target_id), "chapter_memberships"
        )
        if delegated & target_chapters:
            return AccessDecision.allow()
        return denied


class RequireEmailVerified(AccessCheck):
    async def evaluate(self, context: AccessContext) -> AccessDecision:
        principal = context.require_principal()
        if principal.is_email_verified:
            return AccessDecision.allow()
        return AccessDecision.deny(
            "Email verification required",
            required="verified_email",
            actual="unverified",
            code="EMAIL_NOT_VERIFIED",
        )


class AllOf(AccessCheck):
    """AND-combination; stops at the first denial."""

    def __init__(self, *checks: AccessCheck):
        self.checks = checks

    async def evaluate(self, context: AccessContext) -> AccessDecision:
        context.require_principal()
        for check in self.checks:
            decision = await check.evaluate(context)
            if not decision.allowed:
                return decision
        return AccessDecision.allow()


# =============================================================================
# FastAPI Integration
# =============================================================================


def build_access_context(request: Request, principal: Principal | None) -> AccessContext:
    security = get_security(request)
    return AccessContext(
        principal=principal,
        catalog=security.catalog,
        chapters=security.chapters,
        path_params=dict(request.path_params),
        lookup_timeout=security.lookup_timeout,
    )


def authorize(*checks: AccessCheck) -> Callable[..., Awaitable[Principal]]:
    """
    FastAPI dependency factory: authenticate, then enforce every check in order.

    Usage:
        @app.put("/api/chapters/{chapter_id}")
        async def update_chapter(
            chapter_id: str,
            principal: Principal = Depends(authorize(RequireChapterDelegate())),
        ):
            ...
    """

    async def access_checker(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        context = build_access_context(request, principal)
        for check in checks:
            await check.enforce(context)
        return principal

    return access_checker
