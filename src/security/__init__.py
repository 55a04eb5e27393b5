"""
Security Module.

Authorization and account-security pipeline for the membership platform:
- Identity resolution (JWT bearer header or session cookie)
- Role hierarchy and permission catalog
- Access decisions (permissions, roles, ownership, chapter delegation)
- Brute-force lockout and rate limiting
- CSRF protection for cookie sessions
- Security event logging
"""

from src.security.audit import SecurityAuditMiddleware, SecurityEventLogger
from src.security.authentication import (
    IdentityResolver,
    PasswordHasher,
    ResolutionResult,
    ResolutionStatus,
    TokenService,
    get_current_principal,
    get_optional_principal,
)
from src.security.authorization import (
    AllOf,
    RequireAnyRole,
    RequireChapterDelegate,
    RequireEmailVerified,
    RequireMinRole,
    RequireOwnerOrRoles,
    RequirePermission,
    RequireUserResourceAccess,
    authorize,
)
from src.security.catalog import (
    Permission,
    PermissionCatalog,
    Role,
    can_assign_role,
    can_change_role,
    role_at_least,
)
from src.security.csrf import CSRFTokenManager, verify_csrf
from src.security.errors import SecurityError
from src.security.lockout import BruteForceGuard
from src.security.login import LoginResult, LoginService
from src.security.models import Principal
from src.security.pipeline import SecurityPipeline, build_security_pipeline
from src.security.rate_limiter import RateLimiter, RateLimitMiddleware, RateLimitPolicy

__all__ = [
    # Authentication
    "IdentityResolver",
    "PasswordHasher",
    "ResolutionResult",
    "ResolutionStatus",
    "TokenService",
    "get_current_principal",
    "get_optional_principal",
    # Authorization
    "AllOf",
    "RequireAnyRole",
    "RequireChapterDelegate",
    "RequireEmailVerified",
    "RequireMinRole",
    "RequireOwnerOrRoles",
    "RequirePermission",
    "RequireUserResourceAccess",
    "authorize",
    "Permission",
    "PermissionCatalog",
    "Role",
    "can_assign_role",
    "can_change_role",
    "role_at_least",
    # Account security
    "BruteForceGuard",
    "CSRFTokenManager",
    "verify_csrf",
    "LoginResult",
    "LoginService",
    "RateLimiter",
    "RateLimitMiddleware",
    "RateLimitPolicy",
    # Audit
    "SecurityAuditMiddleware",
    "SecurityEventLogger",
    # Pipeline
    "Principal",
    "SecurityError",
    "SecurityPipeline",
    "build_security_pipeline",
]
