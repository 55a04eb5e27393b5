"""
FastAPI Application for the Chapterguard security pipeline.

Thin routes over the pipeline: login/logout, session introspection, CSRF
token issuance, and a few member-management endpoints that exercise the
access checks.
"""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Callable

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.config.settings import Settings, get_settings
from src.core.state_store import StateStore
from src.observability.logging import configure_logging
from src.security.audit import SecurityAuditMiddleware
from src.security.authentication import (
    ResolutionResult,
    get_current_principal,
    get_optional_principal,
    get_resolution,
    get_security,
)
from src.security.authorization import (
    RequireChapterDelegate,
    RequireMinRole,
    RequirePermission,
    RequireUserResourceAccess,
    authorize,
)
from src.security.catalog import Permission, Role, can_assign_role, can_change_role
from src.security.csrf import verify_csrf
from src.security.errors import Forbidden, Misconfiguration, SecurityError
from src.security.models import Principal
from src.security.pipeline import build_security_pipeline
from src.security.rate_limiter import RateLimitMiddleware, build_default_rules, client_ip
from src.security.stores import ChapterStore, UserStore

logger = structlog.get_logger(__name__)


# =============================================================================
# Request Models
# =============================================================================


class LoginRequest(BaseModel):
    """Credential submission."""

    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., min_length=1, description="Login identifier")
    password: str = Field(..., min_length=1, description="Account password")
    remember_me: bool = Field(default=False, alias="rememberMe")


class RoleAssignment(BaseModel):
    role: str = Field(..., description="Role to assign")


def _ok(message: str | None = None, **payload: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body.update(payload)
    return body


# =============================================================================
# Exception Handlers
# =============================================================================


async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers)


async def misconfiguration_handler(request: Request, exc: Misconfiguration) -> JSONResponse:
    logger.error(
        "Security misconfiguration",
        path=request.url.path,
        error=exc.message,
        error_type=type(exc).__name__,
    )
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        {"success": False, "message": str(exc.detail)},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {"success": False, "message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        status_code=422,
    )


def unhandled_error_handler(settings: Settings) -> Callable:
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        body: dict[str, Any] = {"success": False, "message": "Server error"}
        if settings.is_development:
            body["error"] = str(exc)
        return JSONResponse(body, status_code=500)

    return handler


# =============================================================================
# Routes
# =============================================================================


def register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    async def health(request: Request) -> dict[str, Any]:
        security = get_security(request)
        return {
            "status": "healthy",
            "version": security.settings.app_version,
            "environment": security.settings.environment,
        }

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    @app.post("/api/auth/login")
    async def login(request: Request, credentials: LoginRequest) -> JSONResponse:
        security = get_security(request)
        settings = security.settings
        client_key = client_ip(request, settings.rate_limit.trust_forwarded_for)

        result = await security.login.login(
            credentials.email,
            credentials.password,
            client_key=client_key,
            remember_me=credentials.remember_me,
        )

        response = JSONResponse(
            _ok(
                "Login successful",
                data={
                    "user": result.principal.to_dict(),
                    "token": result.token,
                    "csrfToken": result.csrf_token,
                    "expiresAt": result.expires_at.isoformat(),
                    "requiresEmailVerification": not result.principal.is_email_verified,
                },
            )
        )
        response.set_cookie(
            key=settings.auth.cookie_name,
            value=result.token,
            max_age=int(security.tokens.lifetime(credentials.remember_me).total_seconds()),
            httponly=True,
            secure=settings.auth.cookie_secure,
            samesite=settings.auth.cookie_samesite,
        )
        return response

    @app.post("/api/auth/logout", dependencies=[Depends(verify_csrf)])
    async def logout(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        resolution: ResolutionResult = Depends(get_resolution),
    ) -> JSONResponse:
        security = get_security(request)
        await security.login.logout(resolution.claims.session_id)
        logger.info("Logged out", user_id=principal.id)

        response = JSONResponse(_ok("Logged out successfully"))
        response.delete_cookie(security.resolver.cookie_name)
        return response

    @app.get("/api/auth/me")
    async def me(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> dict[str, Any]:
        catalog = get_security(request).catalog
        return _ok(
            data={
                "user": principal.to_dict(),
                "permissions": catalog.permissions_for(principal.role),
            }
        )

    @app.get("/api/auth/session")
    async def session(
        principal: Principal | None = Depends(get_optional_principal),
    ) -> dict[str, Any]:
        return _ok(
            authenticated=principal is not None,
            user=principal.to_dict() if principal else None,
        )

    @app.get("/api/auth/csrf-token")
    async def csrf_token(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        resolution: ResolutionResult = Depends(get_resolution),
    ) -> dict[str, Any]:
        security = get_security(request)
        claims = resolution.claims
        token = await security.csrf.issue(claims.session_id, claims.seconds_remaining())
        return _ok(csrfToken=token)

    # -------------------------------------------------------------------------
    # Members
    # -------------------------------------------------------------------------

    @app.put("/api/users/{user_id}/role", dependencies=[Depends(verify_csrf)])
    async def assign_role(
        user_id: str,
        assignment: RoleAssignment,
        request: Request,
        principal: Principal = Depends(
            authorize(RequireMinRole(Role.LEADER), RequireUserResourceAccess())
        ),
    ) -> dict[str, Any]:
        security = get_security(request)
        target_role = Role.parse(assignment.role)
        if target_role is None:
            raise HTTPException(status_code=400, detail=f"Unknown role: {assignment.role}")
        if user_id == principal.id:
            raise Forbidden("You cannot change your own role")
        if not can_assign_role(principal.role, target_role):
            raise Forbidden(
                "You cannot assign this role",
                required=target_role.value,
                actual=principal.role_name,
            )

        target = await security.users.find_by_id(user_id)
        if target is None:
            raise HTTPException(status_code=404, detail="User not found")
        if not can_change_role(principal.role, target.role, target_role):
            raise Forbidden(
                "You cannot change the role of a user at or above your level",
                required=target.role_name,
                actual=principal.role_name,
            )

        updated = await security.users.update(user_id, {"role": target_role})
        if updated is None:
            raise HTTPException(status_code=404, detail="User not found")

        logger.info(
            "Role assigned",
            user_id=user_id,
            role=target_role.value,
            assigned_by=principal.id,
        )
        return _ok("Role updated", data={"user": updated.to_dict()})

    @app.post("/api/users/{user_id}/unlock", dependencies=[Depends(verify_csrf)])
    async def unlock_user(
        user_id: str,
        request: Request,
        principal: Principal = Depends(authorize(RequirePermission(Permission.MANAGE_ALL_MEMBERS))),
    ) -> dict[str, Any]:
        security = get_security(request)
        target = await security.users.find_by_id(user_id)
        if target is None:
            raise HTTPException(status_code=404, detail="User not found")

        await security.guard.register_success(target)
        logger.info("Account unlocked", user_id=user_id, unlocked_by=principal.id)
        return _ok("Account unlocked")

    @app.get("/api/chapters/{chapter_id}/members")
    async def chapter_members(
        chapter_id: str,
        request: Request,
        principal: Principal = Depends(authorize(RequireChapterDelegate())),
    ) -> dict[str, Any]:
        member_ids = await get_security(request).chapters.chapter_member_ids(chapter_id)
        return _ok(data={"chapterId": chapter_id, "members": sorted(member_ids)})


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    settings: Settings | None = None,
    user_store: UserStore | None = None,
    chapter_store: ChapterStore | None = None,
    state_store: StateStore | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Build the application around a freshly wired security pipeline."""
    settings = settings or get_settings()

    configure_logging(
        level=settings.log_level,
        format="console" if settings.is_development else settings.observability.log_format,
        service_name=settings.app_name,
    )

    security = build_security_pipeline(
        settings=settings,
        users=user_store,
        chapters=chapter_store,
        store=state_store,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting Chapterguard API", version=settings.app_version)
        yield
        await security.close()
        logger.info("Chapterguard API stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        version=settings.app_version,
        description="Authorization and account-security pipeline for the membership platform",
        lifespan=lifespan,
    )
    app.state.security = security

    app.add_exception_handler(Misconfiguration, misconfiguration_handler)
    app.add_exception_handler(SecurityError, security_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler(settings))

    if settings.rate_limit.enabled:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=security.limiter,
            rules=build_default_rules(security.policies),
            clock=clock,
        )
    app.add_middleware(
        SecurityAuditMiddleware,
        audit=security.audit,
        body_limit=settings.observability.audit_body_limit_bytes,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.api.main:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.is_development,
    )
