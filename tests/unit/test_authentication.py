"""
Unit Tests for Authentication.

Tests TokenService, PasswordHasher, credential extraction and the
three-way IdentityResolver.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest

from src.security.authentication import (
    CredentialSource,
    IdentityResolver,
    PasswordHasher,
    ResolutionStatus,
    TokenService,
    extract_credential,
)
from src.security.errors import (
    AccountDisabled,
    InvalidToken,
    PrincipalNotFound,
    Unauthenticated,
)
from src.security.models import Principal
from src.security.stores import InMemoryUserStore

SECRET = "unit-test-secret"


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(secret_key=SECRET, expire_days=7, remember_me_expire_days=30)


@pytest.fixture
def member() -> Principal:
    return Principal(id="u-1", email="Member@X.com")


class TestTokenService:
    """Test cases for TokenService."""

    def test_issue_and_verify(self, tokens: TokenService, member: Principal) -> None:
        issued = tokens.issue(member)
        claims = tokens.verify(issued.token)

        assert claims.subject == "u-1"
        assert claims.session_id == issued.session_id
        assert claims.expires_at - claims.issued_at == timedelta(days=7)

    def test_token_carries_no_role(self, tokens: TokenService, member: Principal) -> None:
        payload = jwt.decode(tokens.issue(member).token, SECRET, algorithms=["HS256"])

        assert set(payload) == {"sub", "jti", "iat", "exp", "type"}

    def test_remember_me_extends_lifetime(self, tokens: TokenService, member: Principal) -> None:
        claims = tokens.verify(tokens.issue(member, remember_me=True).token)

        assert claims.expires_at - claims.issued_at == timedelta(days=30)

    def test_each_token_gets_a_new_session(self, tokens: TokenService, member: Principal) -> None:
        assert tokens.issue(member).session_id != tokens.issue(member).session_id

    def test_wrong_signature_rejected(self, tokens: TokenService, member: Principal) -> None:
        forged = TokenService(secret_key="other-secret").issue(member).token

        with pytest.raises(InvalidToken):
            tokens.verify(forged)

    def test_expired_token_rejected(self, tokens: TokenService) -> None:
        past = datetime.now(timezone.utc) - timedelta(days=2)
        token = jwt.encode(
            {"sub": "u-1", "jti": "s", "iat": past, "exp": past + timedelta(days=1), "type": "access"},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(InvalidToken, match="expired"):
            tokens.verify(token)

    def test_missing_claims_rejected(self, tokens: TokenService) -> None:
        token = jwt.encode(
            {"sub": "u-1", "exp": datetime.now(timezone.utc) + timedelta(days=1)},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(InvalidToken):
            tokens.verify(token)

    def test_wrong_type_rejected(self, tokens: TokenService, member: Principal) -> None:
        token = tokens.issue(member, additional_claims={"type": "refresh"}).token

        with pytest.raises(InvalidToken):
            tokens.verify(token)

    def test_garbage_rejected(self, tokens: TokenService) -> None:
        with pytest.raises(InvalidToken):
            tokens.verify("not-a-jwt")


class TestPasswordHasher:
    """Test cases for PasswordHasher."""

    def test_hash_and_verify(self) -> None:
        hasher = PasswordHasher(rounds=4)
        hashed = hasher.hash("s3cret")

        assert hashed != "s3cret"
        assert hasher.verify("s3cret", hashed)
        assert not hasher.verify("wrong", hashed)

    def test_missing_or_malformed_hash(self) -> None:
        hasher = PasswordHasher(rounds=4)

        assert not hasher.verify("s3cret", None)
        assert not hasher.verify("s3cret", "not-a-bcrypt-hash")

    def test_dummy_verify_does_not_raise(self) -> None:
        PasswordHasher(rounds=4).dummy_verify("anything")


class TestExtractCredential:
    """Test cases for extract_credential."""

    def test_bearer_header(self) -> None:
        credential = extract_credential({"authorization": "Bearer abc"}, {})

        assert credential.token == "abc"
        assert credential.source is CredentialSource.BEARER

    def test_bearer_header_wins_over_cookie(self) -> None:
        credential = extract_credential({"authorization": "Bearer abc"}, {"token": "xyz"})

        assert credential.token == "abc"

    def test_cookie(self) -> None:
        credential = extract_credential({}, {"token": "xyz"})

        assert credential.token == "xyz"
        assert credential.source is CredentialSource.COOKIE

    def test_custom_cookie_name(self) -> None:
        assert extract_credential({}, {"sid": "xyz"}, cookie_name="sid").token == "xyz"

    def test_non_bearer_scheme_falls_back_to_cookie(self) -> None:
        credential = extract_credential({"authorization": "Basic abc"}, {"token": "xyz"})

        assert credential.source is CredentialSource.COOKIE

    @pytest.mark.parametrize("header", ["Bearer", "Bearer   ", "Basic abc"])
    def test_no_usable_credential(self, header: str) -> None:
        assert extract_credential({"authorization": header}, {}) is None


class TestIdentityResolver:
    """Test cases for IdentityResolver."""

    @pytest.fixture
    def users(self, member: Principal) -> InMemoryUserStore:
        return InMemoryUserStore([
            member,
            Principal(id="u-off", email="off@x.com", is_active=False),
        ])

    @pytest.fixture
    def resolver(self, tokens: TokenService, users: InMemoryUserStore) -> IdentityResolver:
        return IdentityResolver(tokens, users)

    def bearer(self, tokens: TokenService, user_id: str) -> dict[str, str]:
        token = tokens.issue(Principal(id=user_id, email=f"{user_id}@x.com")).token
        return {"authorization": f"Bearer {token}"}

    @pytest.mark.asyncio
    async def test_no_credential_is_anonymous(self, resolver: IdentityResolver) -> None:
        result = await resolver.resolve({}, {})

        assert result.status is ResolutionStatus.ANONYMOUS
        assert result.principal is None
        assert result.error is None

    @pytest.mark.asyncio
    async def test_valid_token_is_authenticated(
        self, resolver: IdentityResolver, tokens: TokenService
    ) -> None:
        result = await resolver.resolve(self.bearer(tokens, "u-1"), {})

        assert result.is_authenticated
        assert result.principal.id == "u-1"
        assert result.principal.email == "member@x.com"
        assert result.claims.subject == "u-1"

    @pytest.mark.asyncio
    async def test_bad_token_is_invalid(self, resolver: IdentityResolver) -> None:
        result = await resolver.resolve({"authorization": "Bearer junk"}, {})

        assert result.status is ResolutionStatus.INVALID
        assert isinstance(result.error, InvalidToken)

    @pytest.mark.asyncio
    async def test_unknown_subject_is_invalid(
        self, resolver: IdentityResolver, tokens: TokenService
    ) -> None:
        result = await resolver.resolve(self.bearer(tokens, "u-ghost"), {})

        assert isinstance(result.error, PrincipalNotFound)
        assert result.error.message == "No user found with this token"

    @pytest.mark.asyncio
    async def test_inactive_principal_is_invalid(
        self, resolver: IdentityResolver, tokens: TokenService
    ) -> None:
        result = await resolver.resolve(self.bearer(tokens, "u-off"), {})

        assert isinstance(result.error, AccountDisabled)
        assert result.error.message == "User account is deactivated"

    @pytest.mark.asyncio
    async def test_lookup_timeout_is_invalid(self, tokens: TokenService) -> None:
        async def slow_lookup(user_id: str) -> Principal:
            await asyncio.sleep(1)
            return Principal(id=user_id, email="slow@x.com")

        users = MagicMock()
        users.find_by_id = slow_lookup
        resolver = IdentityResolver(tokens, users, lookup_timeout=0.01)

        result = await resolver.resolve(self.bearer(tokens, "u-1"), {})

        assert result.status is ResolutionStatus.INVALID
        assert type(result.error) is Unauthenticated

    def make_request(self, headers: dict[str, str] | None = None) -> SimpleNamespace:
        return SimpleNamespace(
            headers=headers or {},
            cookies={},
            state=SimpleNamespace(),
            url=SimpleNamespace(path="/api/test"),
        )

    @pytest.mark.asyncio
    async def test_resolution_is_cached_per_request(self, tokens: TokenService) -> None:
        users = MagicMock()
        users.find_by_id = AsyncMock(return_value=Principal(id="u-1", email="m@x.com"))
        resolver = IdentityResolver(tokens, users)
        request = self.make_request(self.bearer(tokens, "u-1"))

        await resolver.resolve_request(request)
        await resolver.resolve_request(request)

        users.find_by_id.assert_awaited_once_with("u-1")
        assert request.state.principal.id == "u-1"

    @pytest.mark.asyncio
    async def test_authenticate_raises_resolution_error(self, resolver: IdentityResolver) -> None:
        with pytest.raises(InvalidToken):
            await resolver.authenticate(self.make_request({"authorization": "Bearer junk"}))

    @pytest.mark.asyncio
    async def test_authenticate_anonymous_raises_unauthenticated(
        self, resolver: IdentityResolver
    ) -> None:
        with pytest.raises(Unauthenticated) as exc_info:
            await resolver.authenticate(self.make_request())

        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    @pytest.mark.asyncio
    async def test_optional_downgrades_invalid_to_anonymous(
        self, resolver: IdentityResolver, tokens: TokenService
    ) -> None:
        assert await resolver.authenticate_optional(self.make_request({"authorization": "Bearer junk"})) is None
        assert await resolver.authenticate_optional(self.make_request()) is None

        principal = await resolver.authenticate_optional(self.make_request(self.bearer(tokens, "u-1")))
        assert principal.id == "u-1"

    @pytest.mark.asyncio
    async def test_optional_downgrades_store_failure(self, tokens: TokenService) -> None:
        users = MagicMock()
        users.find_by_id = AsyncMock(side_effect=ConnectionError("db down"))
        resolver = IdentityResolver(tokens, users)

        principal = await resolver.authenticate_optional(self.make_request(self.bearer(tokens, "u-1")))

        assert principal is None

    @pytest.mark.asyncio
    async def test_required_surfaces_store_failure(self, tokens: TokenService) -> None:
        users = MagicMock()
        users.find_by_id = AsyncMock(side_effect=ConnectionError("db down"))
        resolver = IdentityResolver(tokens, users)

        with pytest.raises(ConnectionError):
            await resolver.authenticate(self.make_request(self.bearer(tokens, "u-1")))
