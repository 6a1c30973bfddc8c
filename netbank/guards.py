"""
Request Guard Pipeline

Each guard is a plain function from a RequestContext to a GuardResult. The
pipeline runs them in a fixed order (admission control, token validation,
role check) and stops at the first denial. Guards never raise for a denial;
the HTTP layer turns the result into a response.
"""

from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional

from .errors import AuthError, AuthErrorCode
from .rate_limit import RateLimiter
from .rbac import Role, authorize
from .tokens import Principal, TokenService


@dataclass(frozen=True)
class RequestContext:
    """What the guards need to know about an inbound request"""
    route: str
    client_address: str
    authorization: Optional[str] = None  # Raw Authorization header
    principal: Optional[Principal] = None


@dataclass(frozen=True)
class GuardResult:
    """Allow, or deny with an HTTP status and reason"""
    allowed: bool
    status_code: int = 200
    error_code: Optional[str] = None
    detail: Optional[str] = None
    principal: Optional[Principal] = None

    @classmethod
    def allow(cls, principal: Optional[Principal] = None) -> 'GuardResult':
        return cls(allowed=True, principal=principal)

    @classmethod
    def deny(cls, status_code: int, error_code: str, detail: str) -> 'GuardResult':
        return cls(allowed=False, status_code=status_code, error_code=error_code, detail=detail)


Guard = Callable[[RequestContext], GuardResult]


def rate_limit_guard(limiter: RateLimiter,
                     key: Optional[Callable[[RequestContext], str]] = None) -> Guard:
    """
    Admission control, keyed by route and client address

    Runs before authentication, so the default key never sees a principal.
    """
    def default_key(ctx: RequestContext) -> str:
        return f"{ctx.route}:{ctx.client_address}"

    key_fn = key or default_key

    def guard(ctx: RequestContext) -> GuardResult:
        if limiter.admit(key_fn(ctx)):
            return GuardResult.allow(ctx.principal)
        return GuardResult.deny(429, "rate_limited", "Too many requests")
    return guard


AUTH_STATUS = {
    AuthErrorCode.UNAVAILABLE: 503,
}


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def authentication_guard(token_service: TokenService) -> Guard:
    """Validate the bearer access token and attach the principal"""
    def guard(ctx: RequestContext) -> GuardResult:
        token = bearer_token(ctx.authorization)
        if token is None:
            return GuardResult.deny(401, AuthErrorCode.MALFORMED.value, "Not authenticated")
        try:
            principal = token_service.validate_access(token)
        except AuthError as e:
            return GuardResult.deny(AUTH_STATUS.get(e.code, 401), e.code.value, e.message)
        return GuardResult.allow(principal)
    return guard


def authorization_guard(required_roles: Iterable[Role]) -> Guard:
    """Require the attached principal to hold one of ``required_roles``"""
    roles = frozenset(required_roles)

    def guard(ctx: RequestContext) -> GuardResult:
        if not authorize(ctx.principal, roles):
            return GuardResult.deny(403, "forbidden", "Insufficient role")
        return GuardResult.allow(ctx.principal)
    return guard


class GuardPipeline:
    """Runs guards in order, threading the principal through the context"""

    def __init__(self, *guards: Guard):
        self.guards = guards

    def run(self, ctx: RequestContext) -> GuardResult:
        for guard in self.guards:
            result = guard(ctx)
            if not result.allowed:
                return result
            if result.principal is not None:
                ctx = replace(ctx, principal=result.principal)
        return GuardResult.allow(ctx.principal)
