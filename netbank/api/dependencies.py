"""
Request guard dependencies

Every protected endpoint declares ``Depends(guarded(...))``. The dependency
builds a RequestContext from the request and runs the guard pipeline; a
denial becomes an HTTPException carrying the guard's status.
"""

import time
from typing import Iterable, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..guards import (
    GuardPipeline, RequestContext, authentication_guard, authorization_guard, rate_limit_guard
)
from ..rbac import Role
from ..system import BankingSystem
from ..tokens import Principal


security = HTTPBearer(auto_error=False)


def get_banking_system(request: Request) -> BankingSystem:
    """Dependency to get the banking system the app was created with"""
    return request.app.state.system


def request_deadline(system: BankingSystem = Depends(get_banking_system)) -> float:
    """Monotonic deadline for operations that must finish within the request timeout"""
    return time.monotonic() + system.config.request_timeout_seconds


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


def guarded(roles: Optional[Iterable[Role]] = None, rate_limited: bool = False,
            authenticated: bool = True):
    """
    Dependency factory running rate limit, token validation and role check

    Args:
        roles: Roles allowed through; None lets any authenticated identity pass
        rate_limited: Apply token-bucket admission before anything else
        authenticated: Require a valid access token
    """
    required_roles = frozenset(roles) if roles is not None else frozenset(Role)

    def check(request: Request,
              credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
              system: BankingSystem = Depends(get_banking_system)) -> Optional[Principal]:
        guards = []
        if rate_limited:
            guards.append(rate_limit_guard(system.rate_limiter))
        if authenticated:
            guards.append(authentication_guard(system.token_service))
            guards.append(authorization_guard(required_roles))

        ctx = RequestContext(
            route=_route_template(request),
            client_address=request.client.host if request.client else "unknown",
            authorization=f"{credentials.scheme} {credentials.credentials}" if credentials else None,
        )
        result = GuardPipeline(*guards).run(ctx)
        if not result.allowed:
            headers = None
            if result.status_code == 401:
                headers = {"WWW-Authenticate": "Bearer"}
            elif result.status_code == 429:
                headers = {"Retry-After": "1"}
            raise HTTPException(
                status_code=result.status_code,
                detail={"error": result.error_code, "message": result.detail},
                headers=headers
            )
        return result.principal
    return check
