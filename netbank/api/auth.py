"""
Authentication endpoints
"""

from fastapi import APIRouter, Depends, Response, status

from .dependencies import get_banking_system, guarded, request_deadline
from .schemas import LoginRequest, LoginResponse, RefreshRequest, TokenResponse
from ..system import BankingSystem
from ..tokens import Principal


router = APIRouter()


@router.post("/login", response_model=LoginResponse,
             dependencies=[Depends(guarded(rate_limited=True, authenticated=False))])
def login(
    request: LoginRequest,
    system: BankingSystem = Depends(get_banking_system),
    deadline: float = Depends(request_deadline)
):
    """Exchange credentials for an access/refresh token pair"""
    result = system.auth_service.login(request.email, request.password, deadline=deadline)
    pair = TokenResponse.from_pair(result.tokens)
    return LoginResponse(
        **pair.model_dump(),
        identity_id=result.identity.id,
        role=result.identity.role.value
    )


@router.post("/refresh", response_model=TokenResponse,
             dependencies=[Depends(guarded(rate_limited=True, authenticated=False))])
def refresh(
    request: RefreshRequest,
    system: BankingSystem = Depends(get_banking_system),
    deadline: float = Depends(request_deadline)
):
    """Rotate a refresh token"""
    pair = system.auth_service.refresh(request.refresh_token, deadline=deadline)
    return TokenResponse.from_pair(pair)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    principal: Principal = Depends(guarded()),
    system: BankingSystem = Depends(get_banking_system)
):
    """Revoke the caller's session"""
    system.auth_service.logout(principal.session_id, actor_id=principal.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
