from typing import List

from fastapi import APIRouter, Depends, Request

from app.dependencies.services import get_billing_context, get_user_service
from app.schemas.user import (
    BillingUser,
    LoginAttempt,
    LoginRequest,
    LoginResult,
    MfaCodeRequest,
    MfaEnrollment,
    MfaVerification,
    UserCreate,
    UserListResponse,
    UserUpdate,
)
from app.services import UserService
from app.services.context import BillingContext
from app.services.exceptions import ServiceError
from app.tools.errors import http_error

router = APIRouter()


@router.get("", response_model=UserListResponse)
async def list_users(service: UserService = Depends(get_user_service)):
    try:
        users = await service.list()
    except ServiceError as exc:
        raise http_error(exc) from exc
    return UserListResponse(total=len(users), items=users)


@router.post("", response_model=BillingUser, status_code=201)
async def create_user(
    req: UserCreate,
    service: UserService = Depends(get_user_service),
    context: BillingContext = Depends(get_billing_context),
):
    try:
        return await service.create(req, created_by=context.user_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/login", response_model=LoginResult)
async def complete_login(
    req: LoginRequest,
    request: Request,
    service: UserService = Depends(get_user_service),
):
    """Second sign-in step: active-user check plus the TOTP code when MFA is on."""

    try:
        return await service.complete_login(
            req.email,
            req.mfa_code,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.get("/{user_id}", response_model=BillingUser)
async def get_user(user_id: str, service: UserService = Depends(get_user_service)):
    try:
        return await service.get(user_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.patch("/{user_id}", response_model=BillingUser)
async def update_user(
    user_id: str,
    req: UserUpdate,
    service: UserService = Depends(get_user_service),
):
    try:
        return await service.update(user_id, req)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{user_id}/deactivate", response_model=BillingUser)
async def deactivate_user(user_id: str, service: UserService = Depends(get_user_service)):
    try:
        return await service.deactivate(user_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.get("/{user_id}/logins", response_model=List[LoginAttempt])
async def login_history(user_id: str, service: UserService = Depends(get_user_service)):
    try:
        return await service.login_history(user_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{user_id}/mfa/enroll", response_model=MfaEnrollment)
async def begin_mfa_enrollment(user_id: str, service: UserService = Depends(get_user_service)):
    try:
        return await service.begin_mfa_enrollment(user_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{user_id}/mfa/confirm", response_model=BillingUser)
async def confirm_mfa(
    user_id: str,
    req: MfaCodeRequest,
    service: UserService = Depends(get_user_service),
):
    try:
        return await service.confirm_mfa(user_id, req.code)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{user_id}/mfa/verify", response_model=MfaVerification)
async def verify_mfa(
    user_id: str,
    req: MfaCodeRequest,
    service: UserService = Depends(get_user_service),
):
    try:
        return MfaVerification(verified=await service.verify_mfa(user_id, req.code))
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{user_id}/mfa/disable", response_model=BillingUser)
async def disable_mfa(
    user_id: str,
    req: MfaCodeRequest,
    service: UserService = Depends(get_user_service),
):
    try:
        return await service.disable_mfa(user_id, req.code)
    except ServiceError as exc:
        raise http_error(exc) from exc
