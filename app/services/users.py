"""Billing admin users and their TOTP second factor.

Password authentication belongs to the managed auth provider; this module
owns the user directory, MFA enrollment and the login audit trail.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import pyotp

from app.clients.backend import BackendClient
from app.schemas.user import (
    BillingUser,
    LoginAttempt,
    LoginResult,
    MfaEnrollment,
    UserCreate,
    UserUpdate,
)
from app.services.exceptions import (
    ConflictError,
    DownstreamServiceError,
    NotFoundError,
    ValidationFailure,
)
from app.services.mock_store import LoginHistoryRepository, UserRepository, get_mock_store

logger = logging.getLogger(__name__)

USERS_TABLE = "billing_users"
LOGIN_HISTORY_TABLE = "login_history"

BACKUP_CODE_COUNT = 8
BACKUP_CODE_LENGTH = 8
_BACKUP_ALPHABET = string.ascii_uppercase + string.digits
_CODE_SEPARATORS = re.compile(r"[\s-]")


def clean_code(code: str) -> str:
    return _CODE_SEPARATORS.sub("", code or "")


def format_secret(secret: str) -> str:
    """Group a base32 secret in blocks of four for manual entry."""

    return " ".join(secret[index:index + 4] for index in range(0, len(secret), 4))


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    return [
        "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        for _ in range(count)
    ]


def verify_code(secret: str, code: str) -> bool:
    """Check a TOTP code, allowing one 30 second step of clock drift either way."""

    cleaned = clean_code(code)
    if not cleaned.isdigit():
        return False
    return pyotp.TOTP(secret).verify(cleaned, valid_window=1)


def _to_row(fields: Mapping[str, Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        row[key] = value
    return row


class UserService:
    def __init__(
        self,
        client: BackendClient,
        *,
        issuer: str = "NexaSync Billing",
        users: UserRepository | None = None,
        logins: LoginHistoryRepository | None = None,
    ) -> None:
        self._client = client
        self._issuer = issuer
        self._users = users
        self._logins = logins
        if self._client.use_mock_data:
            store = get_mock_store()
            self._users = users or store.users
            self._logins = logins or store.logins

    def _mock_users(self) -> UserRepository:
        if not self._users:
            raise RuntimeError("Mock user repository not configured")
        return self._users

    def _mock_logins(self) -> LoginHistoryRepository:
        if not self._logins:
            raise RuntimeError("Mock login history repository not configured")
        return self._logins

    async def list(self) -> List[BillingUser]:
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            users = await self._mock_users().list()
        else:
            rows = await self._client.select(USERS_TABLE, order="created_at.asc")
            users = [BillingUser.model_validate(row) for row in rows]
        return sorted(users, key=lambda user: user.email)

    async def get(self, user_id: str) -> BillingUser:
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            user = await self._mock_users().get(user_id)
        else:
            rows = await self._client.select(USERS_TABLE, filters={"id": f"eq.{user_id}"})
            user = BillingUser.model_validate(rows[0]) if rows else None
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def find_by_email(self, email: str) -> Optional[BillingUser]:
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_users().find_by_email(email)
        rows = await self._client.select(
            USERS_TABLE, filters={"email": f"eq.{email.strip().lower()}"}
        )
        return BillingUser.model_validate(rows[0]) if rows else None

    async def create(self, request: UserCreate, *, created_by: Optional[str] = None) -> BillingUser:
        fields: Dict[str, Any] = {**request.model_dump(), "created_by": created_by}
        logger.info("Creating %s user %s", request.role.value, request.email)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_users().create(fields)

        try:
            row = await self._client.insert(USERS_TABLE, _to_row(fields))
        except DownstreamServiceError as exc:
            if exc.status_code == 409:
                raise ConflictError(
                    f"A user with email {request.email} already exists", cause=exc
                ) from exc
            raise
        return BillingUser.model_validate(row)

    async def update(self, user_id: str, request: UserUpdate) -> BillingUser:
        return await self._write(user_id, request.model_dump(exclude_unset=True))

    async def deactivate(self, user_id: str) -> BillingUser:
        logger.info("Deactivating user %s", user_id)
        return await self._write(user_id, {"is_active": False})

    async def _write(self, user_id: str, fields: Dict[str, Any]) -> BillingUser:
        if not fields:
            return await self.get(user_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_users().update(user_id, fields)

        row = await self._client.update(USERS_TABLE, user_id, _to_row(fields))
        if row is None:
            raise NotFoundError(f"User {user_id} not found")
        return BillingUser.model_validate(row)

    async def begin_mfa_enrollment(self, user_id: str) -> MfaEnrollment:
        """Store a fresh pending secret; MFA stays off until a code is confirmed."""

        user = await self.get(user_id)
        if user.mfa_enabled:
            raise ConflictError(f"MFA is already enabled for {user.email}")
        secret = pyotp.random_base32()
        await self._write(user_id, {"mfa_secret": secret})
        logger.info("Started MFA enrollment for %s", user.email)
        return MfaEnrollment(
            secret=secret,
            formatted_secret=format_secret(secret),
            provisioning_uri=pyotp.TOTP(secret).provisioning_uri(
                name=user.email, issuer_name=self._issuer
            ),
            backup_codes=generate_backup_codes(),
        )

    async def confirm_mfa(self, user_id: str, code: str) -> BillingUser:
        user = await self.get(user_id)
        if not user.mfa_secret:
            raise ValidationFailure("Start MFA enrollment before confirming a code")
        if not verify_code(user.mfa_secret, code):
            raise ValidationFailure("Invalid verification code")
        logger.info("MFA enabled for %s", user.email)
        return await self._write(user_id, {"mfa_enabled": True})

    async def verify_mfa(self, user_id: str, code: str) -> bool:
        user = await self.get(user_id)
        if not user.mfa_enabled or not user.mfa_secret:
            raise ValidationFailure(f"MFA is not enabled for {user.email}")
        return verify_code(user.mfa_secret, code)

    async def disable_mfa(self, user_id: str, code: str) -> BillingUser:
        if not await self.verify_mfa(user_id, code):
            raise ValidationFailure("Invalid verification code")
        logger.info("MFA disabled for user %s", user_id)
        return await self._write(user_id, {"mfa_enabled": False, "mfa_secret": None})

    async def complete_login(
        self,
        email: str,
        mfa_code: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Second step of sign-in, after the auth provider accepted the password.

        Every attempt is written to the login history, including rejected ones.
        """

        user = await self.find_by_email(email)
        mfa_verified: Optional[bool] = None
        failure: Optional[str] = None
        if user is None or not user.is_active:
            failure = "User is not authorized for billing admin"
        elif user.mfa_enabled:
            mfa_verified = bool(mfa_code) and verify_code(user.mfa_secret or "", mfa_code or "")
            if not mfa_verified:
                failure = "Invalid verification code" if mfa_code else "Verification code required"

        await self.record_login(
            email=email.strip().lower(),
            billing_user_id=user.id if user else None,
            login_successful=failure is None,
            mfa_verified=mfa_verified,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if failure is not None:
            logger.warning("Login rejected for %s: %s", email, failure)
            raise ValidationFailure(failure)

        user = await self._write(user.id, {"last_login_at": datetime.now(timezone.utc)})
        return LoginResult(user=user, mfa_verified=bool(mfa_verified))

    async def record_login(self, **fields: Any) -> LoginAttempt:
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock_logins().insert(fields)
        row = await self._client.insert(LOGIN_HISTORY_TABLE, _to_row(fields))
        return LoginAttempt.model_validate(row)

    async def login_history(self, user_id: str) -> List[LoginAttempt]:
        await self.get(user_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            attempts = await self._mock_logins().list(billing_user_id=user_id)
        else:
            rows = await self._client.select(
                LOGIN_HISTORY_TABLE, filters={"billing_user_id": f"eq.{user_id}"}
            )
            attempts = [LoginAttempt.model_validate(row) for row in rows]
        return sorted(
            attempts,
            key=lambda attempt: (
                attempt.created_at or datetime.min.replace(tzinfo=timezone.utc),
                attempt.id,
            ),
            reverse=True,
        )
