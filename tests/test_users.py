import asyncio
import os
import sys
import time
from urllib.parse import parse_qs, unquote, urlparse

import pyotp
import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.main import app
from app.schemas.user import UserCreate, UserRole, UserUpdate
from app.services.exceptions import ConflictError, NotFoundError, ValidationFailure
from app.services.mock_store import reset_mock_store
from app.services.users import UserService, clean_code, format_secret, verify_code

SEED_ADMIN = "USR-00001"


@pytest.fixture(autouse=True)
def _reset_store() -> None:
    reset_mock_store()
    yield
    reset_mock_store()


class MockLatencyClient:
    """Client stub that records simulate_latency calls."""

    def __init__(self) -> None:
        self.use_mock_data = True
        self.latency_called = False

    async def simulate_latency(self) -> None:
        self.latency_called = True


def _service() -> UserService:
    return UserService(MockLatencyClient())


def _enrolled(service: UserService, user_id: str = SEED_ADMIN) -> str:
    enrollment = asyncio.run(service.begin_mfa_enrollment(user_id))
    asyncio.run(service.confirm_mfa(user_id, pyotp.TOTP(enrollment.secret).now()))
    return enrollment.secret


def test_code_cleaning_and_secret_formatting() -> None:
    assert clean_code("123 456") == "123456"
    assert clean_code("123-456") == "123456"
    assert format_secret("JBSWY3DPEHPK3PXP") == "JBSW Y3DP EHPK 3PXP"


def test_verify_code_allows_one_step_of_drift() -> None:
    secret = pyotp.random_base32()
    totp = pyotp.TOTP(secret)
    now = int(time.time())

    assert verify_code(secret, totp.at(now - 30))
    assert not verify_code(secret, totp.at(now - 120))
    assert not verify_code(secret, "abcdef")


def test_create_user_defaults_to_admin_and_rejects_duplicates() -> None:
    service = _service()

    user = asyncio.run(
        service.create(
            UserCreate(email=" Ops@NexaSync.example ", full_name="Ops Lead"), created_by=SEED_ADMIN
        )
    )

    assert user.email == "ops@nexasync.example"
    assert user.role is UserRole.ADMIN
    assert user.is_active
    assert not user.mfa_enabled
    assert user.created_by == SEED_ADMIN
    with pytest.raises(ConflictError):
        asyncio.run(service.create(UserCreate(email="ops@nexasync.example", full_name="Someone Else")))


@pytest.mark.parametrize(
    "fields",
    [
        {"email": "not-an-email", "full_name": "Ops Lead"},
        {"email": "ops@nexasync.example", "full_name": "O"},
        {"email": "ops@nexasync.example", "full_name": "Ops Lead", "role": "owner"},
    ],
)
def test_user_create_validation(fields) -> None:
    with pytest.raises(ValidationError):
        UserCreate(**fields)


def test_update_and_deactivate() -> None:
    service = _service()

    promoted = asyncio.run(service.update(SEED_ADMIN, UserUpdate(full_name="Head of Billing")))
    deactivated = asyncio.run(service.deactivate(SEED_ADMIN))

    assert promoted.full_name == "Head of Billing"
    assert promoted.role is UserRole.SUPER_ADMIN
    assert not deactivated.is_active
    with pytest.raises(NotFoundError):
        asyncio.run(service.get("USR-99999"))


def test_enrollment_requires_confirmation() -> None:
    service = _service()

    enrollment = asyncio.run(service.begin_mfa_enrollment(SEED_ADMIN))

    uri = urlparse(enrollment.provisioning_uri)
    assert uri.scheme == "otpauth"
    assert parse_qs(uri.query)["issuer"] == ["NexaSync Billing"]
    assert unquote(uri.path).endswith("NexaSync Billing:admin@nexasync.example")
    assert enrollment.formatted_secret.replace(" ", "") == enrollment.secret
    assert len(enrollment.backup_codes) == 8
    assert all(len(code) == 8 and code.isalnum() for code in enrollment.backup_codes)
    assert not asyncio.run(service.get(SEED_ADMIN)).mfa_enabled

    with pytest.raises(ValidationFailure):
        asyncio.run(service.confirm_mfa(SEED_ADMIN, "000000"))

    code = pyotp.TOTP(enrollment.secret).now()
    confirmed = asyncio.run(service.confirm_mfa(SEED_ADMIN, f"{code[:3]} {code[3:]}"))

    assert confirmed.mfa_enabled
    with pytest.raises(ConflictError):
        asyncio.run(service.begin_mfa_enrollment(SEED_ADMIN))


def test_confirm_without_enrollment_is_rejected() -> None:
    with pytest.raises(ValidationFailure):
        asyncio.run(_service().confirm_mfa(SEED_ADMIN, "123456"))


def test_disable_requires_a_valid_code() -> None:
    service = _service()
    secret = _enrolled(service)

    with pytest.raises(ValidationFailure):
        asyncio.run(service.disable_mfa(SEED_ADMIN, "000000"))

    disabled = asyncio.run(service.disable_mfa(SEED_ADMIN, pyotp.TOTP(secret).now()))

    assert not disabled.mfa_enabled
    assert disabled.mfa_secret is None
    with pytest.raises(ValidationFailure):
        asyncio.run(service.verify_mfa(SEED_ADMIN, pyotp.TOTP(secret).now()))


def test_login_with_mfa_records_every_attempt() -> None:
    service = _service()
    secret = _enrolled(service)

    with pytest.raises(ValidationFailure):
        asyncio.run(service.complete_login("admin@nexasync.example"))
    with pytest.raises(ValidationFailure):
        asyncio.run(service.complete_login("admin@nexasync.example", "000000"))
    result = asyncio.run(
        service.complete_login(
            "Admin@NexaSync.example",
            pyotp.TOTP(secret).now(),
            ip_address="203.0.113.7",
            user_agent="pytest",
        )
    )

    assert result.mfa_verified
    assert result.user.last_login_at is not None
    history = asyncio.run(service.login_history(SEED_ADMIN))
    assert [attempt.login_successful for attempt in history] == [True, False, False]
    assert [attempt.mfa_verified for attempt in history] == [True, False, False]
    assert history[0].ip_address == "203.0.113.7"


def test_inactive_or_unknown_users_cannot_log_in() -> None:
    service = _service()
    asyncio.run(service.deactivate(SEED_ADMIN))

    with pytest.raises(ValidationFailure):
        asyncio.run(service.complete_login("admin@nexasync.example"))
    with pytest.raises(ValidationFailure):
        asyncio.run(service.complete_login("nobody@nexasync.example"))


def test_user_routes_never_expose_the_secret() -> None:
    with TestClient(app) as client:
        created = client.post(
            "/billing/users",
            json={"email": "ops@nexasync.example", "full_name": "Ops Lead"},
            headers={"X-User-Id": SEED_ADMIN},
        )
        assert created.status_code == 201
        user_id = created.json()["id"]
        assert created.json()["created_by"] == SEED_ADMIN

        enrollment = client.post(f"/billing/users/{user_id}/mfa/enroll").json()
        code = pyotp.TOTP(enrollment["secret"]).now()
        confirmed = client.post(f"/billing/users/{user_id}/mfa/confirm", json={"code": code})

        assert confirmed.status_code == 200
        assert confirmed.json()["mfa_enabled"] is True
        assert "mfa_secret" not in confirmed.json()
        assert "mfa_secret" not in client.get(f"/billing/users/{user_id}").json()

        verified = client.post(f"/billing/users/{user_id}/mfa/verify", json={"code": code})
        assert verified.json() == {"verified": True}

        login = client.post(
            "/billing/users/login", json={"email": "ops@nexasync.example", "mfa_code": code}
        )
        assert login.status_code == 200
        assert login.json()["mfa_verified"] is True

        rejected = client.post("/billing/users/login", json={"email": "ops@nexasync.example"})
        assert rejected.status_code == 400
        assert rejected.json()["detail"] == "Verification code required"

        history = client.get(f"/billing/users/{user_id}/logins").json()
        assert [attempt["login_successful"] for attempt in history] == [False, True]

        listing = client.get("/billing/users").json()
        assert listing["total"] == 2
        assert client.post("/billing/users", json={"email": "ops@nexasync.example", "full_name": "Dup"}).status_code == 409
        assert client.get("/billing/users/USR-99999").status_code == 404
