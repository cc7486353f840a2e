# app/health.py
from fastapi import APIRouter, Depends

from app.config import Settings, get_settings

router = APIRouter()


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/health/providers")
def provider_health(settings: Settings = Depends(get_settings)):
    """Which collaborators have credentials; secrets are never echoed."""
    return {
        "mock_data": settings.use_mock_data,
        "backend": settings.backend.configured,
        "twilio": settings.twilio.configured,
        "retell": settings.retell.configured,
        "stripe": settings.stripe.configured,
        "stripe_test_mode": settings.stripe.test_mode,
    }
