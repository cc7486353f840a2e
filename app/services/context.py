from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.config import Settings


@dataclass(frozen=True)
class BillingContext:
    """Who is running a billing operation and with which configuration.

    Passed explicitly into aggregation and generation so neither reads the
    authenticated session from ambient state.
    """

    settings: Settings
    user_id: Optional[str] = None

    @property
    def currency(self) -> str:
        return self.settings.currency
