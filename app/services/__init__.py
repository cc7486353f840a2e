"""Service package public API definitions.

Service implementations import ``app.clients`` which in turn imports
``app.services.exceptions``; importing them eagerly here would create a
circular import during application start up. They are therefore resolved
lazily on first attribute access.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

__all__ = [
    "BatchPreviewBuilder",
    "CostAggregator",
    "CustomerService",
    "InvoiceGenerationOrchestrator",
    "InvoiceLedgerService",
    "UserService",
]

_SERVICE_MODULES = {
    "BatchPreviewBuilder": "previews",
    "CostAggregator": "costs",
    "CustomerService": "customers",
    "InvoiceGenerationOrchestrator": "generation",
    "InvoiceLedgerService": "invoice",
    "UserService": "users",
}


def __getattr__(name: str) -> Any:
    if name not in _SERVICE_MODULES:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module = import_module(f".{_SERVICE_MODULES[name]}", __name__)
    attr = getattr(module, name)
    globals()[name] = attr
    return attr


if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .costs import CostAggregator as CostAggregator
    from .customers import CustomerService as CustomerService
    from .generation import InvoiceGenerationOrchestrator as InvoiceGenerationOrchestrator
    from .invoice import InvoiceLedgerService as InvoiceLedgerService
    from .previews import BatchPreviewBuilder as BatchPreviewBuilder
    from .users import UserService as UserService
