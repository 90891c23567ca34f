"""
Erreurs métier du moteur de faturamento.

Chaque erreur métier annule la transaction englobante (rollback complet).
La couche HTTP les traduit via ``status_code`` / ``code`` ; les services
ne lèvent jamais d'HTTPException.
"""

from __future__ import annotations

from typing import Any


class BillingError(Exception):
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.extra}


# ---------- 404 ----------
class OrderNotFoundError(BillingError):
    status_code = 404
    code = "order_not_found"


class BillingNotFoundError(BillingError):
    status_code = 404
    code = "billing_not_found"


class BillingItemNotFoundError(BillingError):
    status_code = 404
    code = "billing_item_not_found"


class BalanceNotFoundError(BillingError):
    status_code = 404
    code = "balance_not_found"


class ModalityNotFoundError(BillingError):
    status_code = 404
    code = "modality_not_found"


# ---------- 409 ----------
class DuplicateBillingError(BillingError):
    status_code = 409
    code = "duplicate_billing"


class AlreadyConsumedError(BillingError):
    status_code = 409
    code = "already_consumed"


class NotRegisteredError(BillingError):
    status_code = 409
    code = "consumption_not_registered"


class InsufficientBalanceError(BillingError):
    """``shortfalls`` : une entrée par saldo / item en défaut."""

    status_code = 409
    code = "insufficient_balance"

    def __init__(self, message: str, shortfalls: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, shortfalls=shortfalls or [])
        self.shortfalls = shortfalls or []


# ---------- 400 / 422 ----------
class InvalidOrderStateError(BillingError):
    code = "invalid_order_state"


class InvalidBillingStateError(BillingError):
    code = "invalid_billing_state"


class InvalidQuantityError(BillingError):
    status_code = 422
    code = "invalid_quantity"


class ConfigurationError(BillingError):
    status_code = 422
    code = "modality_configuration"


class NoBillableItemsError(BillingError):
    status_code = 422
    code = "no_billable_items"

    def __init__(self, message: str, alerts: list[str]) -> None:
        super().__init__(message, alerts=alerts)
        self.alerts = alerts


# ---------- FATAL ----------
class InternalAllocationError(Exception):
    """
    Invariant de répartition violé (somme ou redistribution).
    Bug de logique : jamais avalé, remonte en 500.
    """
