"""
Retrait d'une modalidade d'un faturamento déjà généré.

La quantité retirée est redistribuée entre les modalidades sœurs du même
item de pedido, au prorata du repasse, avec le même plus fort reste que la
génération et dans la limite de leurs saldos (verrouillés avant écriture).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from merenda.app.db.models.core_types import BillingStatus
from merenda.app.db.models.models_v1 import Billing, BillingItem, Modality
from merenda.services.allocation import allocate_quantity, compute_percentages
from merenda.services.balance_allocation import cap_and_redistribute
from merenda.services.consumption import (
    debit,
    item_key,
    lock_balances,
    lock_billing,
    lock_billing_items,
    reverse_locked_item,
    sync_billing_status,
)
from merenda.services.errors import (
    InsufficientBalanceError,
    InvalidBillingStateError,
    ModalityNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass
class RedistributedShare:
    billing_item_id: int
    modality_id: int
    added_quantity: int


@dataclass
class RemovalResult:
    billing: Billing
    removed_items: int
    removed_quantity: int
    redistributed: list[RedistributedShare] = field(default_factory=list)
    # quantité sans modalidade sœur : elle sort du faturamento
    dropped_quantity: int = 0


def _percentual(item: BillingItem) -> Decimal:
    if not item.quantity_original:
        return Decimal("0")
    pct = Decimal(item.quantity_modality) / Decimal(item.quantity_original) * Decimal("100")
    return pct.quantize(Decimal("0.0001"))


class ModalityRemovalService:
    def __init__(self, sessions: sessionmaker) -> None:
        self._sessions = sessions

    def remove_modality_items(
        self,
        tenant_id: int,
        billing_id: int,
        contract_id: int,
        modality_id: int,
        *,
        user_id: int | None = None,
    ) -> RemovalResult:
        with self._sessions.begin() as db:
            billing = lock_billing(db, tenant_id=tenant_id, billing_id=billing_id)
            if billing.status == BillingStatus.cancelled:
                raise InvalidBillingStateError(f"Billing {billing.number} is cancelled")

            items = lock_billing_items(db, billing.id)
            removed = [i for i in items if i.contract_id == contract_id and i.modality_id == modality_id]
            if not removed:
                raise ModalityNotFoundError(
                    f"Billing {billing.number} has no items for contract {contract_id} and modality {modality_id}"
                )
            removed_ids = {i.id for i in removed}
            kept = [i for i in items if i.id not in removed_ids]

            removed_by_order_item: dict[int, list[BillingItem]] = defaultdict(list)
            for item in removed:
                removed_by_order_item[item.order_item_id].append(item)
            siblings_by_order_item: dict[int, list[BillingItem]] = defaultdict(list)
            for item in kept:
                if item.order_item_id in removed_by_order_item:
                    siblings_by_order_item[item.order_item_id].append(item)

            # ---------- VERROUS (avant toute écriture) ----------
            keys = {item_key(i) for i in removed if i.consumption_registered}
            keys |= {item_key(s) for group in siblings_by_order_item.values() for s in group}
            balances = lock_balances(db, keys)

            # ---------- ESTORNO des items retirés ----------
            for item in removed:
                if item.consumption_registered:
                    reverse_locked_item(
                        db, billing, item, balances[item_key(item)], user_id=user_id, log_reversal=True
                    )

            # capacité restante par saldo : disponible moins ce que ce
            # faturamento réserve déjà sans l'avoir consommé
            remaining: dict[tuple[int, int, int], int] = {
                key: int(balance.available_quantity) for key, balance in balances.items()
            }
            for item in kept:
                key = item_key(item)
                if key in remaining and not item.consumption_registered:
                    remaining[key] -= item.quantity_modality

            modalities = {
                m.id: m
                for m in db.execute(
                    select(Modality).where(Modality.id.in_(sorted({s.modality_id for s in kept})))
                ).scalars()
            }

            result = RemovalResult(
                billing=billing,
                removed_items=len(removed),
                removed_quantity=sum(i.quantity_modality for i in removed),
            )

            # ---------- REDISTRIBUTION ----------
            for order_item_id, group in removed_by_order_item.items():
                quantity = sum(i.quantity_modality for i in group)
                siblings = siblings_by_order_item.get(order_item_id, [])
                if not siblings:
                    logger.warning(
                        "billing=%s order_item=%s: no sibling modality, %s unit(s) leave the billing",
                        billing.number, order_item_id, quantity,
                    )
                    result.dropped_quantity += quantity
                    continue

                weights = compute_percentages([modalities[s.modality_id] for s in siblings])
                raw = allocate_quantity(quantity, [(s.id, w.percentual) for s, w in zip(siblings, weights)])
                capacities = {s.id: max(0, remaining[item_key(s)]) for s in siblings}
                if sum(capacities.values()) < quantity:
                    raise InsufficientBalanceError(
                        f"Sibling modalities cannot absorb {quantity} unit(s) for order item {order_item_id}",
                        shortfalls=[
                            {
                                "order_item_id": order_item_id,
                                "required": quantity,
                                "available": sum(capacities.values()),
                                "shortfall": quantity - sum(capacities.values()),
                            }
                        ],
                    )
                final = cap_and_redistribute(raw, capacities)

                by_id = {s.id: s for s in siblings}
                for sibling_id, added in final:
                    if added <= 0:
                        continue
                    sibling = by_id[sibling_id]
                    key = item_key(sibling)
                    if remaining[key] < added:
                        raise InsufficientBalanceError(
                            f"Balance for modality {sibling.modality_id} cannot absorb {added} unit(s)",
                            shortfalls=[{"billing_item_id": sibling.id, "required": added, "available": remaining[key]}],
                        )
                    remaining[key] -= added

                    sibling.quantity_modality += added
                    sibling.total_value = Decimal(sibling.quantity_modality) * sibling.unit_price
                    sibling.percentual_modality = _percentual(sibling)

                    if sibling.consumption_registered:
                        debit(
                            db,
                            balances[key],
                            added,
                            note=f"Redistribution billing {billing.number} item {sibling.id}",
                            user_id=user_id,
                            billing_item_id=sibling.id,
                        )
                    result.redistributed.append(
                        RedistributedShare(
                            billing_item_id=sibling.id,
                            modality_id=sibling.modality_id,
                            added_quantity=added,
                        )
                    )

            # mouvements écrits avant la suppression des items qu'ils référencent
            db.flush()

            for item in removed:
                billing.items.remove(item)
            billing.total_value = sum((i.total_value for i in billing.items), Decimal("0"))
            sync_billing_status(billing, billing.items)

            logger.info(
                "modality removed tenant=%s billing=%s contract=%s modality=%s qty=%s redistributed=%s dropped=%s",
                tenant_id, billing.number, contract_id, modality_id,
                result.removed_quantity,
                sum(r.added_quantity for r in result.redistributed),
                result.dropped_quantity,
            )
            return result
