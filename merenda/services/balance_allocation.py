"""
Répartition d'un item de pedido en respectant les saldos par modalidade.

Pipeline (par item) :
    filtre (initial > 0 ET disponible > 0)
    -> au moins un repasse > 0 parmi les retenues
    -> contrôle du total disponible
    -> renormalisation des % sur les modalidades retenues
    -> plus fort reste
    -> plafonnement au disponible + redistribution de l'excédent

Un item non couvert n'est PAS une erreur : il est exclu avec une alerte.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Hashable, Sequence, TypeVar

from merenda.services.allocation import allocate_quantity, compute_percentages
from merenda.services.errors import InternalAllocationError

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


@dataclass(frozen=True)
class BalanceSnapshot:
    """État d'un saldo (contract_product × modality) au moment du calcul."""

    balance_id: int
    modality_id: int
    name: str
    financial_code: str | None
    repasse: Decimal
    initial_quantity: int
    available_quantity: int

    # compute_percentages lit id / name / financial_code / repasse
    @property
    def id(self) -> int:
        return self.modality_id


@dataclass(frozen=True)
class ModalitySplit:
    balance_id: int
    modality_id: int
    modality_name: str
    modality_financial_code: str | None
    quantity: int
    percentual: Decimal
    available_quantity: int
    value: Decimal


@dataclass
class ItemAllocation:
    quantity: int
    splits: list[ModalitySplit] = field(default_factory=list)
    alert: str | None = None

    @property
    def excluded(self) -> bool:
        return self.alert is not None


def cap_and_redistribute(
    allocations: Sequence[tuple[K, int]],
    capacities: dict[K, int],
) -> list[tuple[K, int]]:
    """
    Plafonne chaque part à sa capacité, puis répartit l'excédent sur les
    parts qui ont encore de la marge (marge décroissante, ordre stable).

    Un excédent impossible à placer est un bug en amont : on lève.
    """
    final = {key: qty for key, qty in allocations}
    excess = 0
    for key, qty in allocations:
        cap = capacities[key]
        if qty > cap:
            excess += qty - cap
            final[key] = cap

    if excess:
        spare = sorted(
            (key for key, _ in allocations if capacities[key] - final[key] > 0),
            key=lambda k: capacities[k] - final[k],
            reverse=True,
        )
        for key in spare:
            if excess == 0:
                break
            take = min(excess, capacities[key] - final[key])
            final[key] += take
            excess -= take

    if excess:
        logger.error("unplaced excess=%s allocations=%s capacities=%s", excess, allocations, capacities)
        raise InternalAllocationError(f"Could not redistribute {excess} unit(s) within available balances")

    return [(key, final[key]) for key, _ in allocations]


def allocate_with_balances(
    quantity: int,
    unit_price: Decimal,
    balances: Sequence[BalanceSnapshot],
    *,
    label: str = "item",
) -> ItemAllocation:
    """
    Répartit ``quantity`` (déjà arrondie) entre les saldos fournis.

    ``label`` sert uniquement au texte des alertes.
    """
    eligible = [b for b in balances if b.initial_quantity > 0 and b.available_quantity > 0]
    if not eligible:
        return ItemAllocation(
            quantity=quantity,
            alert=f"{label}: no modality has balance available",
        )

    # repasse 0 partout : pas de poids, l'item sort comme un item sans saldo
    if not any(b.repasse > 0 for b in eligible):
        return ItemAllocation(
            quantity=quantity,
            alert=f"{label}: no modality with available balance has a positive repasse",
        )

    total_available = sum(b.available_quantity for b in eligible)
    if total_available < quantity:
        shortfall = quantity - total_available
        return ItemAllocation(
            quantity=quantity,
            alert=(
                f"{label}: insufficient balance, required {quantity}, "
                f"available {total_available}, shortfall {shortfall}"
            ),
        )

    weights = compute_percentages(eligible)
    by_modality = {b.modality_id: b for b in eligible}
    percentuals = {w.modality_id: w.percentual for w in weights}

    raw = allocate_quantity(quantity, [(w.modality_id, w.percentual) for w in weights])
    capped = cap_and_redistribute(raw, {b.modality_id: b.available_quantity for b in eligible})

    if sum(qty for _, qty in capped) != quantity:
        raise InternalAllocationError(f"{label}: split does not add up to {quantity}")

    splits = []
    for modality_id, qty in capped:
        b = by_modality[modality_id]
        splits.append(
            ModalitySplit(
                balance_id=b.balance_id,
                modality_id=modality_id,
                modality_name=b.name,
                modality_financial_code=b.financial_code,
                quantity=qty,
                percentual=percentuals[modality_id],
                available_quantity=b.available_quantity,
                value=Decimal(qty) * unit_price,
            )
        )
    return ItemAllocation(quantity=quantity, splits=splits)
