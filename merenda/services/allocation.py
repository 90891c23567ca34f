"""
Répartition proportionnelle d'une quantité entière entre modalidades.

Deux briques pures, sans accès DB :

- ``compute_percentages`` : poids (%) de chaque modalidade à partir du repasse
- ``allocate_quantity``   : méthode du plus fort reste, somme exacte garantie

Règle :
    Σ allocate_quantity(Q, pcts) == Q   (toujours, sinon InternalAllocationError)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, localcontext
from typing import Hashable, Iterable, Protocol, Sequence, TypeVar

from merenda.services.errors import ConfigurationError, InternalAllocationError

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)

HUNDRED = Decimal("100")
# tolérance sur Σ% (les poids 1/3 ne tombent jamais pile sur 100)
_PERCENT_TOLERANCE = Decimal("0.000001")


class WeightedModality(Protocol):
    id: int
    name: str
    financial_code: str | None
    repasse: Decimal


@dataclass(frozen=True)
class ModalityWeight:
    modality_id: int
    name: str
    financial_code: str | None
    repasse: Decimal
    percentual: Decimal


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def round_quantity(quantity) -> int:
    """Arrondi à l'entier le plus proche (0.5 -> haut), une seule fois en amont."""
    return int(D(quantity).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_percentages(modalities: Iterable[WeightedModality]) -> list[ModalityWeight]:
    """
    percentual_i = repasse_i / Σrepasse * 100

    L'ordre d'entrée est conservé (il sert de départage dans allocate_quantity).
    """
    modalities = list(modalities)
    if not modalities:
        raise ConfigurationError("No active modality found")

    repasses = [D(m.repasse) for m in modalities]
    if any(r < 0 for r in repasses):
        raise ConfigurationError("Modality repasse must not be negative")

    total = sum(repasses, Decimal("0"))
    if total <= 0:
        raise ConfigurationError("Sum of modality repasse values must be greater than zero")

    with localcontext() as ctx:
        ctx.prec = 34
        return [
            ModalityWeight(
                modality_id=m.id,
                name=m.name,
                financial_code=m.financial_code,
                repasse=r,
                percentual=r / total * HUNDRED,
            )
            for m, r in zip(modalities, repasses)
        ]


def allocate_quantity(total: int, weights: Sequence[tuple[K, Decimal]]) -> list[tuple[K, int]]:
    """
    Divise ``total`` entre les clés de ``weights`` (pourcentages ~100).

    1. base_i = floor(Q * pct_i / 100), resto_i = partie fractionnaire
    2. deficit = Q - Σbase_i
    3. +1 aux ``deficit`` plus grands restes (tri stable : à égalité,
       l'ordre d'entrée l'emporte)

    Le résultat garde l'ordre de ``weights``.
    """
    if isinstance(total, bool) or int(total) != total:
        raise ValueError(f"total must be an integer, got {total!r}")
    total = int(total)
    if total < 0:
        raise ValueError(f"total must be >= 0, got {total}")
    if not weights:
        raise ValueError("At least one modality is required")

    with localcontext() as ctx:
        ctx.prec = 34

        pct_sum = sum((D(p) for _, p in weights), Decimal("0"))
        if abs(pct_sum - HUNDRED) > _PERCENT_TOLERANCE:
            raise InternalAllocationError(f"Percentages must sum to 100, got {pct_sum}")

        bases: list[int] = []
        restos: list[Decimal] = []
        for _, pct in weights:
            exact = D(total) * D(pct) / HUNDRED
            base = exact.to_integral_value(rounding=ROUND_FLOOR)
            bases.append(int(base))
            restos.append(exact - base)

    deficit = total - sum(bases)
    if deficit < 0 or deficit > len(weights):
        raise InternalAllocationError(
            f"Allocation deficit {deficit} out of range for {len(weights)} buckets (total={total})"
        )

    # sorted() est stable, y compris avec reverse=True
    order = sorted(range(len(weights)), key=lambda i: restos[i], reverse=True)
    final = list(bases)
    for i in order[:deficit]:
        final[i] += 1

    if sum(final) != total:
        logger.error("allocation sum mismatch total=%s final=%s", total, final)
        raise InternalAllocationError(f"Allocation sum {sum(final)} differs from total {total}")

    return [(key, qty) for (key, _), qty in zip(weights, final)]
