import os
import threading
from datetime import date
from decimal import Decimal

import pytest

from merenda.app.config import Settings
from merenda.app.db.models.core_types import BillingStatus, OrderStatus
from merenda.app.db.models.models_v1 import Billing
from merenda.services import billing as billing_module
from merenda.services.balances import BalanceService
from merenda.services.billing import BillingService
from merenda.services.errors import (
    DuplicateBillingError,
    InsufficientBalanceError,
    InvalidBillingStateError,
    InvalidOrderStateError,
    NoBillableItemsError,
    OrderNotFoundError,
)
from merenda.services.queries import BillingQueries

from conftest import TENANT_ID


@pytest.fixture
def service(sessions):
    return BillingService(sessions, settings=Settings(BILLING_NUMBER_PREFIX="FAT", BILLING_NUMBER_PADDING=6))


def test_preview_splits_items_by_repasse(service, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], 10)])

    preview = service.preview(TENANT_ID, order_id)

    assert preview.can_generate
    assert preview.alerts == []
    assert [m.name for m in preview.modalities] == ["A", "B"]
    [contract] = preview.contracts
    [item] = contract.items
    assert [(s.modality_name, s.quantity) for s in item.splits] == [("A", 6), ("B", 4)]
    assert item.value_original == Decimal("20.00")
    assert preview.summary.total_items == 1
    assert preview.summary.quantity_total == 10
    assert preview.summary.value_total == Decimal("20.00")


def test_preview_does_not_touch_balances(service, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], 10)])

    service.preview(TENANT_ID, order_id)

    for balance_id in two_modalities["balances"]:
        assert catalog.balance_state(balance_id) == (100, 0)


def test_preview_counts_shared_balance_once(service, catalog):
    """
    GIVEN deux lignes du même produit sur un saldo de 10
    THEN la seconde ne voit que ce qui reste après la première
    """
    a = catalog.modality("A", "1")
    cp = catalog.contract_product()
    catalog.balance(cp, a, 10)
    order_id = catalog.order([(cp, 8), (cp, 5)])

    preview = service.preview(TENANT_ID, order_id)

    assert preview.summary.total_items == 1
    assert len(preview.alerts) == 1
    assert "shortfall 3" in preview.alerts[0]


def test_fractional_order_quantity_is_rounded_once(service, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], "9.5")])

    preview = service.preview(TENANT_ID, order_id)

    [item] = preview.contracts[0].items
    assert item.quantity_original == 10
    assert sum(s.quantity for s in item.splits) == 10


def test_quantity_rounding_to_zero_is_an_alert(service, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], "0.4")])

    preview = service.preview(TENANT_ID, order_id)

    assert not preview.can_generate
    assert "rounds to zero" in preview.alerts[0]


def test_generate_persists_billing_and_items(service, sessions, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], 10)])

    result = service.generate(TENANT_ID, order_id, user_id=7, billing_date=date(2026, 3, 1))

    billing = BillingQueries(sessions).get_billing(TENANT_ID, result.billing.id)
    assert billing.number == "FAT2026000001"
    assert billing.status == BillingStatus.generated
    assert billing.created_by == 7
    assert billing.total_value == Decimal("20.00")
    assert [(i.modality.name, i.quantity_modality) for i in billing.items] == [("A", 6), ("B", 4)]
    assert [i.percentual_modality for i in billing.items] == [Decimal("60.0000"), Decimal("40.0000")]
    assert all(not i.consumption_registered for i in billing.items)
    assert sum(i.quantity_modality for i in billing.items) == 10

    # la génération ne débite pas les saldos
    for balance_id in two_modalities["balances"]:
        assert catalog.balance_state(balance_id) == (100, 0)


def test_billing_numbers_are_sequential_per_year(service, catalog, two_modalities):
    first = catalog.order([(two_modalities["cp"], 1)])
    second = catalog.order([(two_modalities["cp"], 1)])
    third = catalog.order([(two_modalities["cp"], 1)])

    n1 = service.generate(TENANT_ID, first, billing_date=date(2026, 5, 1)).billing.number
    n2 = service.generate(TENANT_ID, second, billing_date=date(2026, 5, 2)).billing.number
    n3 = service.generate(TENANT_ID, third, billing_date=date(2027, 1, 2)).billing.number

    assert (n1, n2, n3) == ("FAT2026000001", "FAT2026000002", "FAT2027000001")


def test_second_generation_for_same_order_is_rejected(service, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], 10)])
    first = service.generate(TENANT_ID, order_id)

    with pytest.raises(DuplicateBillingError) as exc:
        service.generate(TENANT_ID, order_id)

    assert exc.value.extra["billing_id"] == first.billing.id


def test_order_can_be_billed_again_after_cancellation(service, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], 10)])
    first = service.generate(TENANT_ID, order_id, billing_date=date(2026, 1, 10))
    service.cancel_billing(TENANT_ID, first.billing.id)

    second = service.generate(TENANT_ID, order_id, billing_date=date(2026, 1, 11))

    assert second.billing.id != first.billing.id
    # un numéro annulé n'est jamais réutilisé
    assert second.billing.number == "FAT2026000002"


def test_partial_generation_excludes_short_items(service, catalog):
    """
    GIVEN un item couvert et un item dont le besoin dépasse le saldo
    THEN le faturamento est créé avec le seul item couvert + une alerte
    """
    a = catalog.modality("A", "1")
    rice = catalog.contract_product(product="Arroz")
    beans = catalog.contract_product(product="Feijão")
    catalog.balance(rice, a, 50)
    catalog.balance(beans, a, 2)
    order_id = catalog.order([(rice, 10), (beans, 5)])

    result = service.generate(TENANT_ID, order_id)

    assert len(result.billing.items) == 1
    assert result.billing.items[0].quantity_modality == 10
    assert len(result.preview.alerts) == 1
    assert "Feijão" in result.preview.alerts[0]
    assert "shortfall 3" in result.preview.alerts[0]


def test_item_with_zero_repasse_only_is_excluded_not_fatal(service, catalog):
    """
    GIVEN Arroz n'a de saldo que sur A (repasse 0), Feijão est couvert par B
    THEN la prévia garde Feijão et signale Arroz
    """
    a = catalog.modality("A", "0")
    b = catalog.modality("B", "100")
    rice = catalog.contract_product(product="Arroz")
    beans = catalog.contract_product(product="Feijão")
    catalog.balance(rice, a, 100)
    catalog.balance(beans, b, 100)
    order_id = catalog.order([(rice, 10), (beans, 10)])

    preview = service.preview(TENANT_ID, order_id)

    assert preview.can_generate
    [item] = preview.contracts[0].items
    assert item.product_name == "Feijão"
    assert [(s.modality_id, s.quantity) for s in item.splits] == [(b, 10)]
    assert len(preview.alerts) == 1
    assert "Arroz" in preview.alerts[0]
    assert preview.summary.excluded_items == 1

    result = service.generate(TENANT_ID, order_id)
    assert [(i.modality_id, i.quantity_modality) for i in result.billing.items] == [(b, 10)]


def test_generation_revalidates_balances_once_locked(service, sessions, catalog, two_modalities, monkeypatch):
    """
    GIVEN un autre utilisateur consomme 97 sur le saldo A entre la prévia et le verrou
    THEN la génération échoue avec le manque réel et rien n'est écrit
    """
    a, _ = two_modalities["modalities"]
    ba, bb = two_modalities["balances"]
    order_id = catalog.order([(two_modalities["cp"], 10)])
    lock_balances = billing_module.lock_balances

    def lock_after_concurrent_consume(db, keys):
        BalanceService(sessions).consume(TENANT_ID, ba, 97)
        return lock_balances(db, keys)

    monkeypatch.setattr(billing_module, "lock_balances", lock_after_concurrent_consume)

    with pytest.raises(InsufficientBalanceError) as exc:
        service.generate(TENANT_ID, order_id)

    assert [(s["modality_id"], s["available"], s["required"], s["shortfall"]) for s in exc.value.shortfalls] == [
        (a, 3, 6, 3)
    ]
    assert BillingQueries(sessions).billings_for_order(TENANT_ID, order_id) == []
    assert catalog.balance_state(ba) == (100, 97)
    assert catalog.balance_state(bb) == (100, 0)


@pytest.mark.skipif(
    (os.getenv("TEST_DATABASE_URL") or "").startswith("postgresql"),
    reason="l'insertion concurrente attendrait le verrou du pedido sous Postgres",
)
def test_live_billing_index_rejects_a_billing_inserted_meanwhile(service, sessions, catalog, two_modalities, monkeypatch):
    """
    GIVEN un faturamento vivant apparaît pour le pedido après la recherche de doublon
    THEN l'index unique partiel fait échouer la génération en doublon
    """
    order_id = catalog.order([(two_modalities["cp"], 10)])
    build_preview = billing_module.build_preview

    def preview_after_concurrent_billing(db, *, tenant_id, order_id):
        with sessions.begin() as other:
            other.add(
                Billing(
                    tenant_id=tenant_id,
                    order_id=order_id,
                    number="FAT2026999999",
                    billing_date=date(2026, 1, 1),
                    status=BillingStatus.generated,
                    total_value=Decimal("0"),
                )
            )
        return build_preview(db, tenant_id=tenant_id, order_id=order_id)

    monkeypatch.setattr(billing_module, "build_preview", preview_after_concurrent_billing)

    with pytest.raises(DuplicateBillingError):
        service.generate(TENANT_ID, order_id)

    history = BillingQueries(sessions).billings_for_order(TENANT_ID, order_id)
    assert [(b.number, b.status) for b in history] == [("FAT2026999999", BillingStatus.generated)]


def test_generation_fails_when_no_item_is_billable(service, sessions, catalog):
    a = catalog.modality("A", "1")
    cp = catalog.contract_product()
    catalog.balance(cp, a, 2)
    order_id = catalog.order([(cp, 5)])

    with pytest.raises(NoBillableItemsError) as exc:
        service.generate(TENANT_ID, order_id)

    assert exc.value.alerts
    assert BillingQueries(sessions).billings_for_order(TENANT_ID, order_id) == []


@pytest.mark.parametrize("status", [OrderStatus.draft, OrderStatus.cancelled])
def test_non_billable_order_status(service, catalog, two_modalities, status):
    order_id = catalog.order([(two_modalities["cp"], 10)], status=status)

    with pytest.raises(InvalidOrderStateError):
        service.generate(TENANT_ID, order_id)


def test_unknown_order_and_foreign_tenant(service, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], 10)])

    with pytest.raises(OrderNotFoundError):
        service.preview(TENANT_ID, 999_999)
    with pytest.raises(OrderNotFoundError):
        service.generate(TENANT_ID + 1, order_id)


def test_cancel_twice_is_rejected(service, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], 10)])
    billing = service.generate(TENANT_ID, order_id).billing

    cancelled = service.cancel_billing(TENANT_ID, billing.id)
    assert cancelled.status == BillingStatus.cancelled

    with pytest.raises(InvalidBillingStateError):
        service.cancel_billing(TENANT_ID, billing.id)


@pytest.mark.skipif(
    not (os.getenv("TEST_DATABASE_URL") or "").startswith("postgresql"),
    reason="verrous FOR UPDATE réels : Postgres uniquement",
)
def test_concurrent_generation_creates_a_single_billing(service, sessions, catalog, two_modalities):
    order_id = catalog.order([(two_modalities["cp"], 10)])
    barrier = threading.Barrier(2)
    outcomes = []

    def worker():
        barrier.wait()
        try:
            outcomes.append(service.generate(TENANT_ID, order_id).billing.id)
        except DuplicateBillingError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    billings = [o for o in outcomes if isinstance(o, int)]
    errors = [o for o in outcomes if isinstance(o, DuplicateBillingError)]
    assert len(billings) == 1
    assert len(errors) == 1
    live = [
        b
        for b in BillingQueries(sessions).billings_for_order(TENANT_ID, order_id)
        if b.status != BillingStatus.cancelled
    ]
    assert [b.id for b in live] == billings
