import enum


class OrderStatus(str, enum.Enum):
    draft = "DRAFT"
    pending = "PENDING"
    approved = "APPROVED"
    delivered = "DELIVERED"
    cancelled = "CANCELLED"


class BillingStatus(str, enum.Enum):
    generated = "GENERATED"
    consumed = "CONSUMED"
    cancelled = "CANCELLED"


class MovementType(str, enum.Enum):
    consume = "CONSUME"
    reversal = "REVERSAL"


# Un pedido en brouillon ou annulé ne se facture pas
NON_BILLABLE_ORDER_STATUSES = {
    OrderStatus.draft,
    OrderStatus.cancelled,
}
