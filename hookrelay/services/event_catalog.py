"""Catalog of event types tenants can subscribe to."""

TEST_EVENT_TYPE = "webhook.test"

WEBHOOK_EVENT_TYPES: dict[str, str] = {
    # Sales
    "order.created": "Sales order created",
    "order.updated": "Sales order updated",
    "order.cancelled": "Sales order cancelled",
    "quote.created": "Quote created",
    "quote.approved": "Quote approved",
    # Fiscal
    "invoice.created": "Invoice created",
    "invoice.authorized": "Invoice authorized",
    "invoice.cancelled": "Invoice cancelled",
    # Inventory
    "stock.movement": "Stock movement recorded",
    "stock.low": "Stock below minimum",
    # Purchasing
    "purchase_order.created": "Purchase order created",
    "purchase_order.approved": "Purchase order approved",
    "purchase_order.received": "Purchase order received",
    # HR / Admission
    "admission.status_changed": "Admission status changed",
    "admission.completed": "Admission completed",
    "employee.created": "Employee created",
    # Finance
    "payable.created": "Payable created",
    "payable.paid": "Payable paid",
    "receivable.created": "Receivable created",
    "receivable.received": "Receivable received",
    # CRM
    "lead.created": "Lead created",
    "lead.converted": "Lead converted",
    "opportunity.won": "Opportunity won",
    "opportunity.lost": "Opportunity lost",
    # Production
    "production_order.created": "Production order created",
    "production_order.completed": "Production order completed",
    # Maintenance
    "maintenance_order.created": "Maintenance order created",
    "maintenance_order.completed": "Maintenance order completed",
    # System
    TEST_EVENT_TYPE: "Test event",
}


def is_known_event_type(event_type: str) -> bool:
    return event_type in WEBHOOK_EVENT_TYPES


def list_event_types() -> list[dict[str, str]]:
    return [{"value": key, "label": label} for key, label in WEBHOOK_EVENT_TYPES.items()]
