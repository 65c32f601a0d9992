from billing.schemas.documents import InvoiceDocument, InvoiceSnapshot, LineItemSnapshot, PartySnapshot

__all__ = [
    "InvoiceDocument",
    "InvoiceSnapshot",
    "LineItemSnapshot",
    "PartySnapshot",
]
