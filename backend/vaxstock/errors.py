# Overview: Base exceptions for the stock ledger core.

class StockLedgerError(Exception):
    """
    Base class for typed failures raised by the service layer.

    Each service defines its own subclasses next to the code that raises
    them. http_status is the response code routes use for the class.
    """
    http_status = 400


class NotFoundError(StockLedgerError):
    """Raised when a referenced row does not exist."""
    http_status = 404
