class NotifyError(Exception):
    """Delivery failure recorded on the entry as ``failed`` with ``reason``."""

    reason = "notify_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRecipient(NotifyError):
    reason = "invalid_recipient"


class TransportUnavailable(NotifyError):
    reason = "transport_unavailable"


class DeliveryRejected(NotifyError):
    reason = "delivery_rejected"
