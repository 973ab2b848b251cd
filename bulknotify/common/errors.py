"""Error taxonomy shared by the delivery service and its HTTP surface."""


class BulkNotifyError(RuntimeError):
    """Base class for errors surfaced to callers."""

    status_code = 500


class InvalidRequest(BulkNotifyError):
    """Malformed input, rejected before any side effects."""

    status_code = 400


class Unauthorized(BulkNotifyError):
    """Caller did not present the internal service credential."""

    status_code = 401


class NotFound(BulkNotifyError):
    """Requested batch does not exist."""

    status_code = 404


class StoreError(BulkNotifyError):
    """Underlying persistence failure; the original error is chained."""

    status_code = 500


class DeliveryFailure(BulkNotifyError):
    """One queue item could not be delivered. Retried up to `max_attempts`."""

    def __init__(self, queue_item_id: str, reason: str) -> None:
        self.queue_item_id = queue_item_id
        self.reason = reason
        super().__init__(f"delivery failed queue_item_id={queue_item_id} reason={reason}")
