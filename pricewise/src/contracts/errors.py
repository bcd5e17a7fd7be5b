from __future__ import annotations


class PricewiseError(Exception):
    """Base class for pipeline errors."""


class AdapterUnavailable(PricewiseError):
    """A single store fetch failed or timed out."""

    def __init__(self, store: str, reason: str) -> None:
        super().__init__(f"Store adapter '{store}' unavailable: {reason}")
        self.store = store
        self.reason = reason


class StorageWriteFailed(PricewiseError):
    """A single write to the snapshot or alert tables failed."""


class StorageUnavailable(PricewiseError):
    """The price store cannot be reached at all; fatal for a refresh job."""


class InvalidAlertThreshold(PricewiseError):
    """A price alert whose target price is not a positive amount."""

    def __init__(self, alert_id: object, target_price: object) -> None:
        super().__init__(f"Alert {alert_id} has invalid target price {target_price!r}")
        self.alert_id = alert_id
        self.target_price = target_price


class DispatchFailed(PricewiseError):
    """Notification delivery failed on every channel."""


class InvalidRefreshRequest(PricewiseError):
    """The refresh batch is empty or contains malformed product ids."""
