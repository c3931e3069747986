"""Notification delivery exceptions."""

from __future__ import annotations


class DeliveryError(Exception):
    """Base exception for a failed notification delivery.

    Not retried and does not disable the target unless it is one of the
    subclasses below.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientDeliveryError(DeliveryError):
    """Network failure, timeout, HTTP 429 or 5xx. Worth retrying."""


class PermanentDeliveryError(DeliveryError):
    """The target rejected the notification outright (4xx, bad recipient).

    The dispatcher disables the offending channel.
    """


def error_for_status(status: int, detail: str = "") -> DeliveryError:
    """Map a non-success HTTP status to the matching delivery error."""
    message = f"HTTP {status}"
    if detail:
        message = f"{message}: {detail[:200]}"
    if status == 429 or status >= 500:
        return TransientDeliveryError(message, status)
    if 400 <= status < 500:
        return PermanentDeliveryError(message, status)
    return DeliveryError(message, status)


def is_transient_delivery_error(exc: BaseException) -> bool:
    return isinstance(exc, (TransientDeliveryError, TimeoutError))
