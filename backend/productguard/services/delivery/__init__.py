"""Notice delivery channels."""

from .mailer import ResendMailer, DeliveryError

__all__ = [
    "ResendMailer",
    "DeliveryError",
]
