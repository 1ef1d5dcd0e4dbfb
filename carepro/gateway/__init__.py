# Payment gateway package

from carepro.core.settings import settings
from .base import ChargeResult, PaymentGateway, PaymentLinkRequest, TransactionVerification
from .mock import MockGateway

_gateway = None


def get_gateway() -> PaymentGateway:
    """Get the configured gateway instance."""
    global _gateway
    if _gateway is None:
        if settings.gateway_provider.lower() == "flutterwave":
            from .flutterwave import FlutterwaveGateway
            _gateway = FlutterwaveGateway()
        else:
            _gateway = MockGateway()
    return _gateway
