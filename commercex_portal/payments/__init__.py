from .base import PaymentGatewayError
from .bkash import BkashClient
from .nagad import NagadClient, NagadSignatureError
from .paypal import PayPalClient
from .sslcommerz import SSLCommerzClient

GATEWAY_LABELS = {
    'bkash': 'bKash',
    'nagad': 'Nagad',
    'sslcommerz': 'SSLCommerz',
    'paypal': 'PayPal',
    'stripe': 'Stripe',
    'cod': 'Cash on Delivery',
    'manual_payment': 'Manual Payment',
}

__all__ = [
    'PaymentGatewayError',
    'BkashClient',
    'NagadClient',
    'NagadSignatureError',
    'PayPalClient',
    'SSLCommerzClient',
    'GATEWAY_LABELS',
]
