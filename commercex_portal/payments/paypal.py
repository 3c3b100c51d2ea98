"""PayPal Orders v2 client (create + capture)."""
import logging

from .base import GatewayClient, PaymentGatewayError

logger = logging.getLogger(__name__)


class PayPalClient(GatewayClient):
    name = 'PayPal'
    sandbox_url = 'https://api-m.sandbox.paypal.com'
    live_url = 'https://api-m.paypal.com'

    def __init__(self, client_id, client_secret, sandbox=False, **kwargs):
        super().__init__(sandbox=sandbox, **kwargs)
        self.client_id = client_id
        self.client_secret = client_secret

    @classmethod
    def from_settings(cls, config, **kwargs):
        return cls(
            client_id=config.get('client_id'),
            client_secret=config.get('client_secret'),
            sandbox=config.get('sandbox'),
            **kwargs
        )

    @property
    def configured(self):
        return bool(self.client_id and self.client_secret)

    def access_token(self):
        resp = self._request(
            'POST', '/v1/oauth2/token',
            auth=(self.client_id, self.client_secret),
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            data={'grant_type': 'client_credentials'}
        )
        data = self._json(resp, 'PayPal authentication failed')
        if not data.get('access_token'):
            logger.error('[PayPal] auth failed: %s', data.get('error_description') or data.get('error'))
            raise PaymentGatewayError('PayPal authentication failed', data)
        return data['access_token']

    def _auth_headers(self):
        return {
            'Authorization': f'Bearer {self.access_token()}',
            'Content-Type': 'application/json',
        }

    def create_order(self, reference_id, amount):
        resp = self._request(
            'POST', '/v2/checkout/orders',
            headers=self._auth_headers(),
            json={
                'intent': 'CAPTURE',
                'purchase_units': [{
                    'reference_id': str(reference_id),
                    'amount': {'currency_code': 'USD', 'value': f'{float(amount):.2f}'},
                }],
            }
        )
        data = self._json(resp, 'PayPal order creation failed')
        logger.info('[PayPal] create order response status=%s id=%s', data.get('status'), data.get('id'))
        if not data.get('id'):
            raise PaymentGatewayError('PayPal order creation failed', data)
        return data['id']

    def capture_order(self, paypal_order_id):
        """Capture an approved order; returns the PayPal status string."""
        resp = self._request(
            'POST', f'/v2/checkout/orders/{paypal_order_id}/capture',
            headers=self._auth_headers()
        )
        data = self._json(resp, 'PayPal capture failed')
        logger.info('[PayPal] capture response status=%s', data.get('status'))
        return data.get('status')
