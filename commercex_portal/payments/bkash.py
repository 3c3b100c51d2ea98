"""bKash tokenized checkout client."""
import logging

from .base import GatewayClient, PaymentGatewayError

logger = logging.getLogger(__name__)


class BkashClient(GatewayClient):
    name = 'bKash'
    sandbox_url = 'https://tokenized.sandbox.bka.sh/v1.2.0-beta'
    live_url = 'https://tokenized.pay.bka.sh/v1.2.0-beta'

    def __init__(self, app_key, app_secret, username, password, sandbox=False, **kwargs):
        super().__init__(sandbox=sandbox, **kwargs)
        self.app_key = app_key
        self.app_secret = app_secret
        self.username = username
        self.password = password

    @classmethod
    def from_settings(cls, config, **kwargs):
        return cls(
            app_key=config.get('app_key'),
            app_secret=config.get('app_secret'),
            username=config.get('username'),
            password=config.get('password'),
            sandbox=config.get('sandbox'),
            **kwargs
        )

    @property
    def configured(self):
        return all([self.app_key, self.app_secret, self.username, self.password])

    def _headers(self, token=None):
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if token:
            headers['Authorization'] = token
            headers['X-APP-Key'] = self.app_key
        return headers

    def grant_token(self):
        headers = self._headers()
        headers['username'] = self.username
        headers['password'] = self.password
        resp = self._request(
            'POST', '/tokenized/checkout/token/grant',
            headers=headers,
            json={'app_key': self.app_key, 'app_secret': self.app_secret}
        )
        data = self._json(resp, 'Failed to get bKash token')
        token = data.get('id_token')
        if not token:
            logger.warning('[bKash] token grant rejected: %s', data.get('statusMessage') or data.get('msg'))
            raise PaymentGatewayError('Failed to get bKash token', data)
        return token

    def create_payment(self, order_id, amount, payer_reference, callback_url):
        token = self.grant_token()
        resp = self._request(
            'POST', '/tokenized/checkout/create',
            headers=self._headers(token),
            json={
                'mode': '0011',
                'payerReference': str(payer_reference),
                'callbackURL': callback_url,
                'amount': str(amount),
                'currency': 'BDT',
                'intent': 'sale',
                'merchantInvoiceNumber': str(order_id),
            }
        )
        data = self._json(resp, 'Failed to create bKash payment')
        if not data.get('bkashURL'):
            raise PaymentGatewayError('Failed to create bKash payment', data)
        return {'payment_id': data.get('paymentID'), 'gateway_url': data['bkashURL']}

    def execute_payment(self, payment_id):
        """Execute an approved payment; returns the raw execute response."""
        token = self.grant_token()
        resp = self._request(
            'POST', '/tokenized/checkout/execute',
            headers=self._headers(token),
            json={'paymentID': payment_id}
        )
        return self._json(resp, 'Failed to execute bKash payment')

    @staticmethod
    def is_completed(result):
        return result.get('statusCode') == '0000' and result.get('transactionStatus') == 'Completed'
