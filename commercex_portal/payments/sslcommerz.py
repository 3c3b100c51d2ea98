"""SSLCommerz v4 hosted checkout and server-side validation."""
import logging

from .base import GatewayClient, PaymentGatewayError

logger = logging.getLogger(__name__)

VALID_STATUSES = {'VALID', 'VALIDATED'}

CUSTOMER_DEFAULTS = {
    'cus_name': 'Customer',
    'cus_email': 'no-reply@example.com',
    'cus_phone': '01700000000',
    'cus_add1': 'N/A',
    'cus_city': 'Dhaka',
    'cus_postcode': '1000',
    'cus_country': 'Bangladesh',
}


class SSLCommerzClient(GatewayClient):
    name = 'SSLCommerz'
    sandbox_url = 'https://sandbox.sslcommerz.com'
    live_url = 'https://securepay.sslcommerz.com'

    def __init__(self, store_id, store_password, sandbox=False, **kwargs):
        super().__init__(sandbox=sandbox, **kwargs)
        self.store_id = store_id
        self.store_password = store_password

    @classmethod
    def from_settings(cls, config, **kwargs):
        return cls(
            store_id=config.get('store_id'),
            store_password=config.get('store_password'),
            sandbox=config.get('sandbox'),
            **kwargs
        )

    @property
    def configured(self):
        return bool(self.store_id and self.store_password)

    def build_session_payload(self, order_id, amount, ipn_url, customer=None):
        customer = customer or {}
        payload = {
            'store_id': self.store_id,
            'store_passwd': self.store_password,
            'total_amount': str(amount),
            'currency': 'BDT',
            'tran_id': str(order_id),
            'success_url': ipn_url,
            'fail_url': ipn_url,
            'cancel_url': ipn_url,
            'ipn_url': ipn_url,
            'shipping_method': 'NO',
            'product_name': 'Order Items',
            'product_category': 'General',
            'product_profile': 'general',
        }
        for field, default in CUSTOMER_DEFAULTS.items():
            payload[field] = customer.get(field) or default
        return payload

    def create_session(self, order_id, amount, ipn_url, customer=None):
        payload = self.build_session_payload(order_id, amount, ipn_url, customer)
        resp = self._request('POST', '/gwprocess/v4/api.php', data=payload)
        if 'application/json' not in (resp.headers.get('content-type') or ''):
            logger.error('[SSLCommerz] non-JSON response: %s', resp.text[:500])
            raise PaymentGatewayError('Payment gateway returned invalid response')
        data = self._json(resp, 'Payment gateway returned invalid response')
        logger.info('[SSLCommerz] gateway response status=%s has_url=%s',
                    data.get('status'), bool(data.get('GatewayPageURL')))
        if data.get('status') != 'SUCCESS':
            raise PaymentGatewayError('Payment gateway error', data.get('failedreason') or data.get('status'))
        if not data.get('GatewayPageURL'):
            raise PaymentGatewayError('Payment gateway error', 'No redirect URL')
        return data['GatewayPageURL']

    def validate(self, val_id):
        """Server-to-server check of a VALID/VALIDATED IPN; returns True when confirmed."""
        resp = self._request(
            'GET', '/validator/api/validationserverAPI.php',
            params={
                'val_id': val_id,
                'store_id': self.store_id,
                'store_passwd': self.store_password,
                'format': 'json',
            }
        )
        data = self._json(resp, 'SSLCommerz validation failed')
        logger.info('[SSLCommerz IPN] validation response status=%s', data.get('status'))
        return data.get('status') in VALID_STATUSES
