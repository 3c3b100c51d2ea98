import logging

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20


class PaymentGatewayError(Exception):
    """Raised when a gateway call fails or answers with an unusable payload."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self):
        return self.message


class GatewayClient:
    """Shared HTTP plumbing for the REST based gateways."""

    name = 'gateway'
    sandbox_url = ''
    live_url = ''

    def __init__(self, sandbox=False, timeout=DEFAULT_TIMEOUT, session=None):
        self.sandbox = sandbox is True
        self.timeout = timeout
        self.http = session or requests

    @property
    def base_url(self):
        return self.sandbox_url if self.sandbox else self.live_url

    def _request(self, method, path, **kwargs):
        url = path if path.startswith('http') else f'{self.base_url}{path}'
        kwargs.setdefault('timeout', self.timeout)
        try:
            resp = self.http.request(method, url, **kwargs)
        except requests.RequestException as e:
            logger.exception('[%s] %s %s failed', self.name, method, url)
            raise PaymentGatewayError(f'{self.name} request failed', str(e))
        return resp

    def _json(self, resp, error_message):
        try:
            return resp.json()
        except ValueError:
            logger.warning('[%s] non-JSON response (%s): %s', self.name, resp.status_code, resp.text[:300])
            raise PaymentGatewayError(error_message, resp.text[:300])
