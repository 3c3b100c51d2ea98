import json
from unittest.mock import MagicMock

import pytest
import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from commercex_portal.payments import (
    BkashClient,
    PayPalClient,
    PaymentGatewayError,
    SSLCommerzClient,
    NagadSignatureError,
)
from commercex_portal.payments import nagad, stripe_checkout


def response(payload, content_type='application/json'):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.headers = {'content-type': content_type}
    resp.status_code = 200
    resp.text = json.dumps(payload)
    return resp


def bkash_client(session, sandbox=True):
    return BkashClient('key', 'secret', 'user', 'pass', sandbox=sandbox, session=session)


def test_sandbox_flag_must_be_true():
    assert BkashClient.from_settings({'sandbox': 'true'}).base_url == BkashClient.live_url
    assert BkashClient.from_settings({'sandbox': True}).base_url == BkashClient.sandbox_url


def test_bkash_create_payment_grants_token_first():
    session = MagicMock()
    session.request.side_effect = [
        response({'id_token': 'tok'}),
        response({'paymentID': 'PAY1', 'bkashURL': 'https://pay.bka.sh/PAY1'}),
    ]

    result = bkash_client(session).create_payment('ord1', 1060.0, 'u1', 'http://api.test/cb')

    assert result == {'payment_id': 'PAY1', 'gateway_url': 'https://pay.bka.sh/PAY1'}
    grant, create = session.request.call_args_list
    assert grant.args[1].endswith('/tokenized/checkout/token/grant')
    assert grant.kwargs['headers']['username'] == 'user'
    assert create.kwargs['headers']['Authorization'] == 'tok'
    assert create.kwargs['json']['merchantInvoiceNumber'] == 'ord1'
    assert create.kwargs['json']['amount'] == '1060.0'


def test_bkash_token_failure():
    session = MagicMock()
    session.request.return_value = response({'statusMessage': 'Invalid app key'})

    with pytest.raises(PaymentGatewayError) as exc:
        bkash_client(session).grant_token()
    assert exc.value.message == 'Failed to get bKash token'


def test_bkash_network_error_is_wrapped():
    session = MagicMock()
    session.request.side_effect = requests.ConnectionError('boom')

    with pytest.raises(PaymentGatewayError):
        bkash_client(session).grant_token()


def test_bkash_completion_check():
    assert BkashClient.is_completed({'statusCode': '0000', 'transactionStatus': 'Completed'})
    assert not BkashClient.is_completed({'statusCode': '2062', 'transactionStatus': 'Completed'})


def test_sslcommerz_session_uses_customer_defaults():
    session = MagicMock()
    session.request.return_value = response({'status': 'SUCCESS', 'GatewayPageURL': 'https://gw/1'})
    client = SSLCommerzClient('store', 'pw', sandbox=True, session=session)

    url = client.create_session('ord1', 500, 'http://api.test/ipn', customer={'cus_name': 'Rina'})

    assert url == 'https://gw/1'
    sent = session.request.call_args.kwargs['data']
    assert sent['tran_id'] == 'ord1'
    assert sent['cus_name'] == 'Rina'
    assert sent['cus_city'] == 'Dhaka'
    assert sent['success_url'] == sent['ipn_url'] == 'http://api.test/ipn'


def test_sslcommerz_html_response_is_rejected():
    session = MagicMock()
    session.request.return_value = response({}, content_type='text/html')

    with pytest.raises(PaymentGatewayError) as exc:
        SSLCommerzClient('store', 'pw', session=session).create_session('ord1', 500, 'http://x')
    assert exc.value.message == 'Payment gateway returned invalid response'


def test_sslcommerz_failed_status():
    session = MagicMock()
    session.request.return_value = response({'status': 'FAILED', 'failedreason': 'Store is inactive'})

    with pytest.raises(PaymentGatewayError) as exc:
        SSLCommerzClient('store', 'pw', session=session).create_session('ord1', 500, 'http://x')
    assert exc.value.details == 'Store is inactive'


def test_sslcommerz_success_without_redirect_url():
    session = MagicMock()
    session.request.return_value = response({'status': 'SUCCESS'})

    with pytest.raises(PaymentGatewayError) as exc:
        SSLCommerzClient('store', 'pw', session=session).create_session('ord1', 500, 'http://x')
    assert exc.value.details == 'No redirect URL'


def test_sslcommerz_validate():
    session = MagicMock()
    session.request.return_value = response({'status': 'VALIDATED'})

    assert SSLCommerzClient('store', 'pw', session=session).validate('val1') is True
    assert session.request.call_args.kwargs['params']['val_id'] == 'val1'


def test_paypal_create_and_capture():
    session = MagicMock()
    session.request.side_effect = [
        response({'access_token': 'AT'}),
        response({'id': 'PP-1', 'status': 'CREATED'}),
        response({'access_token': 'AT'}),
        response({'status': 'COMPLETED'}),
    ]
    client = PayPalClient('cid', 'csecret', sandbox=True, session=session)

    assert client.create_order('ord1', 12.5) == 'PP-1'
    assert client.capture_order('PP-1') == 'COMPLETED'
    create_call = session.request.call_args_list[1]
    assert create_call.kwargs['json']['purchase_units'][0]['amount'] == {'currency_code': 'USD', 'value': '12.50'}
    assert create_call.kwargs['headers']['Authorization'] == 'Bearer AT'


@pytest.fixture(scope='module')
def rsa_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode('ascii')
    return key, pem


def test_nagad_key_without_armour_signs_verifiably(rsa_key):
    key, pem = rsa_key
    bare = ''.join(line for line in pem.splitlines() if not line.startswith('-----'))
    data = {'merchantId': 'M1', 'orderId': 'NGD1'}

    signature = nagad.sign_payload(nagad.load_private_key(bare), data)

    import base64
    key.public_key().verify(
        base64.b64decode(signature),
        json.dumps(data, separators=(',', ':')).encode('utf-8'),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )


def test_nagad_bad_key():
    with pytest.raises(NagadSignatureError) as exc:
        nagad.load_private_key('not-a-key')
    assert 'private key format' in exc.value.message


def test_nagad_transaction_id_shape():
    trx = nagad.generate_transaction_id(now_ms=1700000000000)

    assert trx.startswith('NGD' + nagad.to_base36(1700000000000).upper())
    assert len(trx) <= 20
    assert trx == trx.upper()


def test_nagad_initialize(rsa_key):
    _, pem = rsa_key
    session = MagicMock()
    session.request.side_effect = [
        response({'sensitiveData': nagad.encode_payload({'paymentReferenceId': 'REF1', 'challenge': 'abc'})}),
        response({'callBackUrl': 'https://nagad/checkout/REF1'}),
    ]
    client = nagad.NagadClient('M1', pem, merchant_number='017', sandbox=True, session=session)

    result = client.initialize('ord1', 500, 'http://api.test/cb')

    assert result['gateway_url'] == 'https://nagad/checkout/REF1'
    assert result['payment_ref_id'] == 'REF1'
    complete = session.request.call_args_list[1]
    assert complete.args[1].endswith('/check-out/complete/REF1')
    assert nagad.decode_payload(complete.kwargs['json']['sensitiveData'])['challenge'] == 'abc'


def test_nagad_initialize_rejection(rsa_key):
    _, pem = rsa_key
    session = MagicMock()
    session.request.return_value = response({'reason': 'Invalid merchant'})

    with pytest.raises(PaymentGatewayError) as exc:
        nagad.NagadClient('M1', pem, session=session).initialize('ord1', 500, 'http://x')
    assert exc.value.details == 'Invalid merchant'


def test_stripe_line_items_add_shipping():
    order = {'total': 1060.0, 'items': [{'product_name': 'Panjabi', 'price': 500.0, 'quantity': 2}]}

    items = stripe_checkout.build_line_items(order)

    assert [i['price_data']['product_data']['name'] for i in items] == ['Panjabi', 'Shipping & Fees']
    assert items[1]['price_data']['unit_amount'] == 6000


def test_stripe_line_items_without_items():
    items = stripe_checkout.build_line_items({'total': 12.34, 'items': []})

    assert items[0]['price_data']['product_data']['name'] == 'Order Total'
    assert items[0]['price_data']['unit_amount'] == 1234


def test_stripe_webhook_without_secret_accepts_event():
    event = stripe_checkout.parse_webhook_event(b'{"type": "checkout.session.completed"}')

    assert event['type'] == 'checkout.session.completed'


def test_stripe_webhook_invalid_payload():
    with pytest.raises(ValueError):
        stripe_checkout.parse_webhook_event(b'not json')


def test_stripe_webhook_bad_signature():
    with pytest.raises(ValueError):
        stripe_checkout.parse_webhook_event(b'{}', 't=1,v1=deadbeef', 'whsec_test')
