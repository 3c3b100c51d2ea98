import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

import app as commercex
from commercex_portal.payments import PaymentGatewayError

BKASH = {'enabled': True, 'app_key': 'k', 'app_secret': 's', 'username': 'u', 'password': 'p', 'sandbox': True}


@pytest.fixture
def buyer(make_user, login):
    user = make_user()
    login()
    return user


@pytest.fixture
def no_email():
    with patch('app.send_order_confirmation', return_value=(False, 'SMTP not configured')) as notify:
        yield notify


def test_init_requires_order_id(client, buyer):
    resp = client.post('/api/payments/bkash/init', json={})

    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'order_id is required'


def test_init_rejects_processed_order(client, buyer, make_order, set_setting):
    set_setting('payment_methods', {'bkash': BKASH})
    order = make_order(buyer, status='confirmed')

    resp = client.post('/api/payments/bkash/init', json={'order_id': str(order['_id'])})

    assert resp.get_json()['message'] == 'Order already processed'


def test_init_without_payment_settings(client, buyer, make_order):
    order = make_order(buyer)

    resp = client.post('/api/payments/bkash/init', json={'order_id': str(order['_id'])})

    assert resp.status_code == 500
    assert resp.get_json()['message'] == 'Payment gateway not configured'


def test_init_with_disabled_gateway(client, buyer, make_order, set_setting):
    set_setting('payment_methods', {'bkash': {'enabled': False}})
    order = make_order(buyer)

    resp = client.post('/api/payments/bkash/init', json={'order_id': str(order['_id'])})

    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'bKash is not enabled'


def test_bkash_init_stores_payment_id(client, db, buyer, make_order, set_setting):
    set_setting('payment_methods', {'bkash': BKASH})
    order = make_order(buyer)

    with patch('app.BkashClient.create_payment',
               return_value={'payment_id': 'PAY1', 'gateway_url': 'https://pay/PAY1'}) as create:
        resp = client.post('/api/payments/bkash/init', json={'order_id': str(order['_id'])})

    assert resp.get_json() == {'success': True, 'gateway_url': 'https://pay/PAY1'}
    assert create.call_args.kwargs['callback_url'] == 'http://api.test/api/payments/bkash/callback'
    assert db['orders'].find_one({'_id': order['_id']})['transaction_id'] == 'PAY1'


def test_bkash_init_gateway_failure(client, buyer, make_order, set_setting):
    set_setting('payment_methods', {'bkash': BKASH})
    order = make_order(buyer)

    with patch('app.BkashClient.create_payment',
               side_effect=PaymentGatewayError('Failed to get bKash token', 'bad key')):
        resp = client.post('/api/payments/bkash/init', json={'order_id': str(order['_id'])})

    assert resp.status_code == 500
    assert resp.get_json()['details'] == 'bad key'


def test_bkash_callback_success(client, db, buyer, make_order, set_setting, no_email):
    set_setting('payment_methods', {'bkash': BKASH})
    order = make_order(buyer, transaction_id='PAY1')

    with patch('app.BkashClient.execute_payment',
               return_value={'statusCode': '0000', 'transactionStatus': 'Completed', 'trxID': 'TRX9'}):
        resp = client.get('/api/payments/bkash/callback?paymentID=PAY1&status=success')

    assert resp.status_code == 302
    assert resp.headers['Location'] == f"http://shop.test/payment/success?order_id={order['_id']}"
    stored = db['orders'].find_one({'_id': order['_id']})
    assert (stored['status'], stored['payment_status'], stored['transaction_id']) == ('confirmed', 'paid', 'TRX9')
    no_email.assert_called_once()


def test_bkash_callback_cancel(client, db, buyer, make_order):
    order = make_order(buyer, transaction_id='PAY1')

    resp = client.get('/api/payments/bkash/callback?paymentID=PAY1&status=cancel')

    assert '/payment/cancel' in resp.headers['Location']
    assert db['orders'].find_one({'_id': order['_id']})['status'] == 'cancelled'


def test_bkash_callback_unknown_payment(client):
    resp = client.get('/api/payments/bkash/callback?paymentID=NOPE&status=success')

    assert resp.headers['Location'] == 'http://shop.test/payment/fail'


def test_bkash_callback_not_completed(client, db, buyer, make_order, set_setting):
    set_setting('payment_methods', {'bkash': BKASH})
    order = make_order(buyer, transaction_id='PAY1')

    with patch('app.BkashClient.execute_payment',
               return_value={'statusCode': '2023', 'transactionStatus': 'Failed', 'statusMessage': 'Insufficient Balance'}):
        resp = client.get('/api/payments/bkash/callback?paymentID=PAY1&status=success')

    assert resp.headers['Location'] == f"http://shop.test/payment/fail?order_id={order['_id']}"
    stored = db['orders'].find_one({'_id': order['_id']})
    assert (stored['status'], stored['payment_status']) == ('payment_failed', 'failed')


def test_nagad_callback_trusts_success_when_verify_fails(client, db, buyer, make_order, set_setting, no_email):
    set_setting('payment_methods', {'nagad': {'enabled': True, 'merchant_id': 'M1', 'merchant_private_key': 'x'}})
    order = make_order(buyer, payment_method='nagad', notes={'nagad_payment_ref': 'REF1'})

    with patch('app.NagadClient.verify', side_effect=PaymentGatewayError('Nagad verification failed')):
        resp = client.get('/api/payments/nagad/callback?payment_ref_id=REF1&status=Success')

    assert '/payment/success' in resp.headers['Location']
    assert db['orders'].find_one({'_id': order['_id']})['payment_status'] == 'paid'


def test_nagad_callback_aborted(client, db, buyer, make_order):
    order = make_order(buyer, payment_method='nagad')

    resp = client.get(f"/api/payments/nagad/callback?order_id={order['_id']}&status=Aborted")

    assert '/payment/cancel' in resp.headers['Location']
    assert db['orders'].find_one({'_id': order['_id']})['status'] == 'cancelled'


def test_nagad_callback_finds_order_by_trx_id(client, db, buyer, make_order, no_email):
    make_order(buyer, payment_method='nagad', notes={'nagad_payment_ref': 'OTHER', 'nagad_trx_id': 'NX0'})
    order = make_order(buyer, payment_method='nagad', notes={'nagad_payment_ref': 'REF7', 'nagad_trx_id': 'NX7'})

    resp = client.get('/api/payments/nagad/callback?payment_ref_id=NX7&status=Success')

    assert resp.headers['Location'] == f"http://shop.test/payment/success?order_id={order['_id']}"
    stored = db['orders'].find_one({'_id': order['_id']})
    assert (stored['status'], stored['transaction_id']) == ('confirmed', 'NX7')


def test_nagad_callback_stores_issuer_reference(client, db, buyer, make_order, set_setting, no_email):
    set_setting('payment_methods', {'nagad': {'enabled': True, 'merchant_id': 'M1', 'merchant_private_key': 'x'}})
    order = make_order(buyer, payment_method='nagad', notes={'nagad_payment_ref': 'REF1'})

    with patch('app.NagadClient.verify', return_value={'status': 'Success', 'issuerPaymentRefNo': 'ISS1'}):
        resp = client.get('/api/payments/nagad/callback?payment_ref_id=REF1&status=Success')

    assert '/payment/success' in resp.headers['Location']
    stored = db['orders'].find_one({'_id': order['_id']})
    assert (stored['payment_status'], stored['transaction_id']) == ('paid', 'ISS1')


def test_sslcommerz_ipn_validated(client, db, buyer, make_order, set_setting, no_email):
    set_setting('payment_methods', {'sslcommerz': {'enabled': True, 'store_id': 's', 'store_password': 'p'}})
    order = make_order(buyer, payment_method='sslcommerz')

    with patch('app.SSLCommerzClient.validate', return_value=True):
        resp = client.post('/api/payments/sslcommerz/ipn', data={
            'tran_id': str(order['_id']), 'status': 'VALID', 'val_id': 'V1', 'bank_tran_id': 'B1'
        })

    assert '/payment/success' in resp.headers['Location']
    assert db['orders'].find_one({'_id': order['_id']})['transaction_id'] == 'B1'


def test_sslcommerz_ipn_failed_validation(client, db, buyer, make_order, set_setting):
    set_setting('payment_methods', {'sslcommerz': {'enabled': True, 'store_id': 's', 'store_password': 'p'}})
    order = make_order(buyer, payment_method='sslcommerz')

    with patch('app.SSLCommerzClient.validate', return_value=False):
        client.post('/api/payments/sslcommerz/ipn', data={'tran_id': str(order['_id']), 'status': 'VALID'})

    stored = db['orders'].find_one({'_id': order['_id']})
    assert (stored['status'], stored['payment_status']) == ('payment_failed', 'failed')


def test_sslcommerz_ipn_cancelled(client, db, buyer, make_order):
    order = make_order(buyer, payment_method='sslcommerz')

    resp = client.post('/api/payments/sslcommerz/ipn', data={'tran_id': str(order['_id']), 'status': 'CANCELLED'})

    assert resp.headers['Location'] == f"http://shop.test/payment/cancel?order_id={order['_id']}"
    assert db['orders'].find_one({'_id': order['_id']})['status'] == 'cancelled'


def test_paypal_capture_not_completed(client, db, buyer, make_order, set_setting):
    set_setting('payment_methods', {'paypal': {'enabled': True, 'client_id': 'c', 'client_secret': 's'}})
    order = make_order(buyer, payment_method='paypal')

    with patch('app.PayPalClient.capture_order', return_value='PAYER_ACTION_REQUIRED'):
        resp = client.post('/api/payments/paypal/capture', json={
            'order_id': str(order['_id']), 'paypal_order_id': 'PP-1'
        })

    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Payment not completed'
    assert resp.get_json()['paypal_status'] == 'PAYER_ACTION_REQUIRED'
    assert db['orders'].find_one({'_id': order['_id']})['status'] == 'payment_failed'


def test_stripe_checkout_requires_secret(client, buyer, make_order, set_setting):
    set_setting('payment_methods', {'stripe': {'enabled': True}})
    order = make_order(buyer, payment_method='stripe')

    resp = client.post('/api/payments/stripe/checkout', json={'order_id': str(order['_id'])})

    assert resp.status_code == 500
    assert resp.get_json()['message'] == 'Stripe secret key not configured'


def test_stripe_checkout_creates_session(client, db, buyer, make_order, set_setting):
    set_setting('payment_methods', {'stripe': {'enabled': True, 'secret_key': 'sk_test'}})
    order = make_order(buyer, payment_method='stripe')
    fake = SimpleNamespace(id='cs_1', url='https://checkout.stripe.com/cs_1')

    with patch('stripe.checkout.Session.create', return_value=fake) as create:
        resp = client.post('/api/payments/stripe/checkout', json={'order_id': str(order['_id'])})

    assert resp.get_json()['gateway_url'] == 'https://checkout.stripe.com/cs_1'
    assert create.call_args.kwargs['metadata']['order_id'] == str(order['_id'])
    assert db['orders'].find_one({'_id': order['_id']})['transaction_id'] == 'cs_1'


def test_stripe_webhook_confirms_paid_session(client, db, buyer, make_order, no_email):
    order = make_order(buyer, payment_method='stripe')
    event = {
        'type': 'checkout.session.completed',
        'data': {'object': {'id': 'cs_1', 'payment_status': 'paid', 'metadata': {'order_id': str(order['_id'])}}},
    }

    resp = client.post('/api/payments/stripe/webhook', data=json.dumps(event), content_type='application/json')

    assert resp.status_code == 200
    assert db['orders'].find_one({'_id': order['_id']})['status'] == 'confirmed'


def test_stripe_webhook_expired_session(client, db, buyer, make_order):
    order = make_order(buyer, payment_method='stripe')
    event = {
        'type': 'checkout.session.expired',
        'data': {'object': {'id': 'cs_1', 'metadata': {'order_id': str(order['_id'])}}},
    }

    resp = client.post('/api/payments/stripe/webhook', data=json.dumps(event), content_type='application/json')

    assert resp.status_code == 200
    stored = db['orders'].find_one({'_id': order['_id']})
    assert (stored['status'], stored['payment_status']) == ('payment_failed', 'failed')


def test_stripe_webhook_invalid_payload(client):
    resp = client.post('/api/payments/stripe/webhook', data='garbage')

    assert resp.status_code == 400


def test_payment_methods_hide_secrets(client, set_setting):
    set_setting('payment_methods', {'bkash': BKASH})

    methods = client.get('/api/payment-methods').get_json()['methods']

    assert methods['bkash'] == {'label': 'bKash', 'enabled': True, 'sandbox': True}
    assert methods['cod']['enabled'] is True


def test_notification_requires_auth(client):
    assert client.post('/api/notifications/send', json={'type': 'order_confirmation'}).status_code == 401


def test_notification_with_internal_secret(client, make_user, make_order, no_email):
    order = make_order(make_user())

    resp = client.post('/api/notifications/send', headers={'X-Internal-Secret': 'internal-secret'}, json={
        'type': 'order_confirmation', 'data': {'order_id': str(order['_id'])}
    })

    data = resp.get_json()
    assert data['message'] == 'Notification processed'
    assert data['subject'] == f"Order Confirmation #{str(order['_id'])[:8]}"


def test_order_confirmation_is_plain_text(client, make_user, make_order, set_setting):
    set_setting('smtp_settings', {'host': 'smtp.shop.test', 'user': 'mailer', 'password': 'pw'})
    order = make_order(make_user())

    with patch('app.Mailer.send', return_value=(True, 'Email sent')) as send:
        assert commercex.send_order_confirmation(order) == (True, 'Email sent')

    recipient, subject, body = send.call_args.args
    assert recipient == 'buyer@example.com'
    assert send.call_args.kwargs == {'subtype': 'plain'}
    assert 'Total: ৳1060.00\nItems: 1' in body
    assert '<br>' not in body
