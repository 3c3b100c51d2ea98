import re
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

AUTH_SMTP = {'host': 'smtp.auth.test', 'port': 587, 'user': 'auth', 'password': 'pw', 'from_email': 'auth@shop.test'}


@pytest.fixture
def auth_smtp(set_setting):
    set_setting('auth_smtp_config', AUTH_SMTP)


@pytest.fixture
def outbox():
    with patch('app.Mailer.send', return_value=(True, 'Email sent')) as send:
        yield send


def link_token(send, path):
    body = send.call_args.args[2]
    return re.search(rf'http://shop\.test/{path}\?token=([\w-]+)', body).group(1)


def test_register_sends_verification_and_welcome(client, auth_smtp, set_setting, outbox):
    set_setting('site_title', 'Rina Fashion')

    resp = client.post('/api/auth/register', json={
        'name': 'Rina', 'email': 'rina@example.com', 'password': 'secret123'
    })

    assert resp.get_json()['verification_sent'] is True
    subjects = [c.args[1] for c in outbox.call_args_list]
    assert subjects == ['Verify your email - Rina Fashion', 'Welcome to Rina Fashion!']
    assert all(c.args[0] == 'rina@example.com' for c in outbox.call_args_list)


def test_disabled_signup_emails_are_skipped(client, auth_smtp, set_setting, outbox):
    set_setting('auth_email_config', {'verification_enabled': False, 'welcome_email_enabled': False})

    resp = client.post('/api/auth/register', json={
        'name': 'Rina', 'email': 'rina@example.com', 'password': 'secret123'
    })

    assert resp.status_code == 201
    assert resp.get_json()['verification_sent'] is False
    outbox.assert_not_called()


def test_register_succeeds_without_auth_smtp(client, outbox):
    resp = client.post('/api/auth/register', json={
        'name': 'Rina', 'email': 'rina@example.com', 'password': 'secret123'
    })

    assert resp.status_code == 201
    outbox.assert_not_called()


def test_marketing_smtp_can_carry_auth_mail(client, db, set_setting, make_user, outbox):
    set_setting('auth_smtp_config', {'use_marketing_smtp': True})
    set_setting('smtp_config', {'host': 'smtp.marketing.test', 'user': 'm', 'password': 'pw'})
    make_user()

    client.post('/api/auth/forgot-password', json={'email': 'buyer@example.com'})

    outbox.assert_called_once()


def test_password_reset_flow(client, db, auth_smtp, make_user, login, outbox):
    make_user()

    forgot = client.post('/api/auth/forgot-password', json={'email': 'Buyer@Example.com'})
    token = link_token(outbox, 'reset-password')
    reset = client.post('/api/auth/reset-password', json={'token': token, 'password': 'fresh123'})
    again = client.post('/api/auth/reset-password', json={'token': token, 'password': 'other123'})

    assert forgot.get_json()['success'] is True
    assert outbox.call_args.args[1].startswith('Reset your password')
    assert reset.status_code == 200
    assert again.get_json()['message'] == 'Invalid or expired reset link'
    assert db['auth_tokens'].count_documents({}) == 0
    login('buyer@example.com', 'fresh123')


def test_forgot_password_does_not_reveal_accounts(client, auth_smtp, outbox):
    resp = client.post('/api/auth/forgot-password', json={'email': 'nobody@example.com'})

    assert resp.status_code == 200
    assert resp.get_json()['message'] == 'If an account exists for that email, a reset link has been sent.'
    outbox.assert_not_called()


def test_forgot_password_when_disabled(client, auth_smtp, set_setting, make_user, outbox):
    set_setting('auth_email_config', {'reset_email_enabled': False})
    make_user()

    resp = client.post('/api/auth/forgot-password', json={'email': 'buyer@example.com'})

    assert resp.get_json()['message'] == 'Password reset email is disabled'
    outbox.assert_not_called()


def test_expired_reset_token_is_refused(client, db, auth_smtp, make_user, outbox):
    make_user()
    client.post('/api/auth/forgot-password', json={'email': 'buyer@example.com'})
    token = link_token(outbox, 'reset-password')
    db['auth_tokens'].update_many({}, {'$set': {'expires_at': datetime.utcnow() - timedelta(minutes=1)}})

    resp = client.post('/api/auth/reset-password', json={'token': token, 'password': 'fresh123'})

    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Invalid or expired reset link'


def test_reset_password_length(client):
    resp = client.post('/api/auth/reset-password', json={'token': 'x', 'password': '123'})

    assert resp.get_json()['message'] == 'Password must be at least 6 characters'


def test_verification_flow(client, db, auth_smtp, make_user, login, outbox):
    user = make_user(email_verified=False)
    login()

    sent = client.post('/api/auth/send-verification')
    token = link_token(outbox, 'verify-email')
    verified = client.post('/api/auth/verify-email', json={'token': token})

    assert sent.get_json()['message'] == 'Verification email sent to buyer@example.com'
    assert verified.get_json()['message'] == 'Email verified'
    assert db['users'].find_one({'_id': user['_id']})['email_verified'] is True
    assert client.get('/api/auth/me').get_json()['user']['email_verified'] is True
    assert client.post('/api/auth/send-verification').get_json()['message'] == 'Email already verified'


def test_reset_token_does_not_verify_email(client, auth_smtp, make_user, outbox):
    make_user()
    client.post('/api/auth/forgot-password', json={'email': 'buyer@example.com'})

    resp = client.post('/api/auth/verify-email', json={'token': link_token(outbox, 'reset-password')})

    assert resp.get_json()['message'] == 'Invalid or expired verification link'


def test_send_verification_without_smtp(client, make_user, login):
    make_user()
    login()

    resp = client.post('/api/auth/send-verification')

    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Auth SMTP not configured. Go to Settings → Auth Email.'


def test_auth_smtp_test_connection(client, auth_smtp, make_user, login, outbox):
    make_user(email='admin@shop.test', role='admin')
    login('admin@shop.test')

    resp = client.post('/admin/api/auth-email/test', json={})

    assert resp.get_json()['message'] == 'Test email sent to auth@shop.test'
    assert outbox.call_args.args[1] == 'Auth SMTP Test - Connection Successful'


def test_auth_smtp_test_reports_failure(client, auth_smtp, make_user, login):
    make_user(email='admin@shop.test', role='admin')
    login('admin@shop.test')

    with patch('app.Mailer.send', return_value=(False, 'Authentication failed. Check username/password.')):
        resp = client.post('/admin/api/auth-email/test', json={'test_email': 'me@shop.test'})

    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Authentication failed. Check username/password.'


def test_auth_smtp_test_needs_email_settings_permission(client, make_user, login, db):
    make_user(email='support@shop.test', role='support_assistant')
    db['role_permissions'].insert_one({'role': 'support_assistant', 'permission': 'settings_access', 'enabled': True})
    login('support@shop.test')

    assert client.post('/admin/api/auth-email/test', json={}).status_code == 403
