"""Stripe Checkout Sessions built from stored orders."""
import json
import logging

import stripe

from .base import PaymentGatewayError

logger = logging.getLogger(__name__)


def to_minor_units(amount):
    return int(round(float(amount) * 100))


def build_line_items(order, currency='usd'):
    """Line items for a Checkout Session.

    Every order item becomes one line. An order without items is charged as a
    single 'Order Total' line, and any positive gap between the order total
    and the item sum (delivery, fees) is billed as 'Shipping & Fees'.
    """
    items = order.get('items') or []
    line_items = []
    for item in items:
        line_items.append({
            'price_data': {
                'currency': currency,
                'product_data': {'name': item.get('product_name') or 'Item'},
                'unit_amount': to_minor_units(item.get('price', 0)),
            },
            'quantity': int(item.get('quantity', 1) or 1),
        })

    total = float(order.get('total', 0) or 0)
    if not line_items:
        line_items.append({
            'price_data': {
                'currency': currency,
                'product_data': {'name': 'Order Total'},
                'unit_amount': to_minor_units(total),
            },
            'quantity': 1,
        })
        return line_items

    items_total = sum(float(i.get('price', 0) or 0) * int(i.get('quantity', 1) or 1) for i in items)
    diff = total - items_total
    if diff > 0.01:
        line_items.append({
            'price_data': {
                'currency': currency,
                'product_data': {'name': 'Shipping & Fees'},
                'unit_amount': to_minor_units(diff),
            },
            'quantity': 1,
        })
    return line_items


def create_checkout_session(secret_key, order, user_id, site_url, currency='usd'):
    order_id = str(order['_id'])
    logger.info('[Stripe] creating checkout session for order %s, amount=%s, currency=%s',
                order_id, order.get('total'), currency)
    try:
        session = stripe.checkout.Session.create(
            api_key=secret_key,
            mode='payment',
            line_items=build_line_items(order, currency),
            success_url=f'{site_url}/payment/success?method=stripe&session_id={{CHECKOUT_SESSION_ID}}',
            cancel_url=f'{site_url}/payment/cancel',
            metadata={'order_id': order_id, 'user_id': str(user_id)},
        )
    except stripe.StripeError as e:
        logger.error('[Stripe] session creation failed: %s', e)
        raise PaymentGatewayError('Stripe session creation failed', getattr(e, 'user_message', None) or str(e))

    if not getattr(session, 'url', None):
        raise PaymentGatewayError('Stripe session creation failed')
    return {'session_id': session.id, 'gateway_url': session.url}


def parse_webhook_event(payload, signature_header=None, webhook_secret=None):
    """Return the event as a plain dict.

    When a webhook secret is configured the `Stripe-Signature` header must
    verify, otherwise ValueError is raised.
    """
    if isinstance(payload, bytes):
        payload = payload.decode('utf-8')
    if webhook_secret:
        try:
            stripe.WebhookSignature.verify_header(payload, signature_header or '', webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise ValueError(f'Invalid signature: {e}')
    try:
        return json.loads(payload)
    except ValueError:
        raise ValueError('Invalid payload')
