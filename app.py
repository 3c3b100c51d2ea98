from flask import Flask, request, redirect, session, jsonify, g
from werkzeug.security import generate_password_hash, check_password_hash
from pymongo import MongoClient
from bson.objectid import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timedelta, timezone
from dotenv import load_dotenv
from functools import wraps
import hashlib
import io
import os
import re
import secrets
import threading

from commercex_portal.payments import (
    BkashClient,
    NagadClient,
    PayPalClient,
    SSLCommerzClient,
    PaymentGatewayError,
    GATEWAY_LABELS,
)
from commercex_portal.payments import nagad as nagad_gateway
from commercex_portal.payments import stripe_checkout
from commercex_portal.mailer import Mailer
from commercex_portal.campaigns import CampaignSender, classify_customer, select_recipients
from commercex_portal.catalog_import import CatalogImporter, slugify
from commercex_portal.permissions import (
    ADMIN_ROLE,
    CUSTOMER_ROLE,
    STAFF_ROLES,
    ALL_PERMISSIONS,
    is_staff_role,
    default_permission_rows,
)

load_dotenv()

app = Flask(__name__)
app.secret_key = os.getenv('SESSION_SECRET', 'commercex-dev-2026-key')
app.config['MAX_CONTENT_LENGTH'] = int(os.getenv('MAX_UPLOAD_MB', '20')) * 1024 * 1024
app.config['SITE_URL'] = os.getenv('SITE_URL', 'http://localhost:5173').rstrip('/')
app.config['PUBLIC_BASE_URL'] = os.getenv('PUBLIC_BASE_URL', 'http://localhost:5000').rstrip('/')
app.config['INTERNAL_SECRET'] = os.getenv('INTERNAL_SECRET', '')
# Campaigns run on a background thread unless this is set.
app.config['CAMPAIGN_SEND_INLINE'] = os.getenv('CAMPAIGN_SEND_INLINE', '').lower() in {'1', 'true', 'yes'}

# Database Setup
MONGODB_URI = os.getenv('MONGODB_URI', 'mongodb://localhost:27017/')
client = MongoClient(MONGODB_URI)

db = None
users_collection = None
role_permissions_collection = None
products_collection = None
cart_collection = None
orders_collection = None
coupons_collection = None
coupon_usage_collection = None
shipping_zones_collection = None
shipping_rates_collection = None
campaigns_collection = None
templates_collection = None
testimonials_collection = None
settings_collection = None
activity_collection = None
auth_tokens_collection = None


def bind_database(database):
    """Point every collection handle at `database`."""
    global db, users_collection, role_permissions_collection, products_collection, cart_collection
    global orders_collection, coupons_collection, coupon_usage_collection, shipping_zones_collection
    global shipping_rates_collection, campaigns_collection, templates_collection
    global testimonials_collection, settings_collection, activity_collection, auth_tokens_collection

    db = database
    users_collection = db['users']
    role_permissions_collection = db['role_permissions']
    products_collection = db['products']
    cart_collection = db['cart']
    orders_collection = db['orders']
    coupons_collection = db['coupons']
    coupon_usage_collection = db['coupon_usage']
    shipping_zones_collection = db['shipping_zones']
    shipping_rates_collection = db['shipping_rates']
    campaigns_collection = db['email_campaigns']
    templates_collection = db['email_templates']
    testimonials_collection = db['testimonials']
    settings_collection = db['admin_settings']
    activity_collection = db['activity_logs']
    auth_tokens_collection = db['auth_tokens']


bind_database(client[os.getenv('MONGODB_DB', 'commercex_db')])

ORDER_STATUSES = [
    'pending', 'confirmed', 'processing', 'send_to_courier',
    'delivered', 'cancelled', 'returned', 'payment_failed',
]
REVENUE_STATUSES = ['confirmed', 'processing', 'send_to_courier', 'delivered']
EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


# ==================== GENERAL HELPERS ====================
def to_object_id(value):
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize_doc(value):
    """Make Mongo documents JSON friendly (ObjectId -> str, datetime -> ISO)."""
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            out['id' if key == '_id' else key] = serialize_doc(item)
        return out
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def parse_number(value, default=0.0):
    if value is None:
        return default
    cleaned = str(value).strip().replace(',', '')
    if not cleaned:
        return default
    try:
        return float(cleaned)
    except ValueError:
        return default


def parse_int(value, default=0):
    return int(parse_number(value, default))


def parse_date(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    # Stored dates are naive UTC.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def get_json():
    return request.get_json(silent=True) or {}


def json_error(message, status=400, **extra):
    payload = {'success': False, 'message': message}
    payload.update(extra)
    return jsonify(payload), status


def get_page_args(default_per_page=20, max_per_page=100):
    page = max(1, parse_int(request.args.get('page'), 1))
    per_page = min(max(1, parse_int(request.args.get('per_page'), default_per_page)), max_per_page)
    return page, per_page


def paginate(cursor, total, page, per_page):
    docs = list(cursor.skip((page - 1) * per_page).limit(per_page))
    return {
        'items': serialize_doc(docs),
        'page': page,
        'per_page': per_page,
        'total': total,
        'pages': (total + per_page - 1) // per_page if total else 0,
    }


def get_setting(key, default=None):
    row = settings_collection.find_one({'key': key})
    if not row or row.get('value') is None:
        return default
    return row['value']


def set_setting(key, value):
    settings_collection.update_one(
        {'key': key},
        {'$set': {'value': value, 'updated_at': datetime.utcnow()},
         '$setOnInsert': {'created_at': datetime.utcnow()}},
        upsert=True
    )


def log_activity(action, entity_type=None, entity_id=None, details=None, user_id=None):
    """Write a back-office audit row. Failures never break the request."""
    try:
        activity_collection.insert_one({
            'user_id': user_id or session.get('user_id'),
            'action': action,
            'entity_type': entity_type,
            'entity_id': str(entity_id) if entity_id is not None else None,
            'details': details or {},
            'ip_address': request.remote_addr,
            'user_agent': request.headers.get('User-Agent', ''),
            'created_at': datetime.utcnow()
        })
    except Exception as e:
        app.logger.warning('Failed to log activity %s: %s', action, e)


@app.errorhandler(413)
def request_entity_too_large(error):
    limit_mb = int(app.config['MAX_CONTENT_LENGTH'] / (1024 * 1024))
    return json_error(f'Uploaded file is too large. Max allowed size is {limit_mb} MB.', 413)


# ==================== AUTH HELPERS ====================
def public_user(user):
    return {
        'id': str(user['_id']),
        'name': user.get('name', ''),
        'email': user.get('email', ''),
        'phone': user.get('phone', ''),
        'role': user.get('role', CUSTOMER_ROLE),
        'is_blocked': bool(user.get('is_blocked')),
        'email_verified': bool(user.get('email_verified')),
    }


def current_user():
    user_id = to_object_id(session.get('user_id'))
    if not user_id:
        return None
    return users_collection.find_one({'_id': user_id})


def can(user, permission):
    if not user:
        return False
    role = user.get('role', CUSTOMER_ROLE)
    if role == ADMIN_ROLE:
        return True
    if role not in STAFF_ROLES:
        return False
    return role_permissions_collection.find_one(
        {'role': role, 'permission': permission, 'enabled': True}
    ) is not None


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_user()
        if not user:
            return json_error('Login required', 401)
        if user.get('is_blocked'):
            session.clear()
            return json_error('Your account has been blocked', 403, reason='account_blocked')
        g.user = user
        g.user_id = str(user['_id'])
        return f(*args, **kwargs)

    return decorated_function


def admin_required(f):
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if g.user.get('role') != ADMIN_ROLE:
            return json_error('Admin access required', 403)
        return f(*args, **kwargs)

    return decorated_function


def permission_required(permission):
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            if not can(g.user, permission):
                return json_error('You do not have permission to perform this action', 403)
            return f(*args, **kwargs)

        return decorated_function

    return decorator


def start_user_session(user):
    session.clear()
    session['user_id'] = str(user['_id'])
    session['user_name'] = user.get('name', 'User')
    session['user_email'] = user.get('email', '')
    session['role'] = user.get('role', CUSTOMER_ROLE)
    session.permanent = True


# ==================== PRICING HELPERS ====================
def effective_price(product):
    """Discount price when set, otherwise the regular price."""
    discount = product.get('discount_price')
    if discount is not None and discount != '':
        return float(discount)
    return float(product.get('regular_price', 0) or 0)


def calculate_delivery_charge(rate, subtotal):
    """Delivery charge for a shipping rate; free above the rate's threshold."""
    if not rate:
        return 0.0
    threshold = rate.get('free_shipping_threshold')
    if threshold is not None and threshold != '' and subtotal >= float(threshold):
        return 0.0
    return float(rate.get('rate', 0) or 0)


def calculate_coupon_discount(coupon, subtotal):
    value = float(coupon.get('discount_value', 0) or 0)
    if coupon.get('discount_type') == 'percentage':
        discount = subtotal * value / 100.0
        max_discount = coupon.get('max_discount_amount')
        if max_discount is not None and max_discount != '':
            discount = min(discount, float(max_discount))
    else:
        discount = value
    return round(max(0.0, min(discount, subtotal)), 2)


def evaluate_coupon(code, subtotal, user_id=None, cart_items=None):
    """Return coupon evaluation dictionary."""
    if not code:
        return {'valid': False, 'message': 'Coupon code required', 'discount': 0}

    coupon = coupons_collection.find_one({
        'code': {'$regex': f'^{re.escape(code.strip())}$', '$options': 'i'},
        'is_active': True
    })
    if not coupon:
        return {'valid': False, 'message': 'Invalid promo code', 'discount': 0}

    now = datetime.utcnow()
    end_date = parse_date(coupon.get('end_date'))
    if end_date and end_date < now:
        return {'valid': False, 'message': 'This promo code has expired', 'discount': 0}
    start_date = parse_date(coupon.get('start_date'))
    if start_date and start_date > now:
        return {'valid': False, 'message': 'This promo code is not yet active', 'discount': 0}

    usage_limit = coupon.get('usage_limit')
    if usage_limit and int(coupon.get('usage_count', 0) or 0) >= int(usage_limit):
        return {'valid': False, 'message': 'This promo code has reached its usage limit', 'discount': 0}

    min_order = float(coupon.get('min_order_amount', 0) or 0)
    if subtotal < min_order:
        return {'valid': False, 'message': f'Minimum order amount is {min_order:g}', 'discount': 0}

    per_user_limit = coupon.get('per_user_limit')
    if user_id and per_user_limit:
        used = coupon_usage_collection.count_documents({'coupon_id': coupon['_id'], 'user_id': user_id})
        if used >= int(per_user_limit):
            return {'valid': False, 'message': 'You have already used this promo code', 'discount': 0}

    applies_to = coupon.get('applies_to') or 'all'
    if applies_to == 'new_customers':
        if not user_id or orders_collection.count_documents({'user_id': user_id}) > 0:
            return {'valid': False, 'message': 'This promo is for new customers only', 'discount': 0}
    elif applies_to == 'selected_customers':
        if user_id not in (coupon.get('selected_customer_ids') or []):
            return {'valid': False, 'message': 'This promo code is not available for your account', 'discount': 0}
    elif applies_to == 'selected_products':
        eligible = set(coupon.get('selected_product_ids') or [])
        if not any(str(item.get('product_id')) in eligible for item in (cart_items or [])):
            return {'valid': False, 'message': 'This promo does not apply to your cart items', 'discount': 0}

    discount = calculate_coupon_discount(coupon, subtotal)
    return {'valid': True, 'message': 'Promo code applied', 'discount': discount, 'coupon': coupon}


def record_coupon_usage(coupon, user_id, order_id):
    coupon_usage_collection.insert_one({
        'coupon_id': coupon['_id'],
        'user_id': user_id,
        'order_id': str(order_id),
        'created_at': datetime.utcnow()
    })
    coupons_collection.update_one({'_id': coupon['_id']}, {'$inc': {'usage_count': 1}})


def find_shipping_rate(rate_id):
    oid = to_object_id(rate_id)
    if not oid:
        return None
    return shipping_rates_collection.find_one({'_id': oid})


# ==================== CART HELPERS ====================
def get_guest_cart():
    return list(session.get('guest_cart', []))


def save_guest_cart(items):
    session['guest_cart'] = items
    session.modified = True


def raw_cart_lines(user_id=None):
    if user_id:
        return list(cart_collection.find({'user_id': user_id}))
    return get_guest_cart()


def build_cart_items(user_id=None):
    """Build normalized cart items with safe product fallbacks."""
    items = []
    total = 0.0

    for line in raw_cart_lines(user_id):
        quantity = int(line.get('quantity', 1) or 1)
        product_id = str(line.get('product_id', ''))
        oid = to_object_id(product_id)
        product = products_collection.find_one({'_id': oid, 'is_deleted': {'$ne': True}}) if oid else None

        if product and product.get('is_active', True):
            price = effective_price(product)
            item = {
                'product_id': product_id,
                'product_name': product.get('title', 'Product'),
                'slug': product.get('slug'),
                'image_url': product.get('image_url', ''),
                'price': price,
                'stock': int(product.get('stock_quantity', 0) or 0),
                'is_available': True,
            }
        else:
            price = 0.0
            item = {
                'product_id': product_id,
                'product_name': 'Product unavailable',
                'slug': None,
                'image_url': '',
                'price': 0.0,
                'stock': 0,
                'is_available': False,
            }

        item['quantity'] = quantity
        item['variation'] = line.get('variation')
        item['subtotal'] = price * quantity
        total += item['subtotal']
        items.append(item)

    return items, total


def add_cart_line(user_id, product_id, quantity, variation=None):
    """Add to the stored or guest cart, merging with an existing line."""
    if user_id:
        existing = cart_collection.find_one({'user_id': user_id, 'product_id': product_id, 'variation': variation})
        if existing:
            cart_collection.update_one(
                {'_id': existing['_id']},
                {'$inc': {'quantity': quantity}, '$set': {'updated_at': datetime.utcnow()}}
            )
        else:
            cart_collection.insert_one({
                'user_id': user_id,
                'product_id': product_id,
                'quantity': quantity,
                'variation': variation,
                'created_at': datetime.utcnow()
            })
        return

    lines = get_guest_cart()
    for line in lines:
        if line.get('product_id') == product_id and line.get('variation') == variation:
            line['quantity'] = int(line.get('quantity', 0)) + quantity
            break
    else:
        lines.append({'product_id': product_id, 'quantity': quantity, 'variation': variation})
    save_guest_cart(lines)


def merge_guest_cart(user_id):
    """Move the session cart into the user's stored cart after sign in."""
    lines = get_guest_cart()
    for line in lines:
        quantity = int(line.get('quantity', 0) or 0)
        if quantity > 0 and line.get('product_id'):
            add_cart_line(user_id, line['product_id'], quantity, line.get('variation'))
    if lines:
        save_guest_cart([])
    return len(lines)


# ==================== ORDER HELPERS ====================
def find_order(order_id, user_id=None):
    oid = to_object_id(order_id)
    if not oid:
        return None
    query = {'_id': oid}
    if user_id:
        query['user_id'] = user_id
    return orders_collection.find_one(query)


def update_order(order, fields):
    fields['updated_at'] = datetime.utcnow()
    orders_collection.update_one({'_id': order['_id']}, {'$set': fields})


def confirm_order_payment(order, payment_method, transaction_id):
    update_order(order, {
        'status': 'confirmed',
        'payment_status': 'paid',
        'payment_method': payment_method,
        'transaction_id': transaction_id,
    })
    send_order_confirmation(order)


def fail_order_payment(order, status='payment_failed'):
    fields = {'status': status}
    if status == 'payment_failed':
        fields['payment_status'] = 'failed'
    update_order(order, fields)


def payment_redirect(outcome, order_id=None):
    url = f"{app.config['SITE_URL']}/payment/{outcome}"
    if order_id:
        url += f'?order_id={order_id}'
    return redirect(url, 302)


def callback_url(path):
    return f"{app.config['PUBLIC_BASE_URL']}{path}"


def enrich_order_items(orders):
    """Attach each item's current product image to a list of orders."""
    product_ids = {to_object_id(i.get('product_id')) for o in orders for i in o.get('items', [])}
    product_ids.discard(None)
    images = {}
    if product_ids:
        for product in products_collection.find({'_id': {'$in': list(product_ids)}}, {'image_url': 1}):
            images[str(product['_id'])] = product.get('image_url') or ''
    for order in orders:
        for item in order.get('items', []):
            item['image_url'] = images.get(str(item.get('product_id')), '')
    return orders


def tracking_view(order):
    return {
        'id': str(order['_id']),
        'status': order.get('status'),
        'payment_status': order.get('payment_status'),
        'payment_method': order.get('payment_method'),
        'total': order.get('total'),
        'created_at': order.get('created_at'),
        'items': [
            {
                'product_id': item.get('product_id'),
                'product_name': item.get('product_name'),
                'quantity': item.get('quantity'),
                'price': item.get('price'),
                'variation': item.get('variation'),
                'image_url': item.get('image_url', ''),
            }
            for item in order.get('items', [])
        ],
    }


# ==================== NOTIFICATIONS ====================
def get_transactional_mailer():
    smtp_settings = get_setting('smtp_settings')
    if smtp_settings and smtp_settings.get('host'):
        return Mailer.from_settings(smtp_settings)
    return Mailer.from_env()


def get_marketing_smtp_config():
    config = get_setting('smtp_config') or {}
    if config.get('use_auth_smtp'):
        config = get_setting('auth_smtp_config') or {}
    return config


def build_order_confirmation(order):
    ref = str(order['_id'])[:8]
    currency = (get_setting('currency_settings') or {}).get('symbol', '৳')
    subject = f'Order Confirmation #{ref}'
    lines = [
        'Dear Customer,',
        '',
        f'Your order #{ref} has been confirmed.',
        '',
        f"Total: {currency}{float(order.get('total', 0) or 0):.2f}",
        f"Items: {len(order.get('items', []))}",
        '',
        'We will process your order shortly.',
        '',
        'Thank you for shopping with CommerceX!',
    ]
    return subject, '\n'.join(lines)


def send_order_confirmation(order):
    """Email the order owner. Best-effort: returns (sent, message)."""
    try:
        owner = users_collection.find_one({'_id': to_object_id(order.get('user_id'))}) or {}
        recipient = owner.get('email', '')
        subject, body = build_order_confirmation(order)
        if not recipient:
            return False, 'No recipient'
        mailer = get_transactional_mailer()
        if not mailer.configured:
            app.logger.info('[EMAIL] SMTP not configured, skipped "%s" to %s', subject, recipient)
            return False, 'SMTP not configured'
        sent, message = mailer.send(recipient, subject, body, subtype='plain')
        if not sent:
            app.logger.warning('[EMAIL] %s to %s failed: %s', subject, recipient, message)
        return sent, message
    except Exception as e:
        app.logger.exception('Order confirmation for %s failed', order.get('_id'))
        return False, str(e)


# ==================== AUTH EMAILS ====================
AUTH_TOKEN_TTL = timedelta(hours=24)
AUTH_SMTP_NOT_CONFIGURED = 'Auth SMTP not configured. Go to Settings → Auth Email.'


def get_auth_smtp_config():
    config = get_setting('auth_smtp_config') or {}
    if config.get('use_marketing_smtp'):
        config = get_setting('smtp_config') or {}
    return config


def auth_email_enabled(flag):
    """Toggles in `auth_email_config` default to on; only an explicit False disables."""
    return (get_setting('auth_email_config') or {}).get(flag) is not False


def hash_token(token):
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def issue_auth_token(user, purpose):
    """Replace any earlier token of this purpose and return the new raw token."""
    user_id = str(user['_id'])
    token = secrets.token_urlsafe(32)
    now = datetime.utcnow()
    auth_tokens_collection.delete_many({'user_id': user_id, 'purpose': purpose})
    auth_tokens_collection.insert_one({
        'user_id': user_id,
        'purpose': purpose,
        'token_hash': hash_token(token),
        'expires_at': now + AUTH_TOKEN_TTL,
        'created_at': now,
    })
    return token


def consume_auth_token(token, purpose):
    """Single use: the token row is removed whether or not it is still valid."""
    if not token:
        return None
    row = auth_tokens_collection.find_one_and_delete({'token_hash': hash_token(token), 'purpose': purpose})
    if not row or row['expires_at'] < datetime.utcnow():
        return None
    return users_collection.find_one({'_id': to_object_id(row['user_id'])})


def site_name():
    title = get_setting('site_title')
    return title if isinstance(title, str) and title else 'Our Store'


def email_layout(heading, paragraphs, button_label=None, button_url=None):
    parts = [
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">',
        f'<h2 style="color: #333;">{heading}</h2>',
    ]
    parts.extend(f'<p style="color: #555; font-size: 16px;">{p}</p>' for p in paragraphs)
    if button_url:
        parts.append(
            f'<div style="text-align: center; margin: 30px 0;"><a href="{button_url}" '
            'style="background-color: #000; color: #fff; padding: 14px 28px; text-decoration: none; '
            f'border-radius: 8px; font-size: 16px; display: inline-block;">{button_label}</a></div>'
        )
    parts.append(f'<hr style="border: none; border-top: 1px solid #eee; margin: 20px 0;">'
                 f'<p style="color: #aaa; font-size: 12px;">{site_name()}</p></div>')
    return ''.join(parts)


def build_verification_email(url):
    name = site_name()
    body = email_layout(
        f'Welcome to {name}!',
        ['Thank you for creating an account. Please verify your email address by clicking the button below:',
         "If you didn't create this account, you can safely ignore this email."],
        'Verify Email Address', url,
    )
    return f'Verify your email - {name}', body


def build_reset_email(url):
    body = email_layout(
        'Reset Your Password',
        ['We received a request to reset your password. Click the button below to set a new password:',
         "If you didn't request this, you can safely ignore this email. The link will expire in 24 hours."],
        'Reset Password', url,
    )
    return f'Reset your password - {site_name()}', body


def build_welcome_email(customer_name):
    name = site_name()
    body = email_layout(
        f'Welcome to {name}!',
        [f"Hi {customer_name or 'there'},", f"Thank you for joining {name}. We're excited to have you!"],
        'Start Shopping', app.config['SITE_URL'],
    )
    return f'Welcome to {name}!', body


def send_auth_email(recipient, subject, body):
    """Send through the auth SMTP account. Returns (sent, reason)."""
    mailer = Mailer.from_settings(get_auth_smtp_config())
    if not mailer.configured:
        app.logger.info('[AUTH EMAIL] SMTP not configured, skipped "%s" to %s', subject, recipient)
        return False, AUTH_SMTP_NOT_CONFIGURED
    sent, reason = mailer.send(recipient, subject, body)
    if not sent:
        app.logger.warning('[AUTH EMAIL] %s to %s failed: %s', subject, recipient, reason)
    return sent, reason


def send_verification_email(user):
    token = issue_auth_token(user, 'verify_email')
    subject, body = build_verification_email(f"{app.config['SITE_URL']}/verify-email?token={token}")
    return send_auth_email(user['email'], subject, body)


def send_signup_emails(user):
    """Verification and welcome mail after registration. Best-effort."""
    verification_sent = False
    try:
        if auth_email_enabled('verification_enabled'):
            verification_sent, _ = send_verification_email(user)
        if auth_email_enabled('welcome_email_enabled'):
            send_auth_email(user['email'], *build_welcome_email(user.get('name')))
    except Exception:
        app.logger.exception('Signup emails for %s failed', user.get('email'))
    return verification_sent


# ==================== SESSION MANAGEMENT ====================
@app.before_request
def make_session_permanent():
    session.permanent = True


# ==================== AUTH ROUTES ====================
@app.route('/api/auth/register', methods=['POST'])
def register():
    data = get_json()
    name = (data.get('name') or '').strip()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    phone = (data.get('phone') or '').strip()

    if not name or not email or not password:
        return json_error('Name, email and password are required')
    if not EMAIL_RE.match(email):
        return json_error('Please enter a valid email address')
    if len(password) < 6:
        return json_error('Password must be at least 6 characters')
    if users_collection.find_one({'email': email}):
        return json_error('Email already registered')

    user = {
        'name': name,
        'email': email,
        'phone': phone,
        'address': '',
        'city': '',
        'zip_code': '',
        'country': '',
        'password': generate_password_hash(password),
        'role': CUSTOMER_ROLE,
        'is_blocked': False,
        'email_verified': False,
        'created_at': datetime.utcnow()
    }
    user['_id'] = users_collection.insert_one(user).inserted_id

    guest_cart = get_guest_cart()
    start_user_session(user)
    save_guest_cart(guest_cart)
    merge_guest_cart(str(user['_id']))
    log_activity('register', 'user', user['_id'], user_id=str(user['_id']))
    verification_sent = send_signup_emails(user)
    return jsonify({'success': True, 'user': public_user(user), 'verification_sent': verification_sent}), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    data = get_json()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not email or not password:
        return json_error('Please enter both email and password')

    user = users_collection.find_one({'email': email})
    if not user or not check_password_hash(user.get('password', ''), password):
        return json_error('Invalid email or password', 401)

    if user.get('is_blocked'):
        return json_error(
            'Your account has been blocked. Please contact support.', 403, reason='account_blocked'
        )

    guest_cart = get_guest_cart()
    start_user_session(user)
    save_guest_cart(guest_cart)
    merged = merge_guest_cart(str(user['_id']))
    log_activity('login', 'user', user['_id'], user_id=str(user['_id']))
    return jsonify({'success': True, 'user': public_user(user), 'merged_cart_items': merged})


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    if 'user_id' in session:
        log_activity('logout', 'user', session['user_id'])
    session.clear()
    return jsonify({'success': True, 'message': 'You have been logged out successfully.'})


@app.route('/api/auth/me')
@login_required
def me():
    user = public_user(g.user)
    user['permissions'] = [p for p in ALL_PERMISSIONS if can(g.user, p)] if is_staff_role(user['role']) else []
    return jsonify({'success': True, 'user': user})


@app.route('/api/check-access', methods=['POST'])
def check_access():
    user = current_user()
    if not user:
        return json_error('Unauthorized', 401)
    if user.get('is_blocked'):
        return jsonify({
            'allowed': False,
            'reason': 'account_blocked',
            'message': 'Your account has been blocked. Please contact support.'
        })
    return jsonify({'allowed': True})


@app.route('/api/profile', methods=['PUT'])
@login_required
def update_profile():
    data = get_json()
    fields = {k: str(data[k]).strip() for k in ('name', 'phone', 'address', 'city', 'zip_code', 'country') if k in data}
    if not fields:
        return json_error('Nothing to update')
    fields['updated_at'] = datetime.utcnow()
    users_collection.update_one({'_id': g.user['_id']}, {'$set': fields})
    return jsonify({'success': True})


@app.route('/api/auth/forgot-password', methods=['POST'])
def forgot_password():
    email = (get_json().get('email') or '').strip().lower()
    if not email:
        return json_error('Email is required')
    if not auth_email_enabled('reset_email_enabled'):
        return json_error('Password reset email is disabled')

    # Same reply whether or not the account exists
    user = users_collection.find_one({'email': email})
    if user and not user.get('is_blocked'):
        token = issue_auth_token(user, 'reset_password')
        subject, body = build_reset_email(f"{app.config['SITE_URL']}/reset-password?token={token}")
        send_auth_email(email, subject, body)
    return jsonify({'success': True, 'message': 'If an account exists for that email, a reset link has been sent.'})


@app.route('/api/auth/reset-password', methods=['POST'])
def reset_password():
    data = get_json()
    password = data.get('password') or ''
    if len(password) < 6:
        return json_error('Password must be at least 6 characters')

    user = consume_auth_token(data.get('token'), 'reset_password')
    if not user:
        return json_error('Invalid or expired reset link')

    users_collection.update_one({'_id': user['_id']}, {'$set': {
        'password': generate_password_hash(password),
        'updated_at': datetime.utcnow(),
    }})
    log_activity('password_reset', 'user', user['_id'], user_id=str(user['_id']))
    return jsonify({'success': True, 'message': 'Password updated. You can now sign in.'})


@app.route('/api/auth/send-verification', methods=['POST'])
@login_required
def send_verification():
    if g.user.get('email_verified'):
        return json_error('Email already verified')
    if not auth_email_enabled('verification_enabled'):
        return json_error('Email verification is disabled')

    sent, reason = send_verification_email(g.user)
    if not sent:
        return json_error(reason)
    return jsonify({'success': True, 'message': f"Verification email sent to {g.user['email']}"})


@app.route('/api/auth/verify-email', methods=['POST'])
def verify_email():
    user = consume_auth_token(get_json().get('token'), 'verify_email')
    if not user:
        return json_error('Invalid or expired verification link')

    users_collection.update_one({'_id': user['_id']}, {'$set': {
        'email_verified': True,
        'email_verified_at': datetime.utcnow(),
    }})
    log_activity('email_verified', 'user', user['_id'], user_id=str(user['_id']))
    return jsonify({'success': True, 'message': 'Email verified'})


# ==================== INITIAL SETUP ====================
@app.route('/api/setup/status')
def setup_status():
    installed = get_setting('installed', False) or users_collection.find_one({'role': ADMIN_ROLE})
    return jsonify({'installed': bool(installed)})


@app.route('/api/setup', methods=['POST'])
def initial_setup():
    if get_setting('installed', False) or users_collection.find_one({'role': ADMIN_ROLE}):
        return json_error('Already installed')

    data = get_json()
    admin_email = (data.get('admin_email') or '').strip().lower()
    admin_password = data.get('admin_password') or ''
    admin_name = (data.get('admin_name') or '').strip()
    if not admin_email or not admin_password or not admin_name:
        return json_error('Admin email, password and name are required')
    if len(admin_password) < 6:
        return json_error('Password must be at least 6 characters')

    now = datetime.utcnow()
    users_collection.update_one(
        {'email': admin_email},
        {'$set': {
            'name': admin_name,
            'password': generate_password_hash(admin_password),
            'role': ADMIN_ROLE,
            'is_blocked': False,
            'email_verified': True,
            'updated_at': now,
        }, '$setOnInsert': {'phone': '', 'address': '', 'created_at': now}},
        upsert=True
    )

    site_settings = {
        'site_title': data.get('site_title') or 'CommerceX',
        'site_description': data.get('site_description') or '',
        'site_logo_url': data.get('site_logo') or '',
        'currency_settings': {
            'code': data.get('currency_code') or 'BDT',
            'symbol': data.get('currency_symbol') or '৳',
            'position': data.get('currency_position') or 'before',
        },
        'payment_enabled': True,
        'buy_now_enabled': True,
        'maintenance_mode': False,
        'whatsapp_enabled': False,
    }
    for key, value in site_settings.items():
        set_setting(key, value)

    if data.get('payment_methods'):
        set_setting('payment_methods', data['payment_methods'])

    if data.get('smtp_host'):
        set_setting('smtp_settings', {
            'host': data['smtp_host'],
            'port': str(data.get('smtp_port') or '587'),
            'user': data.get('smtp_user') or '',
            'password': data.get('smtp_password') or '',
            'from_email': data.get('smtp_from_email') or admin_email,
        })

    if role_permissions_collection.count_documents({}) == 0:
        role_permissions_collection.insert_many(default_permission_rows())

    set_setting('installed', True)
    app.logger.info('Installation complete for %s', admin_email)
    return jsonify({'success': True, 'message': 'Installation complete!'})


# ==================== CATALOG ====================
def public_product_filter():
    return {'is_active': True, 'is_deleted': {'$ne': True}}


def product_view(product):
    view = serialize_doc(product)
    view['price'] = effective_price(product)
    view['in_stock'] = int(product.get('stock_quantity', 0) or 0) > 0
    return view


@app.route('/api/products')
def list_products():
    query = public_product_filter()
    category = request.args.get('category', '').strip()
    search = request.args.get('q', '').strip()
    sort_by = request.args.get('sort', 'latest')

    if category:
        query['category'] = category
    if search:
        pattern = {'$regex': re.escape(search), '$options': 'i'}
        query['$or'] = [{'title': pattern}, {'description': pattern}, {'category': pattern}]

    sort_map = {
        'latest': [('created_at', -1)],
        'price_low': [('regular_price', 1)],
        'price_high': [('regular_price', -1)],
        'name_asc': [('title', 1)],
    }
    page, per_page = get_page_args(default_per_page=24)
    total = products_collection.count_documents(query)
    cursor = products_collection.find(query).sort(sort_map.get(sort_by, sort_map['latest']))
    products = list(cursor.skip((page - 1) * per_page).limit(per_page))

    if sort_by in {'price_low', 'price_high'}:
        products.sort(key=effective_price, reverse=sort_by == 'price_high')

    return jsonify({
        'success': True,
        'products': [product_view(p) for p in products],
        'page': page,
        'per_page': per_page,
        'total': total,
    })


@app.route('/api/products/<slug>')
def product_detail(slug):
    query = public_product_filter()
    query['slug'] = slug
    product = products_collection.find_one(query)
    if not product:
        return json_error('Product not found', 404)
    return jsonify({'success': True, 'product': product_view(product)})


@app.route('/api/categories')
def list_categories():
    categories = sorted(c for c in products_collection.distinct('category', public_product_filter()) if c)
    return jsonify({'success': True, 'categories': categories})


# ==================== CART ====================
def cart_response(user_id=None):
    items, total = build_cart_items(user_id)
    return jsonify({
        'success': True,
        'items': items,
        'cart_total': total,
        'cart_count': sum(i['quantity'] for i in items),
    })


@app.route('/api/cart')
def view_cart():
    return cart_response(session.get('user_id'))


@app.route('/api/cart/add', methods=['POST'])
def add_to_cart():
    data = get_json()
    product_id = str(data.get('product_id') or '')
    oid = to_object_id(product_id)
    product = products_collection.find_one({'_id': oid, **public_product_filter()}) if oid else None
    if not product:
        return json_error('Product not found', 404)

    quantity = max(1, parse_int(data.get('quantity'), 1))
    stock = int(product.get('stock_quantity', 0) or 0)
    if stock <= 0:
        return json_error('This product is currently out of stock')

    add_cart_line(session.get('user_id'), product_id, min(quantity, stock), data.get('variation'))
    return cart_response(session.get('user_id'))


@app.route('/api/cart/update', methods=['POST'])
def update_cart():
    data = get_json()
    product_id = str(data.get('product_id') or '')
    variation = data.get('variation')
    quantity = parse_int(data.get('quantity'), 1)
    user_id = session.get('user_id')

    if quantity <= 0:
        return remove_cart_line(user_id, product_id, variation)

    oid = to_object_id(product_id)
    product = products_collection.find_one({'_id': oid}) if oid else None
    if product:
        stock = int(product.get('stock_quantity', 0) or 0)
        if stock <= 0:
            return json_error('This product is currently out of stock')
        quantity = min(quantity, stock)

    if user_id:
        result = cart_collection.update_one(
            {'user_id': user_id, 'product_id': product_id, 'variation': variation},
            {'$set': {'quantity': quantity, 'updated_at': datetime.utcnow()}}
        )
        if result.matched_count == 0:
            return json_error('Cart item not found', 404)
    else:
        lines = get_guest_cart()
        for line in lines:
            if line.get('product_id') == product_id and line.get('variation') == variation:
                line['quantity'] = quantity
                break
        else:
            return json_error('Cart item not found', 404)
        save_guest_cart(lines)
    return cart_response(user_id)


def remove_cart_line(user_id, product_id, variation=None):
    if user_id:
        cart_collection.delete_one({'user_id': user_id, 'product_id': product_id, 'variation': variation})
    else:
        save_guest_cart([
            line for line in get_guest_cart()
            if not (line.get('product_id') == product_id and line.get('variation') == variation)
        ])
    return cart_response(user_id)


@app.route('/api/cart/remove', methods=['POST'])
def remove_from_cart():
    data = get_json()
    return remove_cart_line(session.get('user_id'), str(data.get('product_id') or ''), data.get('variation'))


@app.route('/api/cart/clear', methods=['POST'])
def clear_cart():
    user_id = session.get('user_id')
    if user_id:
        cart_collection.delete_many({'user_id': user_id})
    else:
        save_guest_cart([])
    return cart_response(user_id)


# ==================== SHIPPING & COUPONS ====================
@app.route('/api/shipping/zones')
def list_shipping_zones():
    zones = list(shipping_zones_collection.find({'is_active': True}).sort('name', 1))
    result = []
    for zone in zones:
        rates = list(shipping_rates_collection.find({'zone_id': str(zone['_id'])}).sort('area_name', 1))
        view = serialize_doc(zone)
        view['rates'] = serialize_doc(rates)
        result.append(view)
    return jsonify({'success': True, 'zones': result})


@app.route('/api/coupons/validate', methods=['POST'])
def validate_coupon():
    data = get_json()
    user_id = session.get('user_id')
    items, subtotal = build_cart_items(user_id)
    if data.get('subtotal') is not None and not items:
        subtotal = parse_number(data.get('subtotal'))
    result = evaluate_coupon((data.get('code') or '').strip(), subtotal, user_id, items)
    if not result['valid']:
        return jsonify({'success': False, 'message': result['message']})
    return jsonify({
        'success': True,
        'message': result['message'],
        'discount': result['discount'],
        'coupon_code': result['coupon']['code'],
    })


@app.route('/api/checkout/summary', methods=['POST'])
def checkout_summary():
    data = get_json()
    user_id = session.get('user_id')
    items, _ = build_cart_items(user_id)
    available = [i for i in items if i['is_available']]
    subtotal = sum(i['subtotal'] for i in available)

    delivery_charge = calculate_delivery_charge(find_shipping_rate(data.get('shipping_rate_id')), subtotal)
    discount = 0.0
    coupon_message = None
    if data.get('coupon_code'):
        result = evaluate_coupon(data['coupon_code'], subtotal, user_id, available)
        coupon_message = result['message']
        if result['valid']:
            discount = result['discount']

    return jsonify({
        'success': True,
        'items': available,
        'subtotal': subtotal,
        'delivery_charge': delivery_charge,
        'discount': discount,
        'grand_total': max(0.0, subtotal + delivery_charge - discount),
        'coupon_message': coupon_message,
    })


# ==================== CHECKOUT ====================
def is_method_enabled(payment_methods, method):
    if method not in GATEWAY_LABELS:
        return False
    config = (payment_methods or {}).get(method) or {}
    if method == 'cod':
        return config.get('enabled', True) is not False
    return bool(config.get('enabled'))


@app.route('/api/orders', methods=['POST'])
@login_required
def place_order():
    data = get_json()
    user_id = g.user_id
    address = (data.get('address') or '').strip()
    phone = (data.get('phone') or '').strip()
    payment_method = (data.get('payment_method') or 'cod').strip().lower()
    coupon_code = (data.get('coupon_code') or '').strip()
    buy_now = data.get('buy_now')

    if not address or not phone:
        return json_error('Address and phone are required')
    if not is_method_enabled(get_setting('payment_methods'), payment_method):
        return json_error('Selected payment method is not available')

    manual = data.get('manual_payment') or {}
    if payment_method == 'manual_payment':
        if not (manual.get('transaction_id') or '').strip() or not (manual.get('method_name') or '').strip():
            return json_error('Transaction ID and payment method are required')

    if buy_now:
        lines = [{
            'product_id': str(buy_now.get('product_id') or ''),
            'quantity': max(1, parse_int(buy_now.get('quantity'), 1)),
            'variation': buy_now.get('variation'),
        }]
    else:
        lines = raw_cart_lines(user_id)

    order_items = []
    subtotal = 0.0
    for line in lines:
        oid = to_object_id(line.get('product_id'))
        product = products_collection.find_one({'_id': oid, **public_product_filter()}) if oid else None
        if not product:
            continue
        stock = int(product.get('stock_quantity', 0) or 0)
        quantity = max(0, min(int(line.get('quantity', 1) or 1), stock))
        if quantity <= 0:
            continue
        price = effective_price(product)
        order_items.append({
            'product_id': str(product['_id']),
            'product_name': product.get('title', 'Product'),
            'quantity': quantity,
            'price': price,
            'variation': line.get('variation'),
        })
        subtotal += price * quantity

    if not order_items:
        return json_error('No valid items in cart')

    rate = find_shipping_rate(data.get('shipping_rate_id'))
    delivery_charge = calculate_delivery_charge(rate, subtotal)

    discount = 0.0
    applied_coupon = None
    if coupon_code:
        coupon_eval = evaluate_coupon(coupon_code, subtotal, user_id, order_items)
        if not coupon_eval['valid']:
            return json_error(coupon_eval['message'])
        discount = coupon_eval['discount']
        applied_coupon = coupon_eval['coupon']

    for item in order_items:
        products_collection.update_one(
            {'_id': ObjectId(item['product_id'])},
            {'$inc': {'stock_quantity': -item['quantity']}, '$set': {'updated_at': datetime.utcnow()}}
        )

    order_id = ObjectId()
    total = round(max(0.0, subtotal + delivery_charge - discount), 2)
    order = {
        '_id': order_id,
        'order_ref': str(order_id),
        'user_id': user_id,
        'items': order_items,
        'subtotal': subtotal,
        'delivery_charge': delivery_charge,
        'discount': discount,
        'total': total,
        'status': 'confirmed' if payment_method == 'cod' else 'pending',
        'payment_method': payment_method,
        'payment_status': 'unpaid',
        'transaction_id': None,
        'shipping_address': {
            'address': address,
            'phone': phone,
            'delivery_area': rate.get('area_name') if rate else (data.get('delivery_area') or ''),
            'delivery_charge': delivery_charge,
        },
        'coupon_code': applied_coupon['code'] if applied_coupon else None,
        'notes': {'customer_note': data['notes']} if data.get('notes') else {},
        'created_at': datetime.utcnow(),
        'updated_at': datetime.utcnow(),
    }
    if payment_method == 'manual_payment':
        order['payment_status'] = 'verifying'
        order['transaction_id'] = manual['transaction_id'].strip()
        order['notes'].update({
            'manual_method': manual['method_name'].strip(),
            'account_number': manual.get('account_number', ''),
            'transaction_id': manual['transaction_id'].strip(),
            'screenshot_url': manual.get('screenshot_url', ''),
            'expected_amount': total,
            'promo': applied_coupon['code'] if applied_coupon else None,
        })

    orders_collection.insert_one(order)
    if applied_coupon:
        record_coupon_usage(applied_coupon, user_id, order_id)
    if not buy_now:
        cart_collection.delete_many({'user_id': user_id})
    if payment_method == 'cod':
        send_order_confirmation(order)

    log_activity('order_placed', 'order', order_id, {'total': total, 'payment_method': payment_method})
    return jsonify({
        'success': True,
        'order_id': str(order_id),
        'total': total,
        'status': order['status'],
    }), 201


@app.route('/api/orders')
@login_required
def my_orders():
    orders = list(orders_collection.find({'user_id': g.user_id}).sort('created_at', -1).limit(100))
    return jsonify({'success': True, 'orders': serialize_doc(orders)})


@app.route('/api/orders/<order_id>')
@login_required
def order_detail(order_id):
    order = find_order(order_id, user_id=g.user_id)
    if not order:
        return json_error('Order not found', 404)
    enrich_order_items([order])
    return jsonify({'success': True, 'order': serialize_doc(order)})


# ==================== ORDER TRACKING ====================
@app.route('/api/track-order', methods=['POST'])
def track_order():
    data = get_json()
    order_id = (data.get('order_id') or '').strip().lower()
    phone = (data.get('phone') or '').strip()
    email = (data.get('email') or '').strip().lower()

    if order_id:
        order = find_order(order_id)
        if not order and len(order_id) >= 6:
            order = orders_collection.find_one(
                {'order_ref': {'$regex': f'^{re.escape(order_id)}'}},
                sort=[('created_at', -1)]
            )
        if not order:
            return jsonify({'orders': [], 'message': 'Order not found'})
        enrich_order_items([order])
        return jsonify({'orders': serialize_doc([tracking_view(order)])})

    if phone or email:
        if phone:
            users = users_collection.find({'phone': phone}, {'_id': 1})
        else:
            users = users_collection.find({'email': email}, {'_id': 1})
        user_ids = [str(u['_id']) for u in users]
        if not user_ids:
            return jsonify({'orders': [], 'message': 'No orders found'})

        orders = list(orders_collection.find({
            'user_id': {'$in': user_ids},
            'status': {'$ne': 'delivered'}
        }).sort('created_at', -1).limit(50))
        if not orders:
            return jsonify({'orders': [], 'message': 'No active orders found'})
        enrich_order_items(orders)
        return jsonify({'orders': serialize_doc([tracking_view(o) for o in orders])})

    return jsonify({'orders': [], 'message': 'Please provide order ID, phone, or email'})


# ==================== TESTIMONIALS (PUBLIC) ====================
@app.route('/api/testimonials')
def public_testimonials():
    rows = testimonials_collection.find({'is_active': True, 'is_deleted': {'$ne': True}}).sort('created_at', -1)
    return jsonify({'success': True, 'testimonials': serialize_doc(list(rows))})


# ==================== PAYMENTS ====================
def public_payment_methods(payment_methods):
    methods = {}
    for key, label in GATEWAY_LABELS.items():
        config = (payment_methods or {}).get(key) or {}
        methods[key] = {
            'label': label,
            'enabled': is_method_enabled(payment_methods, key),
            'sandbox': config.get('sandbox') is True,
        }
    manual = (payment_methods or {}).get('manual_payment') or {}
    methods['manual_payment'].update({
        'gateway_name': manual.get('gateway_name') or 'Manual Payment',
        'description': manual.get('description', ''),
        'accounts': [
            {
                'method_name': a.get('method_name'),
                'account_number': a.get('account_number'),
                'account_type': a.get('account_type'),
                'instruction': a.get('instruction', ''),
            }
            for a in manual.get('accounts', []) if a.get('enabled', True)
        ],
    })
    return methods


@app.route('/api/payment-methods')
def payment_methods():
    return jsonify({'success': True, 'methods': public_payment_methods(get_setting('payment_methods'))})


def prepare_gateway_payment(gateway):
    """Checks shared by every gateway init endpoint.

    Returns (order, gateway_config, None) or (None, None, error_response).
    """
    data = get_json()
    order_id = data.get('order_id')
    label = GATEWAY_LABELS[gateway]
    if not order_id or not isinstance(order_id, str):
        return None, None, json_error('order_id is required')

    order = find_order(order_id, user_id=g.user_id)
    if not order:
        app.logger.warning('[%s] order %s not found for user %s', label, order_id, g.user_id)
        return None, None, json_error('Order not found', 404)
    if order.get('status') != 'pending':
        return None, None, json_error('Order already processed')

    methods = get_setting('payment_methods')
    if not methods:
        app.logger.error('[%s] payment_methods setting is missing', label)
        return None, None, json_error('Payment gateway not configured', 500)

    config = methods.get(gateway) or {}
    if not config.get('enabled'):
        return None, None, json_error(f'{label} is not enabled')
    return order, config, None


def gateway_config(gateway):
    return (get_setting('payment_methods') or {}).get(gateway)


def credentials_missing(label):
    app.logger.error('[%s] missing credentials in payment settings', label)
    return json_error(f'{label} credentials not configured. Please set them in Admin → Settings → Payment.', 500)


def gateway_failure(label, error):
    app.logger.error('[%s] %s: %s', label, error.message, error.details)
    details = error.details if isinstance(error.details, str) else None
    return json_error(error.message, 500, details=details)


# --- bKash ---
@app.route('/api/payments/bkash/init', methods=['POST'])
@login_required
def bkash_init():
    order, config, error = prepare_gateway_payment('bkash')
    if error:
        return error

    gateway = BkashClient.from_settings(config)
    if not gateway.configured:
        return credentials_missing('bKash')

    app.logger.info('[bKash] initiating payment for order %s, amount=%s, sandbox=%s',
                    order['_id'], order['total'], gateway.sandbox)
    try:
        payment = gateway.create_payment(
            order_id=order['_id'],
            amount=order['total'],
            payer_reference=g.user_id,
            callback_url=callback_url('/api/payments/bkash/callback'),
        )
    except PaymentGatewayError as e:
        return gateway_failure('bKash', e)

    update_order(order, {'transaction_id': payment['payment_id']})
    return jsonify({'success': True, 'gateway_url': payment['gateway_url']})


@app.route('/api/payments/bkash/callback')
def bkash_callback():
    payment_id = request.args.get('paymentID')
    status = request.args.get('status')
    app.logger.info('[bKash callback] paymentID=%s status=%s', payment_id, status)
    if not payment_id:
        return payment_redirect('fail')

    try:
        order = orders_collection.find_one({'transaction_id': payment_id})
        if not order:
            app.logger.warning('[bKash callback] no order for paymentID %s', payment_id)
            return payment_redirect('fail')
        order_id = str(order['_id'])

        if status == 'success':
            config = gateway_config('bkash')
            if not config:
                fail_order_payment(order)
                return payment_redirect('fail', order_id)
            gateway = BkashClient.from_settings(config)
            try:
                result = gateway.execute_payment(payment_id)
            except PaymentGatewayError as e:
                app.logger.error('[bKash callback] execute failed: %s', e)
                fail_order_payment(order)
                return payment_redirect('fail', order_id)

            if BkashClient.is_completed(result):
                confirm_order_payment(order, 'bkash', result.get('trxID') or payment_id)
                return payment_redirect('success', order_id)
            app.logger.warning('[bKash callback] not completed: %s', result.get('statusMessage'))
            fail_order_payment(order)
            return payment_redirect('fail', order_id)

        if status == 'cancel':
            fail_order_payment(order, 'cancelled')
            return payment_redirect('cancel', order_id)

        fail_order_payment(order)
        return payment_redirect('fail', order_id)
    except Exception:
        app.logger.exception('[bKash callback] error')
        return payment_redirect('fail')


# --- Nagad ---
@app.route('/api/payments/nagad/init', methods=['POST'])
@login_required
def nagad_init():
    order, config, error = prepare_gateway_payment('nagad')
    if error:
        return error

    gateway = NagadClient.from_settings(config)
    if not gateway.configured:
        return credentials_missing('Nagad')

    app.logger.info('[Nagad] initiating payment for order %s, amount=%s, sandbox=%s',
                    order['_id'], order['total'], gateway.sandbox)
    try:
        result = gateway.initialize(
            order_id=order['_id'],
            amount=order['total'],
            callback_url=callback_url('/api/payments/nagad/callback'),
        )
    except PaymentGatewayError as e:
        return gateway_failure('Nagad', e)

    notes = dict(order.get('notes') or {})
    notes.update({'nagad_payment_ref': result['payment_ref_id'], 'nagad_trx_id': result['trx_id']})
    update_order(order, {'transaction_id': result['trx_id'], 'notes': notes})
    return jsonify({'success': True, 'gateway_url': result['gateway_url']})


def find_nagad_order(order_id, payment_ref_id):
    order = find_order(order_id) if order_id else None
    if order or not payment_ref_id:
        return order
    for candidate in orders_collection.find({}).sort('created_at', -1).limit(50):
        notes = candidate.get('notes') or {}
        if payment_ref_id in (notes.get('nagad_payment_ref'), notes.get('nagad_trx_id')):
            return candidate
    return None


@app.route('/api/payments/nagad/callback')
def nagad_callback():
    payment_ref_id = request.args.get('payment_ref_id') or request.args.get('paymentRefId')
    status = request.args.get('status') or request.args.get('status_code')
    order_id = request.args.get('order_id') or request.args.get('orderId')
    app.logger.info('[Nagad callback] ref=%s status=%s order=%s', payment_ref_id, status, order_id)

    try:
        order = find_nagad_order(order_id, payment_ref_id)
        if not order:
            return payment_redirect('fail')
        order_id = str(order['_id'])

        if status in nagad_gateway.SUCCESS_STATUSES:
            config = gateway_config('nagad')
            if config and payment_ref_id:
                gateway = NagadClient.from_settings(config)
                try:
                    verified = gateway.verify(payment_ref_id)
                except PaymentGatewayError as e:
                    # Verification unreachable: the success callback stands.
                    app.logger.warning('[Nagad callback] verification error, trusting callback: %s', e)
                    confirm_order_payment(order, 'nagad', payment_ref_id)
                    return payment_redirect('success', order_id)

                if verified.get('status') == 'Success':
                    confirm_order_payment(order, 'nagad', verified.get('issuerPaymentRefNo') or payment_ref_id)
                    return payment_redirect('success', order_id)
                fail_order_payment(order)
                return payment_redirect('fail', order_id)

            confirm_order_payment(order, 'nagad', payment_ref_id or order.get('transaction_id'))
            return payment_redirect('success', order_id)

        if status in nagad_gateway.CANCEL_STATUSES:
            fail_order_payment(order, 'cancelled')
            return payment_redirect('cancel', order_id)

        fail_order_payment(order)
        return payment_redirect('fail', order_id)
    except Exception:
        app.logger.exception('[Nagad callback] error')
        return payment_redirect('fail')


# --- SSLCommerz ---
@app.route('/api/payments/sslcommerz/init', methods=['POST'])
@login_required
def sslcommerz_init():
    order, config, error = prepare_gateway_payment('sslcommerz')
    if error:
        return error

    gateway = SSLCommerzClient.from_settings(config)
    if not gateway.configured:
        return credentials_missing('SSLCommerz')

    user = g.user
    customer = {
        'cus_name': user.get('name'),
        'cus_email': user.get('email'),
        'cus_phone': user.get('phone'),
        'cus_add1': user.get('address'),
        'cus_city': user.get('city'),
        'cus_postcode': user.get('zip_code'),
        'cus_country': user.get('country'),
    }
    app.logger.info('[SSLCommerz] initiating payment for order %s, amount=%s, sandbox=%s',
                    order['_id'], order['total'], gateway.sandbox)
    try:
        gateway_url = gateway.create_session(
            order_id=order['_id'],
            amount=order['total'],
            ipn_url=callback_url('/api/payments/sslcommerz/ipn'),
            customer=customer,
        )
    except PaymentGatewayError as e:
        return gateway_failure('SSLCommerz', e)
    return jsonify({'success': True, 'gateway_url': gateway_url})


@app.route('/api/payments/sslcommerz/ipn', methods=['POST'])
def sslcommerz_ipn():
    tran_id = request.form.get('tran_id')
    status = request.form.get('status')
    val_id = request.form.get('val_id')
    bank_tran_id = request.form.get('bank_tran_id')
    app.logger.info('[SSLCommerz IPN] tran_id=%s status=%s', tran_id, status)
    if not tran_id:
        return payment_redirect('fail')

    try:
        order = find_order(tran_id)
        if not order:
            return payment_redirect('fail')

        if status in {'VALID', 'VALIDATED'}:
            config = gateway_config('sslcommerz')
            if not config:
                app.logger.error('[SSLCommerz IPN] no SSLCommerz config found')
                fail_order_payment(order)
                return payment_redirect('fail', tran_id)

            try:
                valid = SSLCommerzClient.from_settings(config).validate(val_id)
            except PaymentGatewayError as e:
                app.logger.error('[SSLCommerz IPN] validation error: %s', e)
                valid = False

            if valid:
                confirm_order_payment(order, 'sslcommerz', bank_tran_id or val_id or tran_id)
                return payment_redirect('success', tran_id)
            fail_order_payment(order)
            return payment_redirect('fail', tran_id)

        if status == 'FAILED':
            fail_order_payment(order)
            return payment_redirect('fail', tran_id)
        if status == 'CANCELLED':
            fail_order_payment(order, 'cancelled')
            return payment_redirect('cancel', tran_id)
        return payment_redirect('fail')
    except Exception:
        app.logger.exception('[SSLCommerz IPN] error')
        return payment_redirect('fail')


# --- PayPal ---
@app.route('/api/payments/paypal/create', methods=['POST'])
@login_required
def paypal_create_order():
    order, config, error = prepare_gateway_payment('paypal')
    if error:
        return error

    gateway = PayPalClient.from_settings(config)
    if not gateway.configured:
        return credentials_missing('PayPal')

    app.logger.info('[PayPal] creating order for %s, amount=%s, sandbox=%s',
                    order['_id'], order['total'], gateway.sandbox)
    try:
        paypal_order_id = gateway.create_order(order['_id'], order['total'])
    except PaymentGatewayError as e:
        return gateway_failure('PayPal', e)

    update_order(order, {'transaction_id': paypal_order_id})
    return jsonify({'success': True, 'paypal_order_id': paypal_order_id})


@app.route('/api/payments/paypal/capture', methods=['POST'])
@login_required
def paypal_capture_order():
    paypal_order_id = get_json().get('paypal_order_id')
    if not paypal_order_id:
        return json_error('paypal_order_id is required')

    order, config, error = prepare_gateway_payment('paypal')
    if error:
        return error

    gateway = PayPalClient.from_settings(config)
    if not gateway.configured:
        return json_error('PayPal not configured', 500)

    app.logger.info('[PayPal] capturing order %s', paypal_order_id)
    try:
        status = gateway.capture_order(paypal_order_id)
    except PaymentGatewayError as e:
        return gateway_failure('PayPal', e)

    if status == 'COMPLETED':
        confirm_order_payment(order, 'paypal', paypal_order_id)
        return jsonify({'success': True, 'status': 'COMPLETED'})

    fail_order_payment(order)
    return json_error('Payment not completed', 400, paypal_status=status)


# --- Stripe ---
@app.route('/api/payments/stripe/checkout', methods=['POST'])
@login_required
def stripe_create_checkout():
    order, config, error = prepare_gateway_payment('stripe')
    if error:
        return error
    if not config.get('secret_key'):
        return json_error('Stripe secret key not configured', 500)

    try:
        result = stripe_checkout.create_checkout_session(
            secret_key=config['secret_key'],
            order=order,
            user_id=g.user_id,
            site_url=app.config['SITE_URL'],
            currency=config.get('currency') or 'usd',
        )
    except PaymentGatewayError as e:
        return gateway_failure('Stripe', e)

    update_order(order, {'transaction_id': result['session_id']})
    return jsonify({'success': True, 'gateway_url': result['gateway_url']})


@app.route('/api/payments/stripe/webhook', methods=['POST'])
def stripe_webhook():
    config = gateway_config('stripe') or {}
    try:
        event = stripe_checkout.parse_webhook_event(
            request.get_data(),
            request.headers.get('Stripe-Signature'),
            config.get('webhook_secret'),
        )
    except ValueError as e:
        app.logger.warning('[Stripe webhook] rejected: %s', e)
        return 'Invalid payload', 400

    event_type = event.get('type')
    session_obj = (event.get('data') or {}).get('object') or {}
    order_id = (session_obj.get('metadata') or {}).get('order_id')
    app.logger.info('[Stripe webhook] event type: %s order=%s', event_type, order_id)

    order = find_order(order_id) if order_id else None
    if order and event_type == 'checkout.session.completed':
        if session_obj.get('payment_status') == 'paid':
            confirm_order_payment(order, 'stripe', session_obj.get('id'))
    elif order and event_type == 'checkout.session.expired':
        fail_order_payment(order)
    elif not order and event_type in {'checkout.session.completed', 'checkout.session.expired'}:
        app.logger.error('[Stripe webhook] no order for metadata order_id=%s', order_id)
    return 'OK', 200


# ==================== NOTIFICATION API ====================
@app.route('/api/notifications/send', methods=['POST'])
def send_notification():
    secret = app.config['INTERNAL_SECRET']
    is_internal = bool(secret) and request.headers.get('X-Internal-Secret') == secret
    if not is_internal and not current_user():
        return json_error('Unauthorized', 401)

    data = get_json()
    if data.get('type') != 'order_confirmation':
        return json_error('Unknown notification type')

    order = find_order((data.get('data') or {}).get('order_id'))
    if not order:
        return json_error('Order not found', 404)
    subject, _ = build_order_confirmation(order)
    sent, _ = send_order_confirmation(order)
    return jsonify({'success': True, 'message': 'Notification processed', 'email_sent': sent, 'subject': subject})


# ==================== ADMIN: DASHBOARD ====================
def calculate_total_revenue():
    """Calculate total revenue from confirmed and later orders"""
    pipeline = [
        {'$match': {'status': {'$in': REVENUE_STATUSES}}},
        {'$group': {'_id': None, 'total': {'$sum': '$total'}}}
    ]
    result = list(orders_collection.aggregate(pipeline))
    return result[0]['total'] if result else 0


def get_top_selling_products(limit=5):
    """Get top selling products"""
    pipeline = [
        {'$match': {'status': {'$in': REVENUE_STATUSES}}},
        {'$unwind': '$items'},
        {'$group': {
            '_id': '$items.product_id',
            'name': {'$first': '$items.product_name'},
            'total_sold': {'$sum': '$items.quantity'},
            'total_revenue': {'$sum': {'$multiply': ['$items.price', '$items.quantity']}}
        }},
        {'$sort': {'total_sold': -1}},
        {'$limit': limit}
    ]
    return [
        {'product_id': row['_id'], 'name': row['name'], 'total_sold': row['total_sold'],
         'total_revenue': row['total_revenue']}
        for row in orders_collection.aggregate(pipeline)
    ]


def get_order_status_stats():
    """Get order status distribution"""
    pipeline = [{'$group': {'_id': '$status', 'count': {'$sum': 1}}}]
    return {row['_id']: row['count'] for row in orders_collection.aggregate(pipeline)}


@app.route('/admin/api/stats')
@permission_required('dashboard_access')
def admin_api_stats():
    total_orders = orders_collection.count_documents({})
    stats = {
        'total_products': products_collection.count_documents({'is_deleted': {'$ne': True}}),
        'total_orders': total_orders,
        'total_customers': users_collection.count_documents({'role': CUSTOMER_ROLE}),
        'order_status': get_order_status_stats(),
        'top_products': get_top_selling_products(),
        'low_stock_products': products_collection.count_documents(
            {'is_deleted': {'$ne': True}, 'stock_quantity': {'$lt': 10, '$gt': 0}}
        ),
        'out_of_stock': products_collection.count_documents({'is_deleted': {'$ne': True}, 'stock_quantity': {'$lte': 0}}),
    }
    if can(g.user, 'revenue_access'):
        revenue = calculate_total_revenue()
        stats['total_revenue'] = revenue
        stats['avg_order_value'] = revenue / total_orders if total_orders else 0
    return jsonify({'success': True, 'stats': stats})


# ==================== ADMIN: ORDERS ====================
@app.route('/admin/api/orders')
@permission_required('order_view')
def admin_orders():
    query = {}
    status = request.args.get('status', '').strip()
    if status:
        query['status'] = status
    if request.args.get('payment_status'):
        query['payment_status'] = request.args['payment_status']
    page, per_page = get_page_args()
    cursor = orders_collection.find(query).sort('created_at', -1)
    return jsonify({'success': True, **paginate(cursor, orders_collection.count_documents(query), page, per_page)})


@app.route('/admin/api/orders/<order_id>/status', methods=['POST'])
@permission_required('order_manage')
def admin_update_order_status(order_id):
    order = find_order(order_id)
    if not order:
        return json_error('Order not found', 404)
    new_status = (get_json().get('status') or '').strip()
    if new_status not in ORDER_STATUSES:
        return json_error('Invalid order status')

    update_order(order, {'status': new_status})
    log_activity('order_status_changed', 'order', order['_id'], {'from': order.get('status'), 'to': new_status})
    return jsonify({'success': True, 'message': 'Order status updated'})


@app.route('/admin/api/orders/<order_id>/manual-payment', methods=['POST'])
@permission_required('order_manage')
def admin_review_manual_payment(order_id):
    order = find_order(order_id)
    if not order:
        return json_error('Order not found', 404)
    if order.get('payment_method') != 'manual_payment':
        return json_error('Order was not paid manually')

    action = get_json().get('action')
    if action == 'verify':
        confirm_order_payment(order, 'manual_payment', order.get('transaction_id'))
    elif action == 'reject':
        fail_order_payment(order)
    else:
        return json_error('Unknown action')
    log_activity(f'manual_payment_{action}', 'order', order['_id'])
    return jsonify({'success': True})


@app.route('/admin/api/orders/<order_id>', methods=['DELETE'])
@permission_required('order_delete')
def admin_delete_order(order_id):
    order = find_order(order_id)
    if not order:
        return json_error('Order not found', 404)
    orders_collection.delete_one({'_id': order['_id']})
    coupon_usage_collection.delete_many({'order_id': str(order['_id'])})
    log_activity('order_deleted', 'order', order['_id'])
    return jsonify({'success': True})


# ==================== ADMIN: PRODUCTS ====================
def unique_slug(base, exclude_id=None):
    slug = slugify(base) or 'product'
    candidate = slug
    counter = 2
    while True:
        query = {'slug': candidate}
        if exclude_id:
            query['_id'] = {'$ne': exclude_id}
        if not products_collection.find_one(query):
            return candidate
        candidate = f'{slug}-{counter}'
        counter += 1


def product_fields_from(data, partial=False):
    """Validate a product payload. Returns (fields, error_message)."""
    fields = {}
    if 'title' in data or not partial:
        title = (data.get('title') or '').strip()
        if not title:
            return None, 'Title is required'
        fields['title'] = title
    if 'regular_price' in data or not partial:
        regular = parse_number(data.get('regular_price'), -1)
        if regular < 0:
            return None, 'Regular price must be a positive number'
        fields['regular_price'] = regular
    if 'discount_price' in data:
        raw = data.get('discount_price')
        fields['discount_price'] = None if raw in (None, '') else parse_number(raw, 0)
    if 'stock_quantity' in data or not partial:
        fields['stock_quantity'] = max(0, parse_int(data.get('stock_quantity'), 0))
    for key in ('description', 'category', 'image_url'):
        if key in data or not partial:
            fields[key] = (data.get(key) or '').strip()
    for key in ('images', 'variations'):
        if key in data or not partial:
            fields[key] = data.get(key) or []
    if 'is_active' in data or not partial:
        fields['is_active'] = bool(data.get('is_active', True))

    regular = fields.get('regular_price')
    discount = fields.get('discount_price')
    if discount is not None and regular is not None and discount > regular:
        return None, 'Discount price cannot be greater than regular price'
    return fields, None


@app.route('/admin/api/products')
@permission_required('product_view')
def admin_products():
    query = {'is_deleted': True} if request.args.get('trash') else {'is_deleted': {'$ne': True}}
    search = request.args.get('q', '').strip()
    if search:
        query['title'] = {'$regex': re.escape(search), '$options': 'i'}
    page, per_page = get_page_args()
    cursor = products_collection.find(query).sort('created_at', -1)
    return jsonify({'success': True, **paginate(cursor, products_collection.count_documents(query), page, per_page)})


@app.route('/admin/api/products', methods=['POST'])
@permission_required('product_add')
def admin_add_product():
    data = get_json()
    fields, error = product_fields_from(data)
    if error:
        return json_error(error)
    fields.setdefault('discount_price', None)
    fields['slug'] = unique_slug(data.get('slug') or fields['title'])
    fields.update({'is_deleted': False, 'deleted_at': None,
                   'created_at': datetime.utcnow(), 'updated_at': datetime.utcnow()})
    product_id = products_collection.insert_one(fields).inserted_id
    log_activity('product_created', 'product', product_id, {'title': fields['title']})
    return jsonify({'success': True, 'product_id': str(product_id), 'slug': fields['slug']}), 201


@app.route('/admin/api/products/<product_id>', methods=['PUT'])
@permission_required('product_edit')
def admin_edit_product(product_id):
    oid = to_object_id(product_id)
    product = products_collection.find_one({'_id': oid}) if oid else None
    if not product:
        return json_error('Product not found', 404)

    data = get_json()
    fields, error = product_fields_from(data, partial=True)
    if error:
        return json_error(error)
    regular = fields.get('regular_price', product.get('regular_price'))
    discount = fields.get('discount_price', product.get('discount_price'))
    if discount is not None and regular is not None and discount > regular:
        return json_error('Discount price cannot be greater than regular price')
    if data.get('slug'):
        fields['slug'] = unique_slug(data['slug'], exclude_id=oid)
    fields['updated_at'] = datetime.utcnow()
    products_collection.update_one({'_id': oid}, {'$set': fields})
    log_activity('product_updated', 'product', oid)
    return jsonify({'success': True})


@app.route('/admin/api/products/quick-update', methods=['POST'])
@permission_required('product_edit')
def admin_quick_update():
    """Price/stock edit from the product list"""
    data = get_json()
    oid = to_object_id(data.get('id'))
    if not oid or not products_collection.find_one({'_id': oid}):
        return json_error('Product not found', 404)

    fields = {'updated_at': datetime.utcnow()}
    if 'price' in data:
        fields['regular_price'] = max(0.0, parse_number(data['price']))
    if 'discount_price' in data:
        fields['discount_price'] = None if data['discount_price'] in (None, '') else parse_number(data['discount_price'])
    if 'stock' in data:
        fields['stock_quantity'] = max(0, parse_int(data['stock']))
    products_collection.update_one({'_id': oid}, {'$set': fields})
    return jsonify({'success': True, 'message': 'Catalog updated successfully'})


@app.route('/admin/api/products/<product_id>/trash', methods=['POST'])
@permission_required('product_delete')
def admin_trash_product(product_id):
    oid = to_object_id(product_id)
    result = products_collection.update_one(
        {'_id': oid}, {'$set': {'is_deleted': True, 'deleted_at': datetime.utcnow()}}
    ) if oid else None
    if not result or result.matched_count == 0:
        return json_error('Product not found', 404)
    log_activity('product_trashed', 'product', oid)
    return jsonify({'success': True})


@app.route('/admin/api/products/<product_id>/restore', methods=['POST'])
@permission_required('product_delete')
def admin_restore_product(product_id):
    oid = to_object_id(product_id)
    result = products_collection.update_one(
        {'_id': oid}, {'$set': {'is_deleted': False, 'deleted_at': None}}
    ) if oid else None
    if not result or result.matched_count == 0:
        return json_error('Product not found', 404)
    log_activity('product_restored', 'product', oid)
    return jsonify({'success': True})


@app.route('/admin/api/products/<product_id>', methods=['DELETE'])
@permission_required('product_delete')
def admin_delete_product(product_id):
    oid = to_object_id(product_id)
    result = products_collection.delete_one({'_id': oid}) if oid else None
    if not result or result.deleted_count == 0:
        return json_error('Product not found', 404)
    cart_collection.delete_many({'product_id': product_id})
    log_activity('product_deleted', 'product', oid)
    return jsonify({'success': True})


@app.route('/admin/api/products/import', methods=['POST'])
@permission_required('product_add')
def admin_import_products():
    upload = request.files.get('file')
    if not upload or not upload.filename:
        return json_error('Please choose a CSV or XLSX file')

    dry_run = request.form.get('dry_run', '').lower() in {'1', 'true', 'yes'}
    importer = CatalogImporter(products_collection)
    try:
        result = importer.run(io.BytesIO(upload.read()), dry_run=dry_run, filename=upload.filename)
    except ValueError as e:
        return json_error(str(e))

    if result['ok'] and not dry_run:
        log_activity('products_imported', 'product', None,
                     {'created': result['created'], 'updated': result['updated']})
    return jsonify({'success': result['ok'], **result}), 200 if result['ok'] else 400


# ==================== ADMIN: COUPONS ====================
def coupon_fields_from(data):
    code = (data.get('code') or '').strip().upper()
    if not code:
        return None, 'Coupon code is required'
    discount_type = data.get('discount_type') or 'percentage'
    if discount_type not in {'percentage', 'fixed'}:
        return None, 'Invalid discount type'
    value = parse_number(data.get('discount_value'), -1)
    if value <= 0:
        return None, 'Discount value must be greater than zero'
    if discount_type == 'percentage' and value > 100:
        return None, 'Percentage discount cannot exceed 100'
    applies_to = data.get('applies_to') or 'all'
    if applies_to not in {'all', 'new_customers', 'selected_customers', 'selected_products'}:
        return None, 'Invalid coupon target'

    def optional_number(key):
        raw = data.get(key)
        return None if raw in (None, '') else parse_number(raw)

    return {
        'code': code,
        'description': data.get('description', ''),
        'discount_type': discount_type,
        'discount_value': value,
        'max_discount_amount': optional_number('max_discount_amount'),
        'min_order_amount': parse_number(data.get('min_order_amount'), 0),
        'usage_limit': parse_int(data.get('usage_limit'), 0) or None,
        'per_user_limit': parse_int(data.get('per_user_limit'), 0) or None,
        'start_date': parse_date(data.get('start_date')),
        'end_date': parse_date(data.get('end_date')),
        'applies_to': applies_to,
        'selected_customer_ids': [str(x) for x in data.get('selected_customer_ids') or []],
        'selected_product_ids': [str(x) for x in data.get('selected_product_ids') or []],
        'is_active': bool(data.get('is_active', True)),
    }, None


@app.route('/admin/api/coupons')
@permission_required('coupon_view')
def admin_coupons():
    coupons = list(coupons_collection.find().sort('created_at', -1))
    return jsonify({'success': True, 'coupons': serialize_doc(coupons)})


@app.route('/admin/api/coupons', methods=['POST'])
@permission_required('coupon_add')
def admin_add_coupon():
    fields, error = coupon_fields_from(get_json())
    if error:
        return json_error(error)
    if coupons_collection.find_one({'code': fields['code']}):
        return json_error('Coupon code already exists')
    fields.update({'usage_count': 0, 'created_at': datetime.utcnow()})
    coupon_id = coupons_collection.insert_one(fields).inserted_id
    log_activity('coupon_created', 'coupon', coupon_id, {'code': fields['code']})
    return jsonify({'success': True, 'coupon_id': str(coupon_id)}), 201


@app.route('/admin/api/coupons/<coupon_id>', methods=['PUT'])
@permission_required('coupon_edit')
def admin_edit_coupon(coupon_id):
    oid = to_object_id(coupon_id)
    if not oid or not coupons_collection.find_one({'_id': oid}):
        return json_error('Coupon not found', 404)
    fields, error = coupon_fields_from(get_json())
    if error:
        return json_error(error)
    if coupons_collection.find_one({'code': fields['code'], '_id': {'$ne': oid}}):
        return json_error('Coupon code already exists')
    fields['updated_at'] = datetime.utcnow()
    coupons_collection.update_one({'_id': oid}, {'$set': fields})
    log_activity('coupon_updated', 'coupon', oid)
    return jsonify({'success': True})


@app.route('/admin/api/coupons/<coupon_id>', methods=['DELETE'])
@permission_required('coupon_delete')
def admin_delete_coupon(coupon_id):
    oid = to_object_id(coupon_id)
    result = coupons_collection.delete_one({'_id': oid}) if oid else None
    if not result or result.deleted_count == 0:
        return json_error('Coupon not found', 404)
    log_activity('coupon_deleted', 'coupon', oid)
    return jsonify({'success': True})


# ==================== ADMIN: SHIPPING ====================
@app.route('/admin/api/shipping/zones')
@permission_required('shipping_access')
def admin_shipping_zones():
    zones = serialize_doc(list(shipping_zones_collection.find().sort('name', 1)))
    for zone in zones:
        zone['rates'] = serialize_doc(list(shipping_rates_collection.find({'zone_id': zone['id']})))
    return jsonify({'success': True, 'zones': zones})


@app.route('/admin/api/shipping/zones', methods=['POST'])
@permission_required('shipping_manage')
def admin_add_shipping_zone():
    data = get_json()
    name = (data.get('name') or '').strip()
    if not name:
        return json_error('Zone name is required')
    zone_id = shipping_zones_collection.insert_one({
        'name': name,
        'type': data.get('type') or 'district',
        'is_active': bool(data.get('is_active', True)),
        'created_at': datetime.utcnow()
    }).inserted_id
    log_activity('shipping_zone_created', 'shipping_zone', zone_id)
    return jsonify({'success': True, 'zone_id': str(zone_id)}), 201


@app.route('/admin/api/shipping/zones/<zone_id>', methods=['PUT'])
@permission_required('shipping_manage')
def admin_edit_shipping_zone(zone_id):
    oid = to_object_id(zone_id)
    data = get_json()
    fields = {k: data[k] for k in ('name', 'type', 'is_active') if k in data}
    result = shipping_zones_collection.update_one({'_id': oid}, {'$set': fields}) if oid and fields else None
    if not result or result.matched_count == 0:
        return json_error('Shipping zone not found', 404)
    return jsonify({'success': True})


@app.route('/admin/api/shipping/zones/<zone_id>', methods=['DELETE'])
@permission_required('shipping_manage')
def admin_delete_shipping_zone(zone_id):
    oid = to_object_id(zone_id)
    result = shipping_zones_collection.delete_one({'_id': oid}) if oid else None
    if not result or result.deleted_count == 0:
        return json_error('Shipping zone not found', 404)
    shipping_rates_collection.delete_many({'zone_id': zone_id})
    log_activity('shipping_zone_deleted', 'shipping_zone', oid)
    return jsonify({'success': True})


def rate_fields_from(data):
    area_name = (data.get('area_name') or '').strip()
    if not area_name:
        return None, 'Area name is required'
    rate = parse_number(data.get('rate'), -1)
    if rate < 0:
        return None, 'Rate must be zero or more'
    threshold = data.get('free_shipping_threshold')
    return {
        'area_name': area_name,
        'rate': rate,
        'free_shipping_threshold': None if threshold in (None, '') else parse_number(threshold),
    }, None


@app.route('/admin/api/shipping/rates', methods=['POST'])
@permission_required('shipping_manage')
def admin_add_shipping_rate():
    data = get_json()
    zone_oid = to_object_id(data.get('zone_id'))
    if not zone_oid or not shipping_zones_collection.find_one({'_id': zone_oid}):
        return json_error('Shipping zone not found', 404)
    fields, error = rate_fields_from(data)
    if error:
        return json_error(error)
    fields.update({'zone_id': str(zone_oid), 'created_at': datetime.utcnow()})
    rate_id = shipping_rates_collection.insert_one(fields).inserted_id
    return jsonify({'success': True, 'rate_id': str(rate_id)}), 201


@app.route('/admin/api/shipping/rates/<rate_id>', methods=['PUT'])
@permission_required('shipping_manage')
def admin_edit_shipping_rate(rate_id):
    oid = to_object_id(rate_id)
    fields, error = rate_fields_from(get_json())
    if error:
        return json_error(error)
    result = shipping_rates_collection.update_one({'_id': oid}, {'$set': fields}) if oid else None
    if not result or result.matched_count == 0:
        return json_error('Shipping rate not found', 404)
    return jsonify({'success': True})


@app.route('/admin/api/shipping/rates/<rate_id>', methods=['DELETE'])
@permission_required('shipping_manage')
def admin_delete_shipping_rate(rate_id):
    oid = to_object_id(rate_id)
    result = shipping_rates_collection.delete_one({'_id': oid}) if oid else None
    if not result or result.deleted_count == 0:
        return json_error('Shipping rate not found', 404)
    return jsonify({'success': True})


# ==================== ADMIN: TESTIMONIALS ====================
def testimonial_fields_from(data):
    name = (data.get('name') or '').strip()
    content = (data.get('content') or '').strip()
    if not name or not content:
        return None, 'Name and content are required'
    rating = parse_int(data.get('rating'), 5)
    if rating < 1 or rating > 5:
        return None, 'Rating must be between 1 and 5'
    return {
        'name': name,
        'company': (data.get('company') or '').strip(),
        'content': content,
        'rating': rating,
        'is_active': bool(data.get('is_active', True)),
    }, None


@app.route('/admin/api/testimonials')
@permission_required('testimonial_view')
def admin_testimonials():
    query = {'is_deleted': True} if request.args.get('trash') else {'is_deleted': {'$ne': True}}
    rows = list(testimonials_collection.find(query).sort('created_at', -1))
    return jsonify({'success': True, 'testimonials': serialize_doc(rows)})


@app.route('/admin/api/testimonials', methods=['POST'])
@permission_required('testimonial_add')
def admin_add_testimonial():
    fields, error = testimonial_fields_from(get_json())
    if error:
        return json_error(error)
    fields.update({'is_deleted': False, 'deleted_at': None, 'created_at': datetime.utcnow()})
    testimonial_id = testimonials_collection.insert_one(fields).inserted_id
    log_activity('testimonial_created', 'testimonial', testimonial_id)
    return jsonify({'success': True, 'testimonial_id': str(testimonial_id)}), 201


@app.route('/admin/api/testimonials/<testimonial_id>', methods=['PUT'])
@permission_required('testimonial_edit')
def admin_edit_testimonial(testimonial_id):
    oid = to_object_id(testimonial_id)
    fields, error = testimonial_fields_from(get_json())
    if error:
        return json_error(error)
    result = testimonials_collection.update_one({'_id': oid}, {'$set': fields}) if oid else None
    if not result or result.matched_count == 0:
        return json_error('Testimonial not found', 404)
    return jsonify({'success': True})


def set_testimonial_fields(testimonial_id, fields, action):
    oid = to_object_id(testimonial_id)
    result = testimonials_collection.update_one({'_id': oid}, {'$set': fields}) if oid else None
    if not result or result.matched_count == 0:
        return json_error('Testimonial not found', 404)
    log_activity(action, 'testimonial', oid)
    return jsonify({'success': True})


@app.route('/admin/api/testimonials/<testimonial_id>/toggle', methods=['POST'])
@permission_required('testimonial_edit')
def admin_toggle_testimonial(testimonial_id):
    oid = to_object_id(testimonial_id)
    row = testimonials_collection.find_one({'_id': oid}) if oid else None
    if not row:
        return json_error('Testimonial not found', 404)
    return set_testimonial_fields(testimonial_id, {'is_active': not row.get('is_active', True)}, 'testimonial_toggled')


@app.route('/admin/api/testimonials/<testimonial_id>/trash', methods=['POST'])
@permission_required('testimonial_delete')
def admin_trash_testimonial(testimonial_id):
    return set_testimonial_fields(
        testimonial_id, {'is_deleted': True, 'deleted_at': datetime.utcnow()}, 'testimonial_trashed'
    )


@app.route('/admin/api/testimonials/<testimonial_id>/restore', methods=['POST'])
@permission_required('testimonial_delete')
def admin_restore_testimonial(testimonial_id):
    return set_testimonial_fields(
        testimonial_id, {'is_deleted': False, 'deleted_at': None}, 'testimonial_restored'
    )


@app.route('/admin/api/testimonials/<testimonial_id>', methods=['DELETE'])
@permission_required('testimonial_delete')
def admin_delete_testimonial(testimonial_id):
    oid = to_object_id(testimonial_id)
    result = testimonials_collection.delete_one({'_id': oid}) if oid else None
    if not result or result.deleted_count == 0:
        return json_error('Testimonial not found', 404)
    log_activity('testimonial_deleted', 'testimonial', oid)
    return jsonify({'success': True})


@app.route('/admin/api/testimonials/bulk-status', methods=['POST'])
@permission_required('testimonial_edit')
def admin_bulk_testimonial_status():
    data = get_json()
    ids = [oid for oid in (to_object_id(i) for i in data.get('ids') or []) if oid]
    if not ids:
        return json_error('No testimonials selected')
    result = testimonials_collection.update_many(
        {'_id': {'$in': ids}}, {'$set': {'is_active': bool(data.get('is_active'))}}
    )
    return jsonify({'success': True, 'updated': result.modified_count})


# ==================== ADMIN: MARKETING ====================
@app.route('/admin/api/templates')
@permission_required('marketing_template_manage')
def admin_templates():
    rows = list(templates_collection.find().sort('created_at', -1))
    return jsonify({'success': True, 'templates': serialize_doc(rows)})


@app.route('/admin/api/templates', methods=['POST'])
@permission_required('marketing_template_manage')
def admin_add_template():
    data = get_json()
    name = (data.get('name') or '').strip()
    if not name or not data.get('subject') or not data.get('body'):
        return json_error('Name, subject and body are required')
    template_id = templates_collection.insert_one({
        'name': name,
        'subject': data['subject'],
        'body': data['body'],
        'created_at': datetime.utcnow()
    }).inserted_id
    return jsonify({'success': True, 'template_id': str(template_id)}), 201


@app.route('/admin/api/templates/<template_id>', methods=['PUT'])
@permission_required('marketing_template_manage')
def admin_edit_template(template_id):
    oid = to_object_id(template_id)
    data = get_json()
    fields = {k: data[k] for k in ('name', 'subject', 'body') if data.get(k)}
    if not fields:
        return json_error('Nothing to update')
    fields['updated_at'] = datetime.utcnow()
    result = templates_collection.update_one({'_id': oid}, {'$set': fields}) if oid else None
    if not result or result.matched_count == 0:
        return json_error('Template not found', 404)
    return jsonify({'success': True})


@app.route('/admin/api/templates/<template_id>', methods=['DELETE'])
@permission_required('marketing_template_manage')
def admin_delete_template(template_id):
    oid = to_object_id(template_id)
    result = templates_collection.delete_one({'_id': oid}) if oid else None
    if not result or result.deleted_count == 0:
        return json_error('Template not found', 404)
    return jsonify({'success': True})


@app.route('/admin/api/campaigns')
@permission_required('marketing_access')
def admin_campaigns():
    query = {'is_deleted': True} if request.args.get('trash') else {'is_deleted': {'$ne': True}}
    rows = list(campaigns_collection.find(query).sort('created_at', -1))
    return jsonify({'success': True, 'campaigns': serialize_doc(rows)})


@app.route('/admin/api/campaigns', methods=['POST'])
@permission_required('marketing_campaign_create')
def admin_add_campaign():
    data = get_json()
    name = (data.get('name') or '').strip()
    subject = (data.get('subject') or '').strip()
    if not name or not subject or not data.get('body'):
        return json_error('Name, subject and body are required')
    group = data.get('recipient_group') or 'all'
    if group not in {'all', 'new', 'repeat', 'selected'}:
        return json_error('Invalid recipient group')

    campaign_id = campaigns_collection.insert_one({
        'name': name,
        'subject': subject,
        'body': data['body'],
        'recipient_group': group,
        'selected_user_ids': [str(x) for x in data.get('selected_user_ids') or []],
        'status': 'draft',
        'is_paused': False,
        'is_deleted': False,
        'sent_count': 0,
        'failed_count': 0,
        'pending_count': 0,
        'total_count': 0,
        'error_log': '',
        'created_by': g.user_id,
        'created_at': datetime.utcnow()
    }).inserted_id
    log_activity('campaign_created', 'campaign', campaign_id, {'name': name})
    return jsonify({'success': True, 'campaign_id': str(campaign_id)}), 201


@app.route('/admin/api/campaigns/<campaign_id>/trash', methods=['POST'])
@permission_required('marketing_campaign_create')
def admin_trash_campaign(campaign_id):
    oid = to_object_id(campaign_id)
    result = campaigns_collection.update_one(
        {'_id': oid}, {'$set': {'is_deleted': True, 'deleted_at': datetime.utcnow()}}
    ) if oid else None
    if not result or result.matched_count == 0:
        return json_error('Campaign not found', 404)
    return jsonify({'success': True})


@app.route('/admin/api/campaigns/<campaign_id>/restore', methods=['POST'])
@permission_required('marketing_campaign_create')
def admin_restore_campaign(campaign_id):
    oid = to_object_id(campaign_id)
    result = campaigns_collection.update_one(
        {'_id': oid}, {'$set': {'is_deleted': False, 'deleted_at': None}}
    ) if oid else None
    if not result or result.matched_count == 0:
        return json_error('Campaign not found', 404)
    return jsonify({'success': True})


@app.route('/admin/api/campaigns/<campaign_id>', methods=['DELETE'])
@permission_required('marketing_campaign_create')
def admin_delete_campaign(campaign_id):
    oid = to_object_id(campaign_id)
    result = campaigns_collection.delete_one({'_id': oid}) if oid else None
    if not result or result.deleted_count == 0:
        return json_error('Campaign not found', 404)
    log_activity('campaign_deleted', 'campaign', oid)
    return jsonify({'success': True})


def order_counts_by_user():
    pipeline = [{'$group': {'_id': '$user_id', 'count': {'$sum': 1}}}]
    return {row['_id']: row['count'] for row in orders_collection.aggregate(pipeline)}


def list_customers():
    """Non-staff users with their order count and marketing type"""
    counts = order_counts_by_user()
    customers = []
    for user in users_collection.find({'role': {'$nin': [ADMIN_ROLE] + list(STAFF_ROLES)}}).sort('created_at', -1):
        user_id = str(user['_id'])
        order_count = counts.get(user_id, 0)
        customers.append({
            'user_id': user_id,
            'name': user.get('name', ''),
            'email': user.get('email', ''),
            'phone': user.get('phone', ''),
            'is_blocked': bool(user.get('is_blocked')),
            'order_count': order_count,
            'type': classify_customer(user, order_count),
            'created_at': serialize_doc(user.get('created_at')),
        })
    return customers


@app.route('/admin/api/marketing/recipients', methods=['POST'])
@permission_required('marketing_access')
def admin_marketing_recipients():
    data = get_json()
    recipients = select_recipients(list_customers(), data.get('group') or 'all', data.get('user_ids'))
    return jsonify({'success': True, 'recipients': recipients, 'count': len(recipients)})


def run_campaign(mailer, campaign_id, recipients, subject, body, interval_minutes):
    sender = CampaignSender(campaigns_collection, users_collection, mailer)
    try:
        return sender.run(campaign_id, recipients, subject, body, interval_minutes)
    except Exception:
        app.logger.exception('Campaign %s crashed', campaign_id)
        oid = to_object_id(campaign_id)
        if oid:
            campaigns_collection.update_one({'_id': oid}, {'$set': {'status': 'failed'}})
        return None


def set_campaign_state(campaign_id, fields, message):
    oid = to_object_id(campaign_id)
    if not oid:
        return json_error('campaign_id is required')
    result = campaigns_collection.update_one({'_id': oid}, {'$set': fields})
    if result.matched_count == 0:
        return json_error('Campaign not found', 404)
    return jsonify({'success': True, 'message': message})


@app.route('/admin/api/marketing/send', methods=['POST'])
@permission_required('marketing_campaign_send')
def admin_marketing_send():
    data = get_json()
    action = data.get('action')

    # Campaign controls do not need SMTP
    if action == 'pause_campaign':
        return set_campaign_state(data.get('campaign_id'), {'is_paused': True}, 'Campaign paused')
    if action == 'resume_campaign':
        return set_campaign_state(data.get('campaign_id'), {'is_paused': False}, 'Campaign resumed')
    if action == 'stop_campaign':
        return set_campaign_state(
            data.get('campaign_id'), {'status': 'stopped', 'is_paused': False}, 'Campaign stopped'
        )

    config = get_marketing_smtp_config()
    if not config.get('host') or not config.get('user') or not config.get('password'):
        return json_error('SMTP not configured. Go to Settings → Email.')
    mailer = Mailer.from_settings(config)

    if action == 'test_connection':
        recipient = data.get('test_email') or mailer.from_email
        sent, message = mailer.send(
            recipient, 'SMTP Connection Test',
            '<p>Your SMTP settings are working. This is a test email from CommerceX.</p>'
        )
        if not sent:
            return json_error(message)
        return jsonify({'success': True, 'message': f'Test email sent to {recipient}'})

    if action == 'test':
        test_email = (data.get('test_email') or '').strip()
        if not test_email:
            return json_error('test_email is required')
        sent, message = mailer.send(test_email, data.get('subject') or 'Test', data.get('body') or '')
        if not sent:
            return json_error(message)
        return jsonify({'success': True, 'message': f'Test email sent to {test_email}'})

    if action == 'send_campaign':
        recipients = data.get('recipients') or []
        subject = data.get('subject') or ''
        if not recipients or not subject or not data.get('body'):
            return json_error('Recipients, subject and body are required')
        campaign_id = data.get('campaign_id')
        interval = max(0.0, parse_number(data.get('interval_minutes'), 1))

        args = (mailer, campaign_id, recipients, subject, data['body'], interval)
        if app.config.get('CAMPAIGN_SEND_INLINE'):
            result = run_campaign(*args) or {'success': False}
            return jsonify(result)

        threading.Thread(target=run_campaign, args=args, daemon=True).start()
        log_activity('campaign_sent', 'campaign', campaign_id, {'recipients': len(recipients)})
        return jsonify({
            'success': True,
            'message': f'Campaign started for {len(recipients)} recipients',
            'total': len(recipients)
        })

    return json_error('Unknown action')


# ==================== ADMIN: STAFF & CUSTOMERS ====================
@app.route('/admin/api/employees')
@admin_required
def admin_employees():
    rows = users_collection.find({'role': {'$in': list(STAFF_ROLES)}}).sort('created_at', -1)
    return jsonify({'success': True, 'employees': [public_user(u) for u in rows]})


@app.route('/admin/api/employees', methods=['POST'])
@admin_required
def admin_create_employee():
    data = get_json()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    full_name = (data.get('full_name') or '').strip()
    role = data.get('role')
    if not email or not password or not full_name or not role:
        return json_error('Email, password, full name and role are required')
    if role not in STAFF_ROLES:
        return json_error('Invalid role')
    if not EMAIL_RE.match(email):
        return json_error('Invalid email address')
    if users_collection.find_one({'email': email}):
        return json_error('A user with this email already exists')

    user_id = users_collection.insert_one({
        'name': full_name,
        'email': email,
        'phone': data.get('phone', ''),
        'password': generate_password_hash(password),
        'role': role,
        'is_blocked': False,
        'email_verified': True,
        'created_at': datetime.utcnow()
    }).inserted_id
    log_activity('employee_created', 'user', user_id, {'role': role})
    return jsonify({'success': True, 'user_id': str(user_id)}), 201


@app.route('/admin/api/employees/manage', methods=['POST'])
@admin_required
def admin_manage_employee():
    data = get_json()
    action = data.get('action')

    if action == 'get_emails':
        ids = [oid for oid in (to_object_id(i) for i in data.get('user_ids') or []) if oid]
        emails = {str(u['_id']): u.get('email', '') for u in users_collection.find({'_id': {'$in': ids}})}
        return jsonify({'success': True, 'emails': emails})

    oid = to_object_id(data.get('user_id'))
    employee = users_collection.find_one({'_id': oid}) if oid else None
    if not employee:
        return json_error('User not found', 404)

    if action == 'change_role':
        role = data.get('role')
        if role not in STAFF_ROLES:
            return json_error('Invalid role')
        users_collection.update_one({'_id': oid}, {'$set': {'role': role}})
        log_activity('employee_role_changed', 'user', oid, {'from': employee.get('role'), 'to': role})
        return jsonify({'success': True})

    if action == 'update_email':
        return update_user_email(employee, data.get('email'))

    return json_error('Unknown action')


def update_user_email(user, new_email, verified=None):
    email = (new_email or '').strip().lower()
    if not EMAIL_RE.match(email):
        return json_error('Invalid email address')
    if users_collection.find_one({'email': email, '_id': {'$ne': user['_id']}}):
        return json_error('A user with this email already exists')
    fields = {'email': email}
    if verified is not None:
        fields['email_verified'] = bool(verified)
    users_collection.update_one({'_id': user['_id']}, {'$set': fields})
    log_activity('user_email_updated', 'user', user['_id'])
    return jsonify({'success': True})


@app.route('/admin/api/users/credentials', methods=['POST'])
@permission_required('customer_edit')
def admin_user_credentials():
    data = get_json()
    action = data.get('action')

    if action == 'get_users_info':
        ids = [oid for oid in (to_object_id(i) for i in (data.get('user_ids') or [])[:100]) if oid]
        users = [public_user(u) for u in users_collection.find({'_id': {'$in': ids}})]
        return jsonify({'success': True, 'users': users})

    # Credential changes are admin only
    if g.user.get('role') != ADMIN_ROLE:
        return json_error('Admin access required', 403)

    oid = to_object_id(data.get('user_id'))
    user = users_collection.find_one({'_id': oid}) if oid else None
    if not user:
        return json_error('User not found', 404)

    if action == 'reset_password':
        password = data.get('password') or ''
        if len(password) < 6:
            return json_error('Password must be at least 6 characters')
        users_collection.update_one({'_id': oid}, {'$set': {'password': generate_password_hash(password)}})
        log_activity('user_password_reset', 'user', oid)
        return jsonify({'success': True, 'message': 'Password updated'})

    if action == 'update_email':
        return update_user_email(user, data.get('email'), data.get('email_verified'))

    return json_error('Unknown action')


@app.route('/admin/api/users/<user_id>', methods=['DELETE'])
@admin_required
def admin_delete_user(user_id):
    oid = to_object_id(user_id)
    if not oid or not users_collection.find_one({'_id': oid}):
        return json_error('User not found', 404)
    if user_id == g.user_id:
        return json_error('You cannot delete your own account')

    coupon_usage_collection.delete_many({'user_id': user_id})
    orders_collection.delete_many({'user_id': user_id})
    cart_collection.delete_many({'user_id': user_id})
    activity_collection.delete_many({'user_id': user_id})
    auth_tokens_collection.delete_many({'user_id': user_id})
    users_collection.delete_one({'_id': oid})
    log_activity('user_deleted', 'user', oid)
    return jsonify({'success': True})


@app.route('/admin/api/customers')
@permission_required('customer_view')
def admin_customers():
    customers = list_customers()
    customer_type = request.args.get('type')
    if customer_type:
        customers = [c for c in customers if c['type'] == customer_type]
    return jsonify({'success': True, 'customers': customers, 'total': len(customers)})


@app.route('/admin/api/customers/<user_id>/block', methods=['POST'])
@permission_required('customer_edit')
def admin_block_customer(user_id):
    oid = to_object_id(user_id)
    customer = users_collection.find_one({'_id': oid}) if oid else None
    if not customer:
        return json_error('User not found', 404)
    if customer.get('role') != CUSTOMER_ROLE:
        return json_error('Only customers can be blocked')

    blocked = bool(get_json().get('blocked', True))
    users_collection.update_one({'_id': oid}, {'$set': {'is_blocked': blocked}})
    log_activity('customer_blocked' if blocked else 'customer_unblocked', 'user', oid)
    return jsonify({'success': True, 'is_blocked': blocked})


# ==================== ADMIN: PERMISSIONS, SETTINGS, LOGS ====================
@app.route('/admin/api/permissions')
@admin_required
def admin_permissions():
    rows = list(role_permissions_collection.find({}, {'_id': 0}))
    return jsonify({
        'success': True,
        'roles': list(STAFF_ROLES),
        'permissions': list(ALL_PERMISSIONS),
        'grants': serialize_doc(rows)
    })


@app.route('/admin/api/permissions', methods=['POST'])
@admin_required
def admin_set_permission():
    data = get_json()
    role = data.get('role')
    permission = data.get('permission')
    if role not in STAFF_ROLES:
        return json_error('Invalid role')
    if permission not in ALL_PERMISSIONS:
        return json_error('Unknown permission')

    enabled = bool(data.get('enabled'))
    role_permissions_collection.update_one(
        {'role': role, 'permission': permission},
        {'$set': {'enabled': enabled, 'updated_at': datetime.utcnow()}},
        upsert=True
    )
    log_activity('permission_changed', 'role_permission', None,
                 {'role': role, 'permission': permission, 'enabled': enabled})
    return jsonify({'success': True})


SMTP_SETTING_KEYS = {'smtp_settings', 'smtp_config', 'auth_smtp_config', 'auth_email_config'}
PROTECTED_SETTING_KEYS = {'installed'}


def setting_permission(key):
    if key == 'payment_methods':
        return 'settings_payment'
    if key in SMTP_SETTING_KEYS:
        return 'settings_email'
    return 'settings_general'


@app.route('/admin/api/settings/<key>', methods=['GET', 'PUT'])
@permission_required('settings_access')
def admin_setting(key):
    if not can(g.user, setting_permission(key)):
        return json_error('You do not have permission to perform this action', 403)

    if request.method == 'GET':
        return jsonify({'success': True, 'key': key, 'value': serialize_doc(get_setting(key))})

    if key in PROTECTED_SETTING_KEYS:
        return json_error(f'{key} cannot be changed here', 403)

    data = get_json()
    if 'value' not in data:
        return json_error('value is required')
    set_setting(key, data['value'])
    log_activity('settings_updated', 'setting', None, {'key': key})
    return jsonify({'success': True})


@app.route('/admin/api/auth-email/test', methods=['POST'])
@permission_required('settings_email')
def admin_auth_email_test():
    config = get_auth_smtp_config()
    if not config.get('host') or not config.get('user') or not config.get('password'):
        return json_error(AUTH_SMTP_NOT_CONFIGURED)

    recipient = get_json().get('test_email') or config.get('from_email') or config.get('user')
    body = email_layout('Auth SMTP Test Successful!', [
        'Your authentication email SMTP is working correctly.',
        'Verification, welcome, and password reset emails will use this configuration.',
        f'Sent at: {datetime.utcnow().isoformat()}',
    ])
    sent, message = send_auth_email(recipient, 'Auth SMTP Test - Connection Successful', body)
    if not sent:
        return json_error(message)
    return jsonify({'success': True, 'message': f'Test email sent to {recipient}'})


@app.route('/admin/api/activity-logs')
@permission_required('logs_access')
def admin_activity_logs():
    query = {}
    if request.args.get('action'):
        query['action'] = request.args['action']
    page, per_page = get_page_args(default_per_page=50)
    cursor = activity_collection.find(query).sort('created_at', -1)
    return jsonify({'success': True, **paginate(cursor, activity_collection.count_documents(query), page, per_page)})


if __name__ == '__main__':
    port = int(os.getenv('PORT', '5000'))
    app.run(debug=os.getenv('FLASK_DEBUG', '').lower() in {'1', 'true'}, host='0.0.0.0', port=port)
