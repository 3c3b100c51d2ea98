from datetime import datetime

import mongomock
import pytest
from werkzeug.security import generate_password_hash

import app as commercex


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    commercex.bind_database(database)
    return database


@pytest.fixture
def client(db):
    commercex.app.config.update(TESTING=True, CAMPAIGN_SEND_INLINE=True, SITE_URL='http://shop.test',
                                PUBLIC_BASE_URL='http://api.test', INTERNAL_SECRET='internal-secret')
    return commercex.app.test_client()


@pytest.fixture
def make_user(db):
    def _make_user(email='buyer@example.com', password='secret123', role='user', **extra):
        user = {
            'name': extra.pop('name', 'Test User'),
            'email': email,
            'phone': extra.pop('phone', '01711111111'),
            'password': generate_password_hash(password),
            'role': role,
            'is_blocked': False,
            'created_at': datetime.utcnow(),
        }
        user.update(extra)
        user['_id'] = db['users'].insert_one(user).inserted_id
        return user

    return _make_user


@pytest.fixture
def login(client):
    def _login(email='buyer@example.com', password='secret123'):
        resp = client.post('/api/auth/login', json={'email': email, 'password': password})
        assert resp.status_code == 200, resp.get_json()
        return resp

    return _login


@pytest.fixture
def make_product(db):
    def _make_product(title='Cotton Panjabi', regular_price=1000.0, discount_price=None, stock=10, **extra):
        product = {
            'title': title,
            'slug': title.lower().replace(' ', '-'),
            'category': extra.pop('category', 'Clothing'),
            'description': '',
            'regular_price': regular_price,
            'discount_price': discount_price,
            'stock_quantity': stock,
            'image_url': extra.pop('image_url', '/img/p.png'),
            'is_active': True,
            'is_deleted': False,
            'created_at': datetime.utcnow(),
        }
        product.update(extra)
        product['_id'] = db['products'].insert_one(product).inserted_id
        return product

    return _make_product


@pytest.fixture
def set_setting(db):
    def _set_setting(key, value):
        db['admin_settings'].update_one({'key': key}, {'$set': {'value': value}}, upsert=True)

    return _set_setting


@pytest.fixture
def make_order(db):
    def _make_order(user, status='pending', total=1060.0, payment_method='bkash', **extra):
        order = {
            'user_id': str(user['_id']),
            'items': [{'product_id': 'p1', 'product_name': 'Cotton Panjabi', 'quantity': 1, 'price': 1000.0}],
            'subtotal': 1000.0,
            'delivery_charge': 60.0,
            'discount': 0.0,
            'total': total,
            'status': status,
            'payment_method': payment_method,
            'payment_status': 'unpaid',
            'transaction_id': None,
            'notes': {},
            'created_at': datetime.utcnow(),
        }
        order.update(extra)
        order['_id'] = db['orders'].insert_one(order).inserted_id
        order['order_ref'] = str(order['_id'])
        db['orders'].update_one({'_id': order['_id']}, {'$set': {'order_ref': order['order_ref']}})
        return order

    return _make_order
