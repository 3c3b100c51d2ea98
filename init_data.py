from pymongo import MongoClient
from werkzeug.security import generate_password_hash
from datetime import datetime, timedelta
from dotenv import load_dotenv
import os

from commercex_portal.permissions import ADMIN_ROLE, CUSTOMER_ROLE, default_permission_rows

load_dotenv()

MONGODB_URI = os.getenv('MONGODB_URI', 'mongodb://localhost:27017/')
MONGODB_DB = os.getenv('MONGODB_DB', 'commercex_db')

SEEDED_COLLECTIONS = [
    'users', 'products', 'orders', 'cart', 'coupons', 'coupon_usage',
    'shipping_zones', 'shipping_rates', 'testimonials', 'role_permissions', 'admin_settings',
]


def seed_database(db):
    now = datetime.utcnow()

    for name in SEEDED_COLLECTIONS:
        db[name].delete_many({})

    db['users'].insert_one({
        'name': 'Admin',
        'email': 'admin@commercex.local',
        'phone': '01700000000',
        'address': 'House 12, Road 5, Dhanmondi, Dhaka',
        'password': generate_password_hash('admin123'),
        'role': ADMIN_ROLE,
        'is_blocked': False,
        'email_verified': True,
        'created_at': now
    })
    print("✓ Admin user created (admin@commercex.local / admin123)")

    db['users'].insert_one({
        'name': 'Demo Customer',
        'email': 'demo@example.com',
        'phone': '01800000000',
        'address': 'Agrabad, Chattogram',
        'password': generate_password_hash('demo123'),
        'role': CUSTOMER_ROLE,
        'is_blocked': False,
        'email_verified': True,
        'created_at': now
    })
    print("✓ Demo customer created (demo@example.com / demo123)")

    sample_products = [
        ('Cotton Panjabi', 'Clothing', 2450.00, 1990.00, 30,
         'Breathable cotton panjabi with embroidered collar.'),
        ('Silk Saree', 'Clothing', 8900.00, None, 8,
         'Hand woven silk saree with zari border.'),
        ('Leather Sandals', 'Footwear', 1850.00, 1500.00, 40,
         'Genuine leather sandals with cushioned sole.'),
        ('Running Sneakers', 'Footwear', 3200.00, None, 0,
         'Lightweight mesh sneakers for daily runs.'),
        ('Wireless Earbuds', 'Electronics', 2990.00, 2490.00, 55,
         'Bluetooth 5.3 earbuds with charging case.'),
        ('Power Bank 10000mAh', 'Electronics', 1650.00, None, 5,
         'Dual output power bank with fast charging.'),
    ]
    products = []
    for title, category, regular, discount, stock, description in sample_products:
        products.append({
            'title': title,
            'slug': title.lower().replace(' ', '-'),
            'description': description,
            'category': category,
            'regular_price': regular,
            'discount_price': discount,
            'stock_quantity': stock,
            'image_url': '/placeholder.svg',
            'images': [],
            'variations': [],
            'is_active': True,
            'is_deleted': False,
            'deleted_at': None,
            'created_at': now,
            'updated_at': now
        })
    db['products'].insert_many(products)
    print(f"✓ Created {len(products)} sample products")

    zones = [
        ('Inside Dhaka', [('Dhanmondi', 60, 3000), ('Mirpur', 60, 3000), ('Uttara', 80, None)]),
        ('Outside Dhaka', [('Chattogram', 120, 5000), ('Sylhet', 130, None), ('Khulna', 130, None)]),
    ]
    rate_count = 0
    for zone_name, rates in zones:
        zone_id = db['shipping_zones'].insert_one({
            'name': zone_name, 'type': 'district', 'is_active': True, 'created_at': now
        }).inserted_id
        for area_name, rate, threshold in rates:
            db['shipping_rates'].insert_one({
                'zone_id': str(zone_id),
                'area_name': area_name,
                'rate': float(rate),
                'free_shipping_threshold': float(threshold) if threshold else None,
                'created_at': now
            })
            rate_count += 1
    print(f"✓ Created {len(zones)} shipping zones with {rate_count} rates")

    db['coupons'].insert_many([
        {
            'code': 'WELCOME10',
            'description': '10% off the first order, up to 500',
            'discount_type': 'percentage',
            'discount_value': 10.0,
            'max_discount_amount': 500.0,
            'min_order_amount': 1000.0,
            'usage_limit': None,
            'usage_count': 0,
            'per_user_limit': 1,
            'start_date': None,
            'end_date': now + timedelta(days=90),
            'applies_to': 'new_customers',
            'selected_customer_ids': [],
            'selected_product_ids': [],
            'is_active': True,
            'created_at': now
        },
        {
            'code': 'FLAT200',
            'description': '200 off orders above 2000',
            'discount_type': 'fixed',
            'discount_value': 200.0,
            'max_discount_amount': None,
            'min_order_amount': 2000.0,
            'usage_limit': 100,
            'usage_count': 0,
            'per_user_limit': None,
            'start_date': None,
            'end_date': None,
            'applies_to': 'all',
            'selected_customer_ids': [],
            'selected_product_ids': [],
            'is_active': True,
            'created_at': now
        },
    ])
    print("✓ Coupons created (WELCOME10, FLAT200)")

    db['testimonials'].insert_many([
        {'name': 'Nusrat J.', 'company': '', 'content': 'Delivery was quick and the saree is beautiful.',
         'rating': 5, 'is_active': True, 'is_deleted': False, 'deleted_at': None, 'created_at': now},
        {'name': 'Arif H.', 'company': 'Startup Hub', 'content': 'Good prices and easy bKash checkout.',
         'rating': 4, 'is_active': True, 'is_deleted': False, 'deleted_at': None, 'created_at': now},
    ])
    print("✓ Testimonials created")

    db['role_permissions'].insert_many(default_permission_rows())
    settings = {
        'site_title': 'CommerceX',
        'currency_settings': {'code': 'BDT', 'symbol': '৳', 'position': 'before'},
        'payment_methods': {'cod': {'enabled': True}},
        'installed': True,
    }
    for key, value in settings.items():
        db['admin_settings'].insert_one({'key': key, 'value': value, 'created_at': now})
    print("✓ Role permissions and store settings created")


def init_data():
    print("Initializing CommerceX database...")
    client = MongoClient(MONGODB_URI)
    db = client[MONGODB_DB]
    seed_database(db)

    print("\n" + "="*60)
    print("CommerceX Database Initialization Complete!")
    print("="*60)
    print("\nAdmin Login:")
    print("  Email: admin@commercex.local")
    print("  Password: admin123")
    print("\nDemo Customer Login:")
    print("  Email: demo@example.com")
    print("  Password: demo123")
    print("\nCategories available:")
    for cat in db['products'].distinct('category'):
        count = db['products'].count_documents({'category': cat})
        print(f"  - {cat}: {count} products")
    print("="*60)


if __name__ == '__main__':
    init_data()
