"""Back-office roles and the permission keys they can be granted."""
from datetime import datetime

ADMIN_ROLE = 'admin'
CUSTOMER_ROLE = 'user'

STAFF_ROLES = ['sales_manager', 'account_manager', 'support_assistant', 'marketing_manager']

ALL_PERMISSIONS = [
    'dashboard_access',
    'product_view', 'product_add', 'product_edit', 'product_delete',
    'category_view', 'category_add', 'category_edit', 'category_delete',
    'variant_view', 'variant_add', 'variant_edit', 'variant_delete',
    'order_view', 'order_manage', 'order_delete',
    'coupon_view', 'coupon_add', 'coupon_edit', 'coupon_delete',
    'revenue_access', 'revenue_export',
    'shipping_access', 'shipping_manage',
    'testimonial_view', 'testimonial_add', 'testimonial_edit', 'testimonial_delete',
    'customer_view', 'customer_edit', 'customer_delete',
    'marketing_access', 'marketing_campaign_create', 'marketing_campaign_send', 'marketing_template_manage',
    'logs_access',
    'settings_access', 'settings_general', 'settings_payment', 'settings_email',
]


def is_staff_role(role):
    return role == ADMIN_ROLE or role in STAFF_ROLES


def default_permission_rows():
    """Every staff role x every permission, disabled."""
    now = datetime.utcnow()
    return [
        {'role': role, 'permission': perm, 'enabled': False, 'created_at': now}
        for role in STAFF_ROLES
        for perm in ALL_PERMISSIONS
    ]
