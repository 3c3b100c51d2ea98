"""Integrations used by the CommerceX storefront: payment gateways, SMTP
mail, marketing campaigns and catalog import."""

__version__ = '1.0.0'
