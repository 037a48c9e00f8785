"""
                        Services Module

Business logic behind the HTTP layer.

Services:
    - payment: payment gateways (mock in development, Stripe otherwise)
    - catalog: menu items and atomic stock adjustments
    - accounts: caller identity and roles
    - orders: order lifecycle, payment verification and QR redemption
"""
