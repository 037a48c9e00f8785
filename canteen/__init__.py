"""
                Smart Canteen Ordering System

Order-management backend for a canteen: menu browsing, checkout,
gateway payments, QR redemption tokens and point-of-service scanning.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
