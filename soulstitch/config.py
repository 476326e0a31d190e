"""
Configuration for the SoulStitch order service.

Defaults live here as module constants. Anything can be overridden through
the environment (a .env file is picked up too) or by the mapping handed to
create_app().
"""

import os

from dotenv import load_dotenv

load_dotenv()

# ============== CONFIGURATION ==============

DATABASE_URL = 'sqlite:///soulstitch.db'
ADMIN_KEY = 'change-me'  # sent by the admin console as X-Admin-Key
RAZORPAY_KEY_ID = ''
RAZORPAY_SECRET = ''
CURRENCY = 'INR'
ORDER_CODE_PREFIX = 'SS'
ORDER_CODE_DIGITS = 10
CHECKOUT_TIMEOUT_SECONDS = 10.0
SHIPROCKET_EMAIL = ''
SHIPROCKET_PASSWORD = ''
SHIPROCKET_PICKUP = 'Primary'
SHIPPING_WEBHOOK_TOKEN = ''  # empty disables the x-api-key check
BROADCAST_QUEUE_SIZE = 500
LOG_LEVEL = 'INFO'

_FLOATS = {'CHECKOUT_TIMEOUT_SECONDS'}
_INTS = {'ORDER_CODE_DIGITS', 'BROADCAST_QUEUE_SIZE'}

KEYS = [
    'DATABASE_URL', 'ADMIN_KEY', 'RAZORPAY_KEY_ID', 'RAZORPAY_SECRET',
    'CURRENCY', 'ORDER_CODE_PREFIX', 'ORDER_CODE_DIGITS',
    'CHECKOUT_TIMEOUT_SECONDS', 'SHIPROCKET_EMAIL', 'SHIPROCKET_PASSWORD',
    'SHIPROCKET_PICKUP', 'SHIPPING_WEBHOOK_TOKEN', 'BROADCAST_QUEUE_SIZE',
    'LOG_LEVEL',
]


def _coerce(key, value):
    if key in _FLOATS:
        return float(value)
    if key in _INTS:
        return int(value)
    return value


def load_config(overrides=None):
    """module defaults <- environment <- explicit overrides"""
    cfg = {}
    for key in KEYS:
        value = os.getenv(key)
        cfg[key] = _coerce(key, value) if value is not None else globals()[key]
    for key, value in (overrides or {}).items():
        cfg[key] = _coerce(key, value) if key in KEYS else value
    return cfg
