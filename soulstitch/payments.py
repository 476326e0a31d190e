"""
Razorpay integration: order creation and callback verification.

A valid signature only proves the gateway saw a payment. It says nothing
about whether the stock is still there or the price still holds, so
verify_payment() re-runs pricing and reservation before any order exists.
"""

import hashlib
import hmac
import logging

import requests
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .checkout import parse_cart, persist_order, quote_cart
from .errors import PaymentMismatchError, SignatureError, UpstreamPaymentError, ValidationError
from .helpers import log_action
from .models import Order, PaymentIntent

logger = logging.getLogger(__name__)

RAZORPAY_API = 'https://api.razorpay.com/v1'


def sign(secret, order_id, payment_id):
    return hmac.new(secret.encode(), f'{order_id}|{payment_id}'.encode(), hashlib.sha256).hexdigest()


def verify_signature(secret, order_id, payment_id, signature):
    if not secret:
        raise SignatureError('Payment gateway secret not configured')
    expected = sign(secret, order_id, payment_id)
    if not hmac.compare_digest(expected, str(signature or '')):
        raise SignatureError('Payment signature verification failed', orderId=order_id)


class RazorpayGateway:

    def __init__(self, key_id, secret, http=None, timeout=15):
        self.key_id = key_id
        self.secret = secret
        self.http = http or requests.Session()
        self.timeout = timeout

    def create_order(self, amount, currency, receipt, notes=None):
        if not self.key_id or not self.secret:
            raise UpstreamPaymentError('Razorpay credentials not configured')
        try:
            resp = self.http.post(
                f'{RAZORPAY_API}/orders',
                auth=(self.key_id, self.secret),
                json={'amount': amount, 'currency': currency, 'receipt': receipt[:40], 'notes': notes or {}},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error('razorpay order create failed: %s', e)
            raise UpstreamPaymentError('Could not start payment with Razorpay') from e
        return resp.json()


def _cart_key(user_id, lines, coupon_code):
    return (
        user_id,
        sorted((l['productId'], l['size'], l['quantity'], l['isGift']) for l in lines),
        coupon_code,
    )


def _find_paid(session, payment_id):
    return session.execute(select(Order).where(Order.payment_id == payment_id)).scalar_one_or_none()


def verify_payment(db, broadcaster, secret, payload, timeout=None, code_prefix='SS', code_digits=10):
    """
    Returns (order, created). A replayed callback for a payment we already
    turned into an order returns that order and touches nothing.
    """
    gateway_order_id = payload.get('razorpay_order_id')
    payment_id = payload.get('razorpay_payment_id')
    signature = payload.get('razorpay_signature')
    if not gateway_order_id or not payment_id or not signature:
        raise ValidationError('razorpay_order_id, razorpay_payment_id and razorpay_signature are required')

    verify_signature(secret, gateway_order_id, payment_id, signature)
    user_id, address_id, lines, coupon_code = parse_cart(payload)

    try:
        with db.transaction(timeout) as session:
            existing = _find_paid(session, payment_id)
            if existing is not None:
                logger.info('payment %s already recorded as %s', payment_id, existing.order_code)
                return existing, False

            intent = session.get(PaymentIntent, gateway_order_id)
            if intent is None:
                raise ValidationError('Unknown payment order', orderId=gateway_order_id)
            claimed = _cart_key(user_id, [l.to_dict() for l in lines], coupon_code)
            if claimed != _cart_key(intent.user_id, intent.items, intent.coupon_code):
                raise PaymentMismatchError('Cart does not match the payment that was made',
                                           orderId=gateway_order_id)

            quote, priced, coupon = quote_cart(session, lines, coupon_code)
            if int(quote.total) * 100 != intent.amount:
                raise PaymentMismatchError('Order total changed after payment started',
                                           paid=intent.amount / 100, total=int(quote.total))

            order = persist_order(session, broadcaster, user_id, intent.address_id, priced, quote, coupon,
                                  payment_status='paid', payment_id=payment_id,
                                  gateway_order_id=gateway_order_id,
                                  code_prefix=code_prefix, code_digits=code_digits)
    except IntegrityError:
        # a concurrent retry of the same callback got there first
        with db.session() as session:
            existing = _find_paid(session, payment_id)
        if existing is None:
            raise
        return existing, False

    log_action('verify_payment', user_id, {'order': order.order_code, 'payment': payment_id})
    return order, True
