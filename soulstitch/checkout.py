"""
Checkout orchestration: cart validation, server-side pricing, stock
reservation and order persistence as one transaction.

Two ways in share the same code: place_order() for direct/COD orders and
create_payment_intent() + payments.verify_payment() for prepaid orders.
Nothing the client says about prices or totals is ever used.
"""

import logging
import time
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .broadcast import ORDER_CREATED
from .db import on_commit
from .errors import CouponError, GiftLockedError, ValidationError
from .helpers import gen_order_code, log_action
from .models import Coupon, CouponRedemption, FreeGift, Order, OrderItem, PaymentIntent, Product, StatusChange
from .pricing import CartLine, calculate, price_lines
from .stock import StockLedger

logger = logging.getLogger(__name__)

MAX_LINES = 50
MAX_QTY_PER_LINE = 20


def _int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer', field=field)


def parse_lines(payload):
    """client cart -> CartLines. prices in the payload are ignored"""
    raw = payload.get('products')
    if raw is None:
        raw = payload.get('items')
    if not isinstance(raw, list) or not raw:
        raise ValidationError('Cart is empty')
    if len(raw) > MAX_LINES:
        raise ValidationError(f'Too many cart lines (max {MAX_LINES})')

    lines = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f'Cart line {i} is malformed')
        product_id = _int(item.get('productId'), 'productId')
        size = str(item.get('size') or '').strip()
        if not size:
            raise ValidationError(f'Size is required for product {product_id}', productId=product_id)
        quantity = _int(item.get('quantity', 1), 'quantity')
        if quantity < 1 or quantity > MAX_QTY_PER_LINE:
            raise ValidationError(f'Quantity must be between 1 and {MAX_QTY_PER_LINE}', productId=product_id)
        lines.append(CartLine(product_id, size, quantity, bool(item.get('isGift', False))))
    return lines


def normalize_code(code):
    code = (code or '').strip().upper()
    return code or None


def parse_cart(payload):
    user_id = str(payload.get('userId') or '').strip()
    if not user_id:
        raise ValidationError('userId is required')
    address_id = str(payload.get('addressId') or '').strip()
    if not address_id:
        raise ValidationError('Delivery address is required')
    lines = parse_lines(payload)
    return user_id, address_id, lines, normalize_code(payload.get('couponCode'))


def load_coupon(session, code):
    coupon = session.execute(select(Coupon).where(Coupon.code == code)).scalar_one_or_none()
    if coupon is None:
        raise CouponError('Invalid coupon code', code=code)
    return coupon


def active_gifts(session):
    return [g.terms() for g in session.execute(select(FreeGift).where(FreeGift.is_active.is_(True))).scalars()]


def quote_cart(session, lines, coupon_code=None, now=None):
    """price a cart against current catalogue state. returns (quote, priced lines, coupon)"""
    pids = {l.product_id for l in lines}
    products = {p.id: p for p in session.execute(select(Product).where(Product.id.in_(pids))).scalars()}
    priced = price_lines(lines, products, active_gifts(session))
    coupon = load_coupon(session, coupon_code) if coupon_code else None
    quote = calculate(priced, coupon.terms() if coupon else None, now or datetime.now(timezone.utc))
    return quote, priced, coupon


def ensure_checkout_allowed(quote):
    if quote.checkout_blocked:
        raise GiftLockedError(
            'Gift items in your cart are no longer unlocked; remove them to continue',
            lines=list(quote.invalid_gift_lines),
        )


def persist_order(session, broadcaster, user_id, address_id, priced, quote, coupon,
                  payment_status='unpaid', payment_id=None, gateway_order_id=None,
                  idempotency_key=None, code_prefix='SS', code_digits=10):
    """reserve stock and write the order. caller owns the transaction"""
    ensure_checkout_allowed(quote)
    code = gen_order_code(session, code_prefix, code_digits)

    StockLedger(session, broadcaster).reserve(priced, ref_id=code)

    order = Order(
        order_code=code,
        user_id=user_id,
        address_id=address_id,
        subtotal=quote.subtotal,
        gift_total=quote.gift_total,
        discount_amount=quote.discount,
        coupon_code=quote.coupon_code,
        total_amount=quote.total,
        status='pending',
        payment_status=payment_status,
        payment_id=payment_id,
        gateway_order_id=gateway_order_id,
        idempotency_key=idempotency_key,
    )
    order.items = [
        OrderItem(product_id=l.product_id, sku=l.sku, size=l.size, quantity=l.quantity,
                  price=l.unit_price, is_gift=l.is_gift)
        for l in priced
    ]
    order.history = [StatusChange(from_status=None, to_status='pending', source='checkout',
                                  note=f'payment {payment_status}')]
    order.exchange = None
    session.add(order)
    session.flush()

    if coupon is not None:
        session.add(CouponRedemption(coupon_id=coupon.id, order_id=order.id,
                                     user_id=user_id, savings=quote.discount))

    snapshot = order.to_dict()
    if broadcaster is not None:
        on_commit(session, lambda: broadcaster.order_event(ORDER_CREATED, snapshot))
    return order


def _by_idempotency_key(session, key):
    return session.execute(select(Order).where(Order.idempotency_key == key)).scalar_one_or_none()


def place_order(db, broadcaster, payload, idempotency_key=None, timeout=None,
                code_prefix='SS', code_digits=10):
    """
    Direct (COD) order. Returns (order, created); created is False when an
    earlier request with the same Idempotency-Key already made the order.
    """
    user_id, address_id, lines, coupon_code = parse_cart(payload)

    try:
        with db.transaction(timeout) as session:
            if idempotency_key:
                existing = _by_idempotency_key(session, idempotency_key)
                if existing is not None:
                    return existing, False
            quote, priced, coupon = quote_cart(session, lines, coupon_code)
            order = persist_order(session, broadcaster, user_id, address_id, priced, quote, coupon,
                                  idempotency_key=idempotency_key,
                                  code_prefix=code_prefix, code_digits=code_digits)
    except IntegrityError:
        if not idempotency_key:
            raise
        # the same key committed concurrently
        with db.session() as session:
            existing = _by_idempotency_key(session, idempotency_key)
        if existing is None:
            raise
        return existing, False

    log_action('create_order', user_id, {'order': order.order_code, 'total': str(order.total_amount)})
    return order, True


def create_payment_intent(db, gateway, payload, currency='INR', timeout=None):
    """
    Ask the gateway to collect the server-computed total. The client's own
    idea of the total never reaches the gateway.
    """
    user_id, address_id, lines, coupon_code = parse_cart(payload)

    with db.session() as session:
        quote, priced, coupon = quote_cart(session, lines, coupon_code)
        ensure_checkout_allowed(quote)
        shortfalls = StockLedger(session).check(priced)
    if shortfalls:
        raise shortfalls[0]

    total = int(quote.total)
    if total <= 0:
        raise ValidationError('Nothing to pay for this cart; place it as a direct order')
    amount = total * 100  # paise

    gateway_order = gateway.create_order(
        amount=amount,
        currency=currency,
        receipt=f'{user_id}-{int(time.time() * 1000)}',
        notes={'userId': user_id, 'addressId': address_id},
    )

    with db.transaction(timeout) as session:
        session.add(PaymentIntent(
            gateway_order_id=gateway_order['id'],
            user_id=user_id,
            address_id=address_id,
            items=[l.to_dict() for l in lines],
            coupon_code=coupon_code,
            amount=amount,
            currency=currency,
        ))

    log_action('payment_intent', user_id, {'gatewayOrder': gateway_order['id'], 'amount': amount})
    return {
        'orderId': gateway_order['id'],
        'amount': amount,
        'currency': currency,
        'keyId': gateway.key_id,
        'computedTotal': total,
    }
