import hmac
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import wraps

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from sqlalchemy import select

from . import __version__, checkout, orders, payments
from .broadcast import ADMIN_TOPIC, STOCK_TOPIC, user_topic
from .errors import AuthError, NotFoundError, ValidationError
from .helpers import log_action
from .models import Coupon, FreeGift, Product
from .pricing import CartLine, claim_gift, locked_gift, unlocked_gift
from .stock import StockLedger

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)

KEEPALIVE_SECONDS = 15


def store():
    return current_app.extensions['soulstitch']


def cfg(key):
    return current_app.config[key]


def body():
    return request.get_json(silent=True) or {}


def is_admin():
    key = request.headers.get('X-Admin-Key', '')
    return bool(key) and hmac.compare_digest(key, cfg('ADMIN_KEY'))


def require_admin(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not is_admin():
            raise AuthError('Admin access required')
        return f(*args, **kwargs)
    return decorated


def _money(value, field, required=True):
    if value is None and not required:
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValidationError(f'{field} must be a number', field=field)
    if amount < 0:
        raise ValidationError(f'{field} cannot be negative', field=field)
    return amount


def _when(value, field):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'{field} must be an ISO date', field=field)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ---------- HEALTH ----------

@api.route('/health')
def health():
    store().db.ping()
    return jsonify({
        'status': 'ok',
        'version': __version__,
        'timestamp': datetime.now(timezone.utc).isoformat(),
    })


# ---------- CART ----------

@api.route('/cart/quote', methods=['POST'])
def quote():
    # preview only; orders are always re-priced at checkout
    data = body()
    lines = checkout.parse_lines(data)
    with store().db.session() as session:
        q, priced, _ = checkout.quote_cart(session, lines, checkout.normalize_code(data.get('couponCode')))
        gifts = checkout.active_gifts(session)
        unlocked = unlocked_gift(gifts, q.regular_subtotal)
        locked = locked_gift(gifts, q.regular_subtotal)
        gift_rows = {g.id: g for g in session.execute(select(FreeGift)).scalars()}
        result = q.to_dict()
        result['unlockedGift'] = gift_rows[unlocked.id].to_dict() if unlocked else None
        result['lockedGift'] = gift_rows[locked.id].to_dict() if locked else None
    return jsonify(result)


@api.route('/cart/gift', methods=['POST'])
def add_gift():
    data = body()
    lines = checkout.parse_lines(data)
    try:
        gift_id = int(data.get('giftId'))
    except (TypeError, ValueError):
        raise ValidationError('giftId is required')

    with store().db.session() as session:
        gift = session.get(FreeGift, gift_id)
        if gift is None or not gift.is_active:
            raise NotFoundError('Gift not found', giftId=gift_id)
        _, priced, _ = checkout.quote_cart(session, [l for l in lines if not l.is_gift])
        claim_gift(priced + [l for l in lines if l.is_gift], gift.terms())

        product = session.execute(select(Product).where(Product.sku == gift.sku)).scalar_one_or_none()
        if product is None:
            raise NotFoundError('Gift product not found', sku=gift.sku)
        size = data.get('size') or next((s.size for s in product.sizes if s.stock > 0), None)
        if not size:
            raise ValidationError('Gift is out of stock', sku=gift.sku)

    gift_line = CartLine(product.id, str(size), 1, True)
    return jsonify({'products': [l.to_dict() for l in lines] + [gift_line.to_dict()]})


@api.route('/free-gifts', methods=['GET'])
def list_free_gifts():
    with store().db.session() as session:
        gifts = session.execute(
            select(FreeGift).where(FreeGift.is_active.is_(True)).order_by(FreeGift.min_billing)
        ).scalars()
        return jsonify([g.to_dict() for g in gifts])


@api.route('/coupons', methods=['GET'])
def list_coupons():
    now = datetime.now(timezone.utc)
    with store().db.session() as session:
        coupons = session.execute(
            select(Coupon).where(Coupon.is_visible.is_(True)).order_by(Coupon.created_at.desc())
        ).scalars()
        return jsonify([c.to_dict() for c in coupons if not c.terms().is_expired(now)])


# ---------- ADMIN: COUPONS / GIFTS / STOCK ----------

@api.route('/admin/coupons', methods=['POST'])
@require_admin
def admin_create_coupon():
    data = body()
    code = checkout.normalize_code(data.get('code'))
    if not code:
        raise ValidationError('Code is required')
    ctype = data.get('type', 'percentage')
    if ctype not in ('flat', 'percentage'):
        raise ValidationError('type must be flat or percentage')
    value = _money(data.get('value'), 'value')
    if ctype == 'percentage' and value > 100:
        raise ValidationError('Percentage cannot exceed 100')

    with store().db.transaction() as session:
        if session.execute(select(Coupon.id).where(Coupon.code == code)).first():
            raise ValidationError('Code already exists', code=code)
        coupon = Coupon(
            code=code,
            type=ctype,
            value=value,
            min_billing=_money(data.get('minBilling', 0), 'minBilling'),
            max_discount=_money(data.get('maxDiscount'), 'maxDiscount', required=False),
            expiry=_when(data.get('expiry'), 'expiry'),
            is_visible=bool(data.get('isVisible', True)),
        )
        coupon.redemptions = []
        session.add(coupon)
        session.flush()
        result = coupon.to_dict()

    log_action('create_coupon', data={'code': code})
    return jsonify(result), 201


@api.route('/admin/free-gifts', methods=['POST'])
@require_admin
def admin_create_gift():
    data = body()
    sku = str(data.get('sku') or '').strip()
    if not sku:
        raise ValidationError('sku is required')
    with store().db.transaction() as session:
        if session.execute(select(Product.id).where(Product.sku == sku)).first() is None:
            raise ValidationError(f'No product with sku {sku}', sku=sku)
        gift = FreeGift(
            name=str(data.get('name') or sku),
            sku=sku,
            min_billing=_money(data.get('minBilling'), 'minBilling'),
            price=_money(data.get('price', 0), 'price'),
            is_active=bool(data.get('isActive', True)),
        )
        session.add(gift)
        session.flush()
        result = gift.to_dict()

    log_action('create_gift', data={'sku': sku})
    return jsonify(result), 201


@api.route('/products/<int:product_id>', methods=['GET'])
def get_product(product_id):
    with store().db.session() as session:
        product = session.get(Product, product_id)
        if product is None:
            raise NotFoundError('Product not found', productId=product_id)
        return jsonify(product.to_dict())


@api.route('/products/<int:product_id>/stock', methods=['POST'])
@require_admin
def adjust_stock(product_id):
    data = body()
    size = str(data.get('size') or '').strip()
    if not size:
        raise ValidationError('size is required')
    try:
        adjustment = int(data.get('adjustment', 0))
    except (TypeError, ValueError):
        raise ValidationError('adjustment must be an integer')
    reason = data.get('reason', 'manual adjustment')

    with store().db.transaction() as session:
        old_stock, new_stock = StockLedger(session, store().broadcaster).adjust(product_id, size, adjustment, reason)

    return jsonify({
        'productId': product_id,
        'size': size,
        'oldStock': old_stock,
        'adjustment': adjustment,
        'newStock': new_stock,
    })


# ---------- ORDERS ----------

@api.route('/orders', methods=['POST'])
def create_order():
    order, created = checkout.place_order(
        store().db, store().broadcaster, body(),
        idempotency_key=request.headers.get('Idempotency-Key'),
        timeout=cfg('CHECKOUT_TIMEOUT_SECONDS'),
        code_prefix=cfg('ORDER_CODE_PREFIX'),
        code_digits=cfg('ORDER_CODE_DIGITS'),
    )
    return jsonify(order.to_dict()), 201 if created else 200


@api.route('/orders', methods=['GET'])
def list_orders():
    user_id = request.args.get('userId')
    if not user_id and not is_admin():
        raise AuthError('Admin access required to list all orders')
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = request.args.get('offset', 0, type=int)
    with store().db.session() as session:
        found = orders.list_orders(session, user_id, request.args.get('status'), limit, offset)
        return jsonify([o.to_dict() for o in found])


@api.route('/orders/<int:order_id>', methods=['GET'])
def get_order(order_id):
    with store().db.session() as session:
        order = orders.get_order(session, order_id)
        if not is_admin() and order.user_id != request.args.get('userId'):
            raise NotFoundError('Order not found', orderId=order_id)
        result = order.to_dict()
        if is_admin():
            result['statusHistory'] = [h.to_dict() for h in order.history]
    return jsonify(result)


@api.route('/orders/<int:order_id>', methods=['PUT'])
@require_admin
def update_order(order_id):
    order = orders.update_status(store().db, store().broadcaster, order_id, body())
    return jsonify(order.to_dict())


@api.route('/orders/<int:order_id>/exchange', methods=['POST'])
def request_exchange(order_id):
    order = orders.request_exchange(store().db, store().broadcaster, order_id, body())
    return jsonify(order.to_dict()), 201


@api.route('/orders/<int:order_id>/exchange', methods=['PUT'])
@require_admin
def update_exchange(order_id):
    order = orders.update_exchange(store().db, store().broadcaster, order_id, body())
    return jsonify(order.to_dict())


# ---------- PAYMENTS ----------

@api.route('/payments/order', methods=['POST'])
def create_payment_order():
    result = checkout.create_payment_intent(
        store().db, store().gateway, body(),
        currency=cfg('CURRENCY'),
        timeout=cfg('CHECKOUT_TIMEOUT_SECONDS'),
    )
    return jsonify(result)


@api.route('/payments/verify', methods=['POST'])
def verify_payment():
    order, created = payments.verify_payment(
        store().db, store().broadcaster, cfg('RAZORPAY_SECRET'), body(),
        timeout=cfg('CHECKOUT_TIMEOUT_SECONDS'),
        code_prefix=cfg('ORDER_CODE_PREFIX'),
        code_digits=cfg('ORDER_CODE_DIGITS'),
    )
    return jsonify(order.to_dict()), 201 if created else 200


# ---------- SHIPPING ----------

@api.route('/shipping/book', methods=['POST'])
@require_admin
def book_shipping():
    data = body()
    try:
        order_id = int(data.get('orderId'))
    except (TypeError, ValueError):
        raise ValidationError('orderId is required')
    result = orders.book_shipment(store().db, store().broadcaster, store().carrier,
                                  order_id, data.get('address'), data.get('customer'))
    return jsonify(result)


@api.route('/webhooks/shipping', methods=['POST'])
def shipping_webhook():
    token = cfg('SHIPPING_WEBHOOK_TOKEN')
    if token and not hmac.compare_digest(request.headers.get('x-api-key', ''), token):
        raise AuthError('Invalid webhook token')
    data = body()
    awb = data.get('awb') or data.get('awb_code') or data.get('tracking_awb')
    text = data.get('current_status') or data.get('status') or ''
    order, status, changed = orders.apply_carrier_update(store().db, store().broadcaster,
                                                         str(awb) if awb else None, text)
    return jsonify({'ok': True, 'orderId': order.id, 'status': order.status,
                    'mapped': status, 'changed': changed})


# ---------- REALTIME ----------

@api.route('/events', methods=['GET'])
def events():
    if is_admin():
        topics = [ADMIN_TOPIC, STOCK_TOPIC]
    else:
        topics = [STOCK_TOPIC]
        if request.args.get('userId'):
            topics.append(user_topic(request.args['userId']))
    sub = store().broadcaster.subscribe(topics)

    def stream():
        try:
            yield ': connected\n\n'
            while True:
                event = sub.get(timeout=KEEPALIVE_SECONDS)
                yield event.to_sse() if event else ': keep-alive\n\n'
        finally:
            sub.close()

    return Response(stream_with_context(stream()), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})
