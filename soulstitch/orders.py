"""
Order lifecycle operations: admin status changes, carrier pushes, the
exchange workflow and shipment booking. Each runs in its own transaction
with the order row locked; lifecycle.py decides what is legal.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from . import lifecycle
from .broadcast import EXCHANGE_REQUEST_SUBMITTED, ORDER_UPDATED
from .db import on_commit
from .errors import NotFoundError, StateTransitionError, ValidationError
from .helpers import log_action
from .models import ExchangeRequest, Order, Product, StatusChange
from .pricing import CartLine, as_utc
from .shipping import build_payload
from .stock import StockLedger

logger = logging.getLogger(__name__)

BOOKING_CLAIM_TTL = timedelta(minutes=5)


def now_utc():
    return datetime.now(timezone.utc)


def lock_order(session, order_id):
    order = session.execute(select(Order).where(Order.id == order_id).with_for_update()).scalar_one_or_none()
    if order is None:
        raise NotFoundError('Order not found', orderId=order_id)
    return order


def get_order(session, order_id):
    order = session.get(Order, order_id)
    if order is None:
        raise NotFoundError('Order not found', orderId=order_id)
    return order


def list_orders(session, user_id=None, status=None, limit=50, offset=0):
    stmt = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
    if user_id:
        stmt = stmt.where(Order.user_id == user_id)
    if status:
        stmt = stmt.where(Order.status == status)
    return list(session.execute(stmt.limit(limit).offset(offset)).scalars())


def publish(session, broadcaster, name, order):
    if broadcaster is None:
        return
    session.flush()
    snapshot = order.to_dict()
    on_commit(session, lambda: broadcaster.order_event(name, snapshot))


def _order_lines(order):
    return [CartLine(i.product_id, i.size, i.quantity, i.is_gift) for i in order.items]


def move_status(session, broadcaster, order, target, source, note=None, refund_details=None):
    previous = order.status
    order.status = target
    if target == lifecycle.DELIVERED:
        order.delivered_at = now_utc()
    if refund_details:
        order.refund_details = dict(refund_details)
    if target in lifecycle.TERMINAL:
        # the units are back on the shelf
        StockLedger(session, broadcaster).release(_order_lines(order), reason=target, ref_id=order.order_code)
    order.history.append(StatusChange(from_status=previous, to_status=target, source=source, note=note))
    log_action('order_status', data={'order': order.order_code, 'from': previous, 'to': target, 'source': source})
    publish(session, broadcaster, ORDER_UPDATED, order)


def update_status(db, broadcaster, order_id, body):
    """admin console: PUT /orders/<id> with {status[, refundDetails, note]}"""
    target = body.get('status')
    if not target:
        raise ValidationError('status is required')
    refund_details = body.get('refundDetails')
    if refund_details is not None and not isinstance(refund_details, dict):
        raise ValidationError('refundDetails must be an object')

    with db.transaction() as session:
        order = lock_order(session, order_id)
        exchange_status = order.exchange.status if order.exchange else None
        if lifecycle.check_transition(order.status, target, order.payment_status,
                                      refund_details, exchange_status):
            move_status(session, broadcaster, order, target, 'admin', body.get('note'), refund_details)
    return order


def apply_carrier_update(db, broadcaster, awb, carrier_text):
    """
    Carrier push keyed by AWB. Returns (order, mapped status, changed).
    Unknown carrier wording leaves the order untouched.
    """
    if not awb:
        raise ValidationError('AWB missing')
    target = lifecycle.carrier_status(carrier_text)

    with db.transaction() as session:
        order = session.execute(
            select(Order).where(Order.tracking_id == awb).with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError('Order not found', awb=awb)
        if target is None:
            logger.info('ignoring carrier status %r for %s', carrier_text, awb)
            return order, None, False
        changed = lifecycle.check_carrier_transition(order.status, target)
        if changed:
            move_status(session, broadcaster, order, target, 'carrier', note=carrier_text)
    return order, target, changed


def request_exchange(db, broadcaster, order_id, body):
    """customer asks to swap a delivered order for another product/size"""
    user_id = str(body.get('userId') or '')
    reason = str(body.get('reason') or '').strip()
    new_size = str(body.get('newSize') or '').strip()
    try:
        new_product_id = int(body.get('newProductId'))
    except (TypeError, ValueError):
        raise ValidationError('newProductId is required')
    if not new_size:
        raise ValidationError('newSize is required')
    if not reason:
        raise ValidationError('Please tell us why you want an exchange')
    photos = body.get('photos') or []
    if not isinstance(photos, list):
        raise ValidationError('photos must be a list of URLs')

    with db.transaction() as session:
        order = lock_order(session, order_id)
        if order.user_id != user_id:
            raise NotFoundError('Order not found', orderId=order_id)
        products = {p.id: p for p in session.execute(
            select(Product).where(Product.id.in_({i.product_id for i in order.items} | {new_product_id}))
        ).scalars()}
        if new_product_id not in products:
            raise ValidationError(f'Product {new_product_id} not found', productId=new_product_id)
        window = min((products[i.product_id].exchange_days for i in order.items
                      if not i.is_gift and i.product_id in products), default=0)
        lifecycle.check_exchange_request(order.status, order.exchange, order.delivered_at, window, now_utc())

        order.exchange = ExchangeRequest(
            status=lifecycle.EX_PENDING,
            reason=reason,
            photos=[str(p) for p in photos],
            new_product_id=new_product_id,
            new_size=new_size,
        )
        order.history.append(StatusChange(from_status=order.status, to_status='exchange-pending',
                                          source='customer', note=reason))
        session.flush()
        if broadcaster is not None:
            payload = {'id': order.id, 'orderId': order.id, 'userId': order.user_id,
                       'exchangeRequest': order.exchange.to_dict()}
            on_commit(session, lambda: broadcaster.order_event(EXCHANGE_REQUEST_SUBMITTED, payload))
        publish(session, broadcaster, ORDER_UPDATED, order)

    log_action('exchange_request', user_id, {'order': order.order_code})
    return order


def update_exchange(db, broadcaster, order_id, body):
    """admin moves the exchange overlay: approve, reject, pickup, transit, done"""
    target = body.get('status')
    if not target:
        raise ValidationError('status is required')

    with db.transaction() as session:
        order = lock_order(session, order_id)
        exchange = order.exchange
        if exchange is None:
            raise StateTransitionError('Order has no exchange request', current=order.status, requested=target)
        if not lifecycle.check_exchange_transition(exchange.status, target):
            return order

        ledger = StockLedger(session, broadcaster)
        replacement = [CartLine(exchange.new_product_id, exchange.new_size, 1)]
        if target == lifecycle.EX_APPROVED:
            # hold the replacement unit so it cannot be sold meanwhile
            ledger.reserve(replacement, ref_id=order.order_code)
            exchange.stock_reserved = True
        elif target == lifecycle.EX_REJECTED and exchange.stock_reserved:
            ledger.release(replacement, reason='exchange rejected', ref_id=order.order_code)
            exchange.stock_reserved = False
        elif target == lifecycle.EX_PICKED_UP:
            pickup = body.get('pickupTrackingId')
            if pickup:
                exchange.pickup_tracking_id = str(pickup)

        previous = exchange.status
        exchange.status = target
        if body.get('adminNotes') is not None:
            exchange.admin_notes = str(body['adminNotes'])
        order.history.append(StatusChange(from_status=f'exchange-{previous}', to_status=order.display_status,
                                          source='admin', note=body.get('adminNotes')))
        log_action('exchange_update', data={'order': order.order_code, 'from': previous, 'to': target})
        publish(session, broadcaster, ORDER_UPDATED, order)
    return order


def book_shipment(db, broadcaster, carrier, order_id, address, customer):
    """
    Book the carrier, then record the AWB and move the order to shipped.

    The order is claimed under its row lock before the carrier is called,
    so a second request for the same order gets a 409 instead of booking
    a duplicate shipment. The carrier call itself runs outside any
    transaction; if it fails the claim is dropped and the order is left as
    it was. A claim older than BOOKING_CLAIM_TTL counts as abandoned.
    """
    if not isinstance(address, dict) or not address:
        raise ValidationError('Customer address is required for booking')
    customer = customer if isinstance(customer, dict) else {}

    with db.transaction() as session:
        order = lock_order(session, order_id)
        if order.tracking_id and order.status == lifecycle.SHIPPED:
            return booking_response(order)
        started = as_utc(order.booking_started_at)
        if started is not None and now_utc() - started < BOOKING_CLAIM_TTL:
            raise StateTransitionError('Shipment booking already in progress',
                                       current=order.status, requested=lifecycle.SHIPPED)
        lifecycle.check_transition(order.status, lifecycle.SHIPPED, order.payment_status)
        products = {p.id: p for p in session.execute(
            select(Product).where(Product.id.in_({i.product_id for i in order.items}))
        ).scalars()}
        payload = build_payload(order.to_dict(), products, address, customer, carrier.pickup)
        order.booking_started_at = now_utc()

    try:
        result = carrier.book(payload)
    except Exception:
        with db.transaction() as session:
            lock_order(session, order_id).booking_started_at = None
        raise

    with db.transaction() as session:
        order = lock_order(session, order_id)
        order.booking_started_at = None
        try:
            moved = lifecycle.check_transition(order.status, lifecycle.SHIPPED, order.payment_status)
        except StateTransitionError:
            # the order moved on (e.g. cancelled) while the carrier was booking
            logger.warning('order %s is %s; AWB %s not recorded', order.order_code, order.status,
                           result.tracking_id)
            moved = False
        if moved:
            order.tracking_id = result.tracking_id
            order.label_url = result.label_url
            move_status(session, broadcaster, order, lifecycle.SHIPPED, 'admin',
                        note=f'AWB {result.tracking_id}')

    warning = result.warning
    if not moved:
        warning = f'Order is {order.status}; shipment {result.tracking_id} was booked but not recorded'
    log_action('book_shipment', data={'order': order.order_code, 'awb': result.tracking_id,
                                      'recorded': moved, 'warning': warning})
    return booking_response(order, warning)


def booking_response(order, warning=None):
    return {'trackingId': order.tracking_id, 'labelUrl': order.label_url or '',
            'order': order.to_dict(), 'warning': warning}
