"""
Order state machine.

An order carries two independent pieces of state: the base `status` and,
once delivered, an optional exchange overlay with its own status. The
functions here only decide whether a move is legal; orders.py applies it.
Every check returns True when something would change, False when the
order is already there (replays are no-ops), and raises
StateTransitionError for anything illegal.
"""

from datetime import timedelta

from .errors import StateTransitionError, ValidationError
from .pricing import as_utc

PENDING = 'pending'
PROCESSING = 'processing'
SHIPPED = 'shipped'
DELIVERED = 'delivered'
CANCELLED = 'cancelled'
RETURNED = 'returned'

STATUSES = (PENDING, PROCESSING, SHIPPED, DELIVERED, CANCELLED, RETURNED)
TERMINAL = frozenset({CANCELLED, RETURNED})

# admin console moves
TRANSITIONS = {
    PENDING: {PROCESSING, SHIPPED, CANCELLED},
    PROCESSING: {SHIPPED, CANCELLED},
    SHIPPED: {DELIVERED, RETURNED},
    DELIVERED: {RETURNED},
    CANCELLED: set(),
    RETURNED: set(),
}

# carrier pushes only move along this path, or sideways into RETURNED
HAPPY_PATH = {PENDING: 0, PROCESSING: 1, SHIPPED: 2, DELIVERED: 3}
CARRIER_RETURNABLE = frozenset({PENDING, PROCESSING, SHIPPED})

# first match wins; 'undelivered' has to be tested before 'delivered'
CARRIER_STATUS_TABLE = (
    ('rto', RETURNED),
    ('undelivered', RETURNED),
    ('cancel', RETURNED),
    ('delivered', DELIVERED),
    ('out for delivery', SHIPPED),
    ('in transit', SHIPPED),
    ('picked', SHIPPED),
    ('shipped', SHIPPED),
)

EX_PENDING = 'pending'
EX_APPROVED = 'approved'
EX_REJECTED = 'rejected'
EX_PICKED_UP = 'picked-up'
EX_IN_TRANSIT = 'in-transit'
EX_EXCHANGED = 'exchanged'

EXCHANGE_STATES = (EX_PENDING, EX_APPROVED, EX_REJECTED, EX_PICKED_UP, EX_IN_TRANSIT, EX_EXCHANGED)
EXCHANGE_TRANSITIONS = {
    EX_PENDING: {EX_APPROVED, EX_REJECTED},
    EX_APPROVED: {EX_PICKED_UP, EX_REJECTED},
    EX_PICKED_UP: {EX_IN_TRANSIT},
    EX_IN_TRANSIT: {EX_EXCHANGED},
    EX_REJECTED: set(),
    EX_EXCHANGED: set(),
}
EXCHANGE_OPEN = frozenset({EX_PENDING, EX_APPROVED, EX_PICKED_UP, EX_IN_TRANSIT})


def carrier_status(text):
    """map carrier status text to a base status, None when it means nothing to us"""
    text = (text or '').strip().lower()
    for needle, status in CARRIER_STATUS_TABLE:
        if needle in text:
            return status
    return None


def check_transition(current, target, payment_status='unpaid', refund_details=None, exchange_status=None):
    if target not in STATUSES:
        raise ValidationError(f'Invalid status. Must be one of: {list(STATUSES)}', status=target)
    if target == current:
        return False
    if target not in TRANSITIONS[current]:
        if target == CANCELLED and current in (SHIPPED, DELIVERED):
            msg = f'Cannot cancel a {current} order; use the return/refund workflow'
        else:
            msg = f'Cannot move order from {current} to {target}'
        raise StateTransitionError(msg, current=current, requested=target)
    if target == CANCELLED and payment_status == 'paid':
        if not (refund_details or {}).get('refundId'):
            raise StateTransitionError('Refund reference required to cancel a paid order',
                                       current=current, requested=target)
    if target == RETURNED and exchange_status in EXCHANGE_OPEN:
        raise StateTransitionError('Order has an exchange in progress',
                                   current=current, requested=target)
    if target == RETURNED and exchange_status == EX_EXCHANGED:
        raise StateTransitionError('Order was already exchanged and cannot be returned',
                                   current=current, requested=target)
    return True


def check_carrier_transition(current, target):
    if target == current:
        return False
    if current in TERMINAL:
        raise StateTransitionError(f'Order is already {current}', current=current, requested=target)
    if target == RETURNED:
        if current not in CARRIER_RETURNABLE:
            raise StateTransitionError(f'Carrier cannot return a {current} order',
                                       current=current, requested=target)
        return True
    if HAPPY_PATH[target] < HAPPY_PATH[current]:
        raise StateTransitionError(f'Carrier update would move order back from {current} to {target}',
                                   current=current, requested=target)
    return True


def check_exchange_request(status, exchange, delivered_at, window_days, now):
    if status != DELIVERED or delivered_at is None:
        raise StateTransitionError('Exchange is only possible once the order is delivered',
                                   current=status, requested='exchange')
    if exchange is not None:
        raise StateTransitionError(f'Exchange already requested ({exchange.status})',
                                   current=status, requested='exchange')
    if window_days <= 0:
        raise StateTransitionError('Items in this order are not eligible for exchange',
                                   current=status, requested='exchange')
    if now > as_utc(delivered_at) + timedelta(days=window_days):
        raise StateTransitionError(f'Exchange window of {window_days} days has closed',
                                   current=status, requested='exchange')


def check_exchange_transition(current, target):
    if target not in EXCHANGE_STATES:
        raise ValidationError(f'Invalid exchange status. Must be one of: {list(EXCHANGE_STATES)}',
                              status=target)
    if target == current:
        return False
    if target not in EXCHANGE_TRANSITIONS[current]:
        raise StateTransitionError(f'Cannot move exchange from {current} to {target}',
                                   current=current, requested=target)
    return True
