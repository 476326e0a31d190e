import logging
import random

from sqlalchemy import select

from .models import Order

audit_logger = logging.getLogger('soulstitch.audit')

_rng = random.SystemRandom()


# ============== HELPERS ==============

def log_action(action, user_id=None, data=None):
    # audit trail, every action (no sampling)
    audit_logger.info('%s user=%s data=%s', action, user_id, data or {})


def log_inventory(product_id, size, change, reason, ref_id=None, stock_after=None):
    audit_logger.info('inventory product=%s size=%s change=%+d reason=%s ref=%s stock_after=%s',
                      product_id, size, change, reason, ref_id, stock_after)


def gen_order_code(session, prefix='SS', digits=10):
    """human friendly order code, e.g. SS4821907735. checked against existing orders"""
    low = 10 ** (digits - 1)
    while True:
        code = f'{prefix}{_rng.randint(low, low * 10 - 1)}'
        taken = session.execute(select(Order.id).where(Order.order_code == code)).first()
        if taken is None:
            return code
