"""
Stock ledger: the only code allowed to change ProductSize.stock.

Callers hand it a session that is already inside Database.transaction();
the ledger never commits on its own. Size rows are locked in a fixed
(product_id, size) order so two checkouts touching the same products
cannot deadlock, and every decrement is re-guarded in SQL with
`stock >= qty` so a racing writer can never push a counter below zero.
"""

import logging

from sqlalchemy import select, update

from .db import on_commit
from .errors import InsufficientStockError, ValidationError
from .helpers import log_inventory
from .models import Product, ProductSize

logger = logging.getLogger(__name__)


def aggregate(lines):
    """sum quantities per (product, size); first-seen order is kept"""
    wanted = {}
    for line in lines:
        key = (line.product_id, line.size)
        wanted[key] = wanted.get(key, 0) + line.quantity
    return wanted


class StockLedger:

    def __init__(self, session, broadcaster=None):
        self.session = session
        self.broadcaster = broadcaster

    def _products(self, product_ids):
        rows = self.session.execute(select(Product).where(Product.id.in_(product_ids))).scalars()
        return {p.id: p for p in rows}

    def _lock(self, product_ids):
        stmt = (
            select(ProductSize)
            .where(ProductSize.product_id.in_(sorted(product_ids)))
            .order_by(ProductSize.product_id, ProductSize.size)
            .with_for_update()
        )
        return {(r.product_id, r.size): r for r in self.session.execute(stmt).scalars()}

    def _shortfalls(self, wanted, products, rows):
        for (pid, size), qty in wanted.items():
            product = products.get(pid)
            if product is None:
                raise ValidationError(f'Product {pid} not found', productId=pid)
            row = rows.get((pid, size))
            available = row.stock if row is not None else 0
            if available < qty:
                yield InsufficientStockError(product.sku, size, qty, available, product_id=pid)

    def check(self, lines):
        """non-mutating availability check; returns the list of shortfalls"""
        wanted = aggregate(lines)
        if not wanted:
            return []
        pids = {pid for pid, _ in wanted}
        products = self._products(pids)
        rows = {(r.product_id, r.size): r for r in
                self.session.execute(select(ProductSize).where(ProductSize.product_id.in_(pids))).scalars()}
        return list(self._shortfalls(wanted, products, rows))

    def reserve(self, lines, ref_id=None):
        """
        All-or-nothing decrement. Raises InsufficientStockError for the first
        short line before anything is written.
        """
        wanted = aggregate(lines)
        if not wanted:
            raise ValidationError('Cart is empty')
        pids = {pid for pid, _ in wanted}
        products = self._products(pids)
        rows = self._lock(pids)

        # phase 1: validate everything
        for shortfall in self._shortfalls(wanted, products, rows):
            raise shortfall

        # phase 2: decrement, each one still guarded in SQL
        for (pid, size), qty in wanted.items():
            row = rows[(pid, size)]
            result = self.session.execute(
                update(ProductSize)
                .where(ProductSize.id == row.id, ProductSize.stock >= qty)
                .values(stock=ProductSize.stock - qty)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.session.refresh(row)
                raise InsufficientStockError(products[pid].sku, size, qty, row.stock, product_id=pid)
            self.session.refresh(row)
            log_inventory(pid, size, -qty, 'order', ref_id, row.stock)

        self._notify(products.values())
        return {key: rows[key].stock for key in wanted}

    def release(self, lines, reason='restock', ref_id=None):
        """put units back, e.g. on cancellation or return"""
        wanted = aggregate(lines)
        if not wanted:
            return {}
        pids = {pid for pid, _ in wanted}
        products = self._products(pids)
        rows = self._lock(pids)
        levels = {}
        for (pid, size), qty in wanted.items():
            if pid not in products:
                logger.warning('cannot restock missing product %s', pid)
                continue
            row = rows.get((pid, size))
            if row is None:
                row = ProductSize(product_id=pid, size=size, stock=0)
                products[pid].sizes.append(row)
                self.session.flush()
            self.session.execute(
                update(ProductSize)
                .where(ProductSize.id == row.id)
                .values(stock=ProductSize.stock + qty)
                .execution_options(synchronize_session=False)
            )
            self.session.refresh(row)
            levels[(pid, size)] = row.stock
            log_inventory(pid, size, qty, reason, ref_id, row.stock)
        self._notify(p for p in products.values() if p.id in {k[0] for k in levels})
        return levels

    def adjust(self, product_id, size, delta, reason='manual adjustment'):
        """admin stock edit; same locking as a checkout, never below zero"""
        products = self._products({product_id})
        product = products.get(product_id)
        if product is None:
            raise ValidationError(f'Product {product_id} not found', productId=product_id)
        row = self._lock({product_id}).get((product_id, size))
        current = row.stock if row is not None else 0
        if current + delta < 0:
            raise InsufficientStockError(product.sku, size, -delta, current, product_id=product_id)
        if row is None:
            row = ProductSize(product_id=product_id, size=size, stock=0)
            product.sizes.append(row)
            self.session.flush()
        self.session.execute(
            update(ProductSize)
            .where(ProductSize.id == row.id, ProductSize.stock + delta >= 0)
            .values(stock=ProductSize.stock + delta)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(row)
        log_inventory(product_id, size, delta, reason, stock_after=row.stock)
        self._notify([product])
        return current, row.stock

    def _notify(self, products):
        if self.broadcaster is None:
            return
        for product in products:
            snapshot = product.to_dict()
            on_commit(self.session, lambda s=snapshot: self.broadcaster.stock_event(s))
