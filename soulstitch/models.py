from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .pricing import CouponTerms, GiftTerms

Money = Numeric(10, 2)


def utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def _num(value):
    if value is None:
        return None
    value = Decimal(value)
    return int(value) if value == value.to_integral_value() else float(value)


class Product(Base):
    __tablename__ = 'products'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[str] = mapped_column(String(255))
    offer_price: Mapped[Decimal] = mapped_column(Money)
    actual_price: Mapped[Decimal] = mapped_column(Money)
    exchange_days: Mapped[int] = mapped_column(Integer, default=7)  # 0 = no exchange
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    sizes = relationship('ProductSize', back_populates='product',
                         cascade='all, delete-orphan', order_by='ProductSize.id', lazy='selectin')

    def size_map(self):
        return {s.size: s.stock for s in self.sizes}

    def to_dict(self):
        return {
            'id': self.id,
            'sku': self.sku,
            'name': self.name,
            'offerPrice': _num(self.offer_price),
            'actualPrice': _num(self.actual_price),
            'exchangeDays': self.exchange_days,
            'sizes': self.size_map(),
        }


class ProductSize(Base):
    __tablename__ = 'product_sizes'
    __table_args__ = (
        UniqueConstraint('product_id', 'size'),
        CheckConstraint('stock >= 0', name='stock_not_negative'),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id', ondelete='CASCADE'), index=True)
    size: Mapped[str] = mapped_column(String(16))
    stock: Mapped[int] = mapped_column(Integer, default=0)

    product = relationship('Product', back_populates='sizes')


class Coupon(Base):
    __tablename__ = 'coupons'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True)
    type: Mapped[str] = mapped_column(String(16))  # flat | percentage
    value: Mapped[Decimal] = mapped_column(Money)
    min_billing: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    max_discount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    expiry: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    redemptions = relationship('CouponRedemption', back_populates='coupon', lazy='selectin')

    def terms(self):
        return CouponTerms(
            code=self.code,
            type=self.type,
            value=Decimal(self.value),
            min_billing=Decimal(self.min_billing or 0),
            max_discount=Decimal(self.max_discount) if self.max_discount is not None else None,
            expiry=self.expiry,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'type': self.type,
            'value': _num(self.value),
            'minBilling': _num(self.min_billing),
            'maxDiscount': _num(self.max_discount),
            'expiry': _iso(self.expiry),
            'isVisible': self.is_visible,
            'usageCount': len(self.redemptions),
        }


class CouponRedemption(Base):
    """append-only usage ledger; one row per (coupon, order)"""
    __tablename__ = 'coupon_redemptions'
    __table_args__ = (UniqueConstraint('coupon_id', 'order_id'),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    coupon_id: Mapped[int] = mapped_column(ForeignKey('coupons.id'))
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id'))
    user_id: Mapped[str] = mapped_column(String(64))
    savings: Mapped[Decimal] = mapped_column(Money)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    coupon = relationship('Coupon', back_populates='redemptions')


class FreeGift(Base):
    __tablename__ = 'free_gifts'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    sku: Mapped[str] = mapped_column(String(64), index=True)
    min_billing: Mapped[Decimal] = mapped_column(Money)
    price: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def terms(self):
        return GiftTerms(
            id=self.id,
            sku=self.sku,
            min_billing=Decimal(self.min_billing),
            price=Decimal(self.price or 0),
            created_at=self.created_at,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'sku': self.sku,
            'minBilling': _num(self.min_billing),
            'price': _num(self.price),
            'isActive': self.is_active,
        }


class Order(Base):
    __tablename__ = 'orders'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    address_id: Mapped[str] = mapped_column(String(64))
    subtotal: Mapped[Decimal] = mapped_column(Money)
    gift_total: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    discount_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    coupon_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String(16), default='pending', index=True)
    payment_status: Mapped[str] = mapped_column(String(8), default='unpaid')
    payment_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    label_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    booking_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship('OrderItem', back_populates='order',
                         cascade='all, delete-orphan', order_by='OrderItem.id', lazy='selectin')
    exchange = relationship('ExchangeRequest', back_populates='order',
                            uselist=False, cascade='all, delete-orphan', lazy='selectin')
    history = relationship('StatusChange', back_populates='order',
                           cascade='all, delete-orphan', order_by='StatusChange.id', lazy='selectin')

    @property
    def display_status(self):
        # single string for older clients, e.g. 'exchange-pending'
        if self.exchange is None:
            return self.status
        if self.exchange.status == 'exchanged':
            return 'exchanged'
        return f'exchange-{self.exchange.status}'

    def to_dict(self):
        return {
            'id': self.id,
            'orderCode': self.order_code,
            'userId': self.user_id,
            'addressId': self.address_id,
            'products': [i.to_dict() for i in self.items],
            'subtotal': _num(self.subtotal),
            'giftTotal': _num(self.gift_total),
            'discountAmount': _num(self.discount_amount),
            'couponCode': self.coupon_code,
            'totalAmount': _num(self.total_amount),
            'status': self.status,
            'displayStatus': self.display_status,
            'paymentStatus': self.payment_status,
            'paymentId': self.payment_id,
            'trackingId': self.tracking_id,
            'labelUrl': self.label_url,
            'refundDetails': self.refund_details,
            'exchangeRequest': self.exchange.to_dict() if self.exchange else None,
            'deliveredAt': _iso(self.delivered_at),
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }


class OrderItem(Base):
    __tablename__ = 'order_items'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id'))
    sku: Mapped[str] = mapped_column(String(64))
    size: Mapped[str] = mapped_column(String(16))
    quantity: Mapped[int] = mapped_column(Integer)
    price: Mapped[Decimal] = mapped_column(Money)  # captured at order time
    is_gift: Mapped[bool] = mapped_column(Boolean, default=False)

    order = relationship('Order', back_populates='items')

    def to_dict(self):
        return {
            'productId': self.product_id,
            'sku': self.sku,
            'size': self.size,
            'quantity': self.quantity,
            'price': _num(self.price),
            'isGift': self.is_gift,
        }


class ExchangeRequest(Base):
    __tablename__ = 'exchange_requests'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), unique=True)
    status: Mapped[str] = mapped_column(String(16), default='pending')
    reason: Mapped[str] = mapped_column(Text, default='')
    photos: Mapped[list] = mapped_column(JSON, default=list)
    new_product_id: Mapped[int] = mapped_column(ForeignKey('products.id'))
    new_size: Mapped[str] = mapped_column(String(16))
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pickup_tracking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    stock_reserved: Mapped[bool] = mapped_column(Boolean, default=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order = relationship('Order', back_populates='exchange')

    def to_dict(self):
        return {
            'status': self.status,
            'reason': self.reason,
            'photos': self.photos or [],
            'newProductId': self.new_product_id,
            'newSize': self.new_size,
            'adminNotes': self.admin_notes,
            'pickupTrackingId': self.pickup_tracking_id,
            'requestedAt': _iso(self.requested_at),
            'updatedAt': _iso(self.updated_at),
        }


class StatusChange(Base):
    __tablename__ = 'status_changes'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), index=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32))
    source: Mapped[str] = mapped_column(String(16))  # checkout | admin | carrier | customer
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    order = relationship('Order', back_populates='history')

    def to_dict(self):
        return {
            'from': self.from_status,
            'to': self.to_status,
            'source': self.source,
            'note': self.note,
            'changedAt': _iso(self.created_at),
        }


class PaymentIntent(Base):
    """what the gateway was asked to charge, keyed by its order id"""
    __tablename__ = 'payment_intents'
    gateway_order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64))
    address_id: Mapped[str] = mapped_column(String(64))
    items: Mapped[list] = mapped_column(JSON)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    amount: Mapped[int] = mapped_column(Integer)  # paise
    currency: Mapped[str] = mapped_column(String(3))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
