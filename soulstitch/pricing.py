"""
Cart pricing.

Everything here is a pure function of its inputs: the same lines, coupon and
gift catalogue always give the same Quote. The storefront runs the same
rules for its live preview, but only the server-side result is ever charged
or persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from .errors import CouponError, GiftLockedError, ValidationError

ZERO = Decimal('0')
PAISE = Decimal('0.01')
RUPEE = Decimal('1')


def as_utc(value):
    # sqlite hands back naive datetimes; everything we store is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class CartLine:
    product_id: int
    size: str
    quantity: int
    is_gift: bool = False

    def to_dict(self):
        return {'productId': self.product_id, 'size': self.size,
                'quantity': self.quantity, 'isGift': self.is_gift}


@dataclass(frozen=True)
class PricedLine:
    product_id: int
    sku: str
    size: str
    quantity: int
    unit_price: Decimal
    is_gift: bool = False
    min_billing: Optional[Decimal] = None  # gift lines only

    @property
    def amount(self):
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class CouponTerms:
    code: str
    type: str  # flat | percentage
    value: Decimal
    min_billing: Decimal = ZERO
    max_discount: Optional[Decimal] = None
    expiry: Optional[datetime] = None

    def is_expired(self, now):
        return self.expiry is not None and as_utc(self.expiry) < now


@dataclass(frozen=True)
class GiftTerms:
    id: int
    sku: str
    min_billing: Decimal
    price: Decimal = ZERO
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Quote:
    regular_subtotal: Decimal
    gift_total: Decimal
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    coupon_code: Optional[str] = None
    invalid_gift_lines: tuple = field(default_factory=tuple)

    @property
    def checkout_blocked(self):
        return bool(self.invalid_gift_lines)

    def to_dict(self):
        return {
            'regularSubtotal': float(self.regular_subtotal),
            'giftTotal': float(self.gift_total),
            'subtotal': float(self.subtotal),
            'discount': float(self.discount),
            'total': int(self.total),
            'couponCode': self.coupon_code,
            'invalidGiftLines': list(self.invalid_gift_lines),
            'checkoutBlocked': self.checkout_blocked,
        }


def _newest_first(gift):
    created = as_utc(gift.created_at) or datetime.min.replace(tzinfo=timezone.utc)
    return (created, gift.id)


def gift_for_sku(gifts, sku):
    matches = [g for g in gifts if g.sku == sku]
    if not matches:
        return None
    return max(matches, key=_newest_first)


def price_lines(cart_lines, products, gifts):
    """
    Attach trusted unit prices to client cart lines.

    `products` maps product id -> object with .sku and .offer_price;
    `gifts` is the active gift catalogue (GiftTerms). A cart carries at
    most one gift line, of quantity 1.
    """
    if sum(1 for cl in cart_lines if cl.is_gift) > 1:
        raise ValidationError('Only one gift can be added per order')

    priced = []
    for line in cart_lines:
        product = products.get(line.product_id)
        if product is None:
            raise ValidationError(f'Product {line.product_id} not found', productId=line.product_id)
        if line.is_gift:
            if line.quantity != 1:
                raise ValidationError('Gift quantity must be 1', sku=product.sku, quantity=line.quantity)
            gift = gift_for_sku(gifts, product.sku)
            if gift is None:
                raise ValidationError(f'{product.sku} is not an active gift', sku=product.sku)
            priced.append(PricedLine(line.product_id, product.sku, line.size, line.quantity,
                                     Decimal(gift.price), True, Decimal(gift.min_billing)))
        else:
            priced.append(PricedLine(line.product_id, product.sku, line.size, line.quantity,
                                     Decimal(product.offer_price)))
    return priced


def coupon_discount(coupon, regular_subtotal, subtotal, now):
    if coupon.is_expired(now):
        raise CouponError('Coupon Expired', code=coupon.code)
    if subtotal < coupon.min_billing:
        raise CouponError(f'Min order of {coupon.min_billing} required for {coupon.code}',
                          code=coupon.code, minBilling=float(coupon.min_billing))
    if coupon.type == 'flat':
        discount = min(coupon.value, subtotal)
    elif coupon.type == 'percentage':
        # percentage applies to regular items only, gifts are already discounted
        discount = regular_subtotal * coupon.value / 100
        if coupon.max_discount is not None and discount > coupon.max_discount:
            discount = coupon.max_discount
    else:
        raise CouponError(f'Unknown coupon type {coupon.type}', code=coupon.code)
    return discount.quantize(PAISE, rounding=ROUND_HALF_UP)


def calculate(lines, coupon=None, now=None):
    now = now or datetime.now(timezone.utc)
    regular_subtotal = sum((l.amount for l in lines if not l.is_gift), ZERO)
    gift_total = sum((l.amount for l in lines if l.is_gift), ZERO)
    subtotal = regular_subtotal + gift_total

    discount = ZERO
    if coupon is not None:
        discount = coupon_discount(coupon, regular_subtotal, subtotal, now)

    total = max(ZERO, subtotal - discount).quantize(RUPEE, rounding=ROUND_HALF_UP)

    invalid = tuple(
        {'productId': l.product_id, 'sku': l.sku, 'size': l.size, 'minBilling': float(l.min_billing)}
        for l in lines
        if l.is_gift and l.min_billing is not None and regular_subtotal < l.min_billing
    )

    return Quote(
        regular_subtotal=regular_subtotal,
        gift_total=gift_total,
        subtotal=subtotal,
        discount=discount,
        total=total,
        coupon_code=coupon.code if coupon else None,
        invalid_gift_lines=invalid,
    )


def unlocked_gift(gifts, regular_subtotal):
    """highest threshold <= subtotal; equal thresholds go to the newest gift"""
    eligible = [g for g in gifts if g.min_billing <= regular_subtotal]
    if not eligible:
        return None
    return max(eligible, key=lambda g: (g.min_billing, _newest_first(g)))


def locked_gift(gifts, regular_subtotal):
    """the next gift the customer could unlock, if any"""
    pending = [g for g in gifts if g.min_billing > regular_subtotal]
    if not pending:
        return None
    return min(pending, key=lambda g: (g.min_billing, -g.id))


def claim_gift(lines, gift):
    """check a gift can be added to the cart right now"""
    if any(l.is_gift for l in lines):
        raise ValidationError('Cart already contains a gift')
    regular_subtotal = sum((l.amount for l in lines if not l.is_gift), ZERO)
    if regular_subtotal < gift.min_billing:
        raise GiftLockedError(
            f'Add items worth {gift.min_billing - regular_subtotal} more to unlock this gift',
            sku=gift.sku, minBilling=float(gift.min_billing),
            regularSubtotal=float(regular_subtotal),
        )
    return gift
