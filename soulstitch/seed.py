"""Demo catalogue for local development: `flask --app app seed`."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import click
from flask import current_app
from sqlalchemy import select

from .models import Coupon, FreeGift, Product, ProductSize

PRODUCTS = [
    # sku, name, offer, actual, exchange days, {size: stock}
    ('SS-TEE-001', 'Stitched Logo Tee', '799', '1199', 7, {'S': 20, 'M': 30, 'L': 25, 'XL': 10}),
    ('SS-HOOD-001', 'Heavyweight Hoodie', '1999', '2499', 7, {'M': 15, 'L': 15, 'XL': 5}),
    ('SS-CARGO-001', 'Utility Cargo Pants', '1499', '1999', 7, {'30': 10, '32': 12, '34': 8}),
    ('SS-CAP-001', 'Embroidered Cap', '499', '699', 0, {'FREE': 40}),
    ('SS-SOCK-001', 'Crew Socks (Pair)', '199', '299', 0, {'FREE': 100}),
]

COUPONS = [
    # code, type, value, min billing, max discount, visible
    ('SOUL10', 'percentage', '10', '999', '300', True),
    ('FLAT200', 'flat', '200', '1499', None, True),
    ('STAFF25', 'percentage', '25', '0', None, False),
]

GIFTS = [
    # name, sku, min billing, price
    ('Free Socks', 'SS-SOCK-001', '1499', '0'),
    ('Cap at Rs 99', 'SS-CAP-001', '2999', '99'),
]


def seed_catalogue(session):
    """idempotent: rows whose sku / code already exists are left alone"""
    added = 0
    for sku, name, offer, actual, days, sizes in PRODUCTS:
        if session.execute(select(Product.id).where(Product.sku == sku)).first():
            continue
        product = Product(sku=sku, name=name, offer_price=Decimal(offer),
                          actual_price=Decimal(actual), exchange_days=days)
        product.sizes = [ProductSize(size=s, stock=n) for s, n in sizes.items()]
        session.add(product)
        added += 1

    expiry = datetime.now(timezone.utc) + timedelta(days=90)
    for code, ctype, value, min_billing, max_discount, visible in COUPONS:
        if session.execute(select(Coupon.id).where(Coupon.code == code)).first():
            continue
        session.add(Coupon(code=code, type=ctype, value=Decimal(value),
                           min_billing=Decimal(min_billing),
                           max_discount=Decimal(max_discount) if max_discount else None,
                           expiry=expiry, is_visible=visible))
        added += 1

    for name, sku, min_billing, price in GIFTS:
        if session.execute(select(FreeGift.id).where(FreeGift.sku == sku)).first():
            continue
        session.add(FreeGift(name=name, sku=sku, min_billing=Decimal(min_billing), price=Decimal(price)))
        added += 1
    return added


def register_commands(app):

    @app.cli.command('seed')
    def seed_command():
        """Load demo products, coupons and gifts."""
        db = current_app.extensions['soulstitch'].db
        with db.transaction() as session:
            added = seed_catalogue(session)
        click.echo(f'Seeded {added} rows')
