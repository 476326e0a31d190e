from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from soulstitch import create_app
from soulstitch.broadcast import Broadcaster
from soulstitch.models import Coupon, FreeGift, Product, ProductSize
from soulstitch.shipping import BookingResult

ADMIN = {'X-Admin-Key': 'test-admin'}
SECRET = 'rzp_secret'


class FakeGateway:
    key_id = 'rzp_test_key'

    def __init__(self):
        self.calls = []

    def create_order(self, amount, currency, receipt, notes=None):
        self.calls.append({'amount': amount, 'currency': currency, 'receipt': receipt, 'notes': notes})
        return {'id': f'order_test{len(self.calls)}', 'amount': amount, 'currency': currency}


class FakeCarrier:
    pickup = 'Primary'

    def __init__(self):
        self.payloads = []
        self.result = BookingResult(tracking_id='AWB1001', label_url='https://labels.example/1001.pdf',
                                    shipment_id='9001')
        self.error = None
        self.before_book = None

    def book(self, payload):
        self.payloads.append(payload)
        if self.before_book is not None:
            self.before_book()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture
def broadcaster():
    return Broadcaster(queue_size=50)


@pytest.fixture
def app(tmp_path, gateway, carrier, broadcaster):
    # file-backed sqlite: the write lock has to be shared across threads
    app = create_app(
        overrides={
            'DATABASE_URL': f'sqlite:///{tmp_path / "store.db"}',
            'ADMIN_KEY': 'test-admin',
            'RAZORPAY_KEY_ID': FakeGateway.key_id,
            'RAZORPAY_SECRET': SECRET,
            'SHIPPING_WEBHOOK_TOKEN': '',
            'LOG_LEVEL': 'WARNING',
        },
        gateway=gateway,
        carrier=carrier,
        broadcaster=broadcaster,
    )
    app.config['TESTING'] = True
    yield app
    app.extensions['soulstitch'].db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return app.extensions['soulstitch'].db


@pytest.fixture
def catalog(db):
    """TEE 600 (M:10, L:1), HOOD 1400 (M:3), CAP 299 gift at 1500, SOUL10 and FLAT200"""
    with db.transaction() as session:
        tee = Product(sku='TEE', name='Logo Tee', offer_price=Decimal('600'), actual_price=Decimal('900'),
                      exchange_days=7)
        tee.sizes = [ProductSize(size='M', stock=10), ProductSize(size='L', stock=1)]
        hood = Product(sku='HOOD', name='Hoodie', offer_price=Decimal('1400'), actual_price=Decimal('1800'),
                       exchange_days=10)
        hood.sizes = [ProductSize(size='M', stock=3)]
        cap = Product(sku='CAP', name='Cap', offer_price=Decimal('299'), actual_price=Decimal('399'),
                      exchange_days=0)
        cap.sizes = [ProductSize(size='FREE', stock=10)]
        session.add_all([tee, hood, cap])
        session.add(Coupon(code='SOUL10', type='percentage', value=Decimal('10'), min_billing=Decimal('999'),
                           max_discount=Decimal('100'),
                           expiry=datetime.now(timezone.utc) + timedelta(days=30)))
        session.add(Coupon(code='FLAT200', type='flat', value=Decimal('200'), min_billing=Decimal('0')))
        session.add(Coupon(code='OLD50', type='flat', value=Decimal('50'), min_billing=Decimal('0'),
                           expiry=datetime.now(timezone.utc) - timedelta(days=1)))
        session.flush()
        session.add(FreeGift(name='Free Cap', sku='CAP', min_billing=Decimal('1500'), price=Decimal('0')))
        session.flush()
        return {'tee': tee.id, 'hood': hood.id, 'cap': cap.id}


def stock_of(db, product_id, size):
    with db.session() as session:
        return session.get(Product, product_id).size_map().get(size)


def cart(*lines, user='u1', address='addr-1', **extra):
    """cart(line(pid, 'M', 2), ...) -> request body"""
    body = {'userId': user, 'addressId': address, 'products': [
        {'productId': pid, 'size': size, 'quantity': qty, 'isGift': gift}
        for pid, size, qty, gift in lines
    ]}
    body.update(extra)
    return body


def line(product_id, size, quantity=1, gift=False):
    return product_id, size, quantity, gift
