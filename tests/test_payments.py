from decimal import Decimal

import pytest

from conftest import SECRET, cart, line, stock_of
from soulstitch.errors import SignatureError
from soulstitch.models import Order, Product
from soulstitch.payments import sign, verify_signature


def start_payment(client, body):
    resp = client.post('/payments/order', json=body)
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()


def callback(body, gateway_order_id, payment_id='pay_001', signature=None):
    data = dict(body)
    data['razorpay_order_id'] = gateway_order_id
    data['razorpay_payment_id'] = payment_id
    data['razorpay_signature'] = signature or sign(SECRET, gateway_order_id, payment_id)
    return data


def paid_orders(db):
    with db.session() as session:
        return session.query(Order).filter(Order.payment_status == 'paid').count()


def test_signature_helpers():
    sig = sign(SECRET, 'order_1', 'pay_1')
    verify_signature(SECRET, 'order_1', 'pay_1', sig)
    with pytest.raises(SignatureError):
        verify_signature(SECRET, 'order_1', 'pay_2', sig)
    with pytest.raises(SignatureError):
        verify_signature('', 'order_1', 'pay_1', sig)


def test_gateway_is_asked_for_the_server_total(client, gateway, catalog):
    body = cart(line(catalog['tee'], 'M', 2), couponCode='SOUL10', totalAmount=1)
    result = start_payment(client, body)
    assert result['amount'] == 110000
    assert result['computedTotal'] == 1100
    assert result['currency'] == 'INR'
    assert result['keyId'] == 'rzp_test_key'
    assert gateway.calls[0]['amount'] == 110000


def test_payment_order_checks_stock_first(client, gateway, catalog):
    resp = client.post('/payments/order', json=cart(line(catalog['tee'], 'L', 2)))
    assert resp.status_code == 400
    assert resp.get_json()['available'] == 1
    assert gateway.calls == []


def test_bad_signature_creates_nothing(client, db, catalog):
    body = cart(line(catalog['tee'], 'M'))
    intent = start_payment(client, body)
    resp = client.post('/payments/verify', json=callback(body, intent['orderId'], signature='deadbeef'))
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Payment signature verification failed'
    assert paid_orders(db) == 0
    assert stock_of(db, catalog['tee'], 'M') == 10


def test_verified_payment_becomes_a_paid_order(client, db, broadcaster, catalog):
    body = cart(line(catalog['tee'], 'M', 2))
    intent = start_payment(client, body)

    resp = client.post('/payments/verify', json=callback(body, intent['orderId']))
    assert resp.status_code == 201
    order = resp.get_json()
    assert order['paymentStatus'] == 'paid'
    assert order['paymentId'] == 'pay_001'
    assert order['totalAmount'] == 1200
    assert stock_of(db, catalog['tee'], 'M') == 8


def test_replayed_verify_returns_the_same_order(client, db, catalog):
    body = cart(line(catalog['tee'], 'M', 2))
    intent = start_payment(client, body)
    first = client.post('/payments/verify', json=callback(body, intent['orderId']))
    second = client.post('/payments/verify', json=callback(body, intent['orderId']))

    assert first.status_code == 201
    assert second.status_code == 200
    assert first.get_json()['id'] == second.get_json()['id']
    assert stock_of(db, catalog['tee'], 'M') == 8
    assert paid_orders(db) == 1


def test_stock_gone_between_intent_and_verify(client, db, catalog):
    body = cart(line(catalog['tee'], 'L'))
    intent = start_payment(client, body)
    assert client.post('/orders', json=cart(line(catalog['tee'], 'L'), user='u2')).status_code == 201

    resp = client.post('/payments/verify', json=callback(body, intent['orderId']))
    assert resp.status_code == 400
    assert resp.get_json()['available'] == 0
    assert paid_orders(db) == 0


def test_price_change_after_intent_is_a_mismatch(client, db, catalog):
    body = cart(line(catalog['tee'], 'M'))
    intent = start_payment(client, body)
    with db.transaction() as session:
        session.get(Product, catalog['tee']).offer_price = Decimal('650')

    resp = client.post('/payments/verify', json=callback(body, intent['orderId']))
    assert resp.status_code == 400
    assert resp.get_json()['paid'] == 600
    assert paid_orders(db) == 0


def test_cart_swapped_after_intent_is_a_mismatch(client, db, catalog):
    intent = start_payment(client, cart(line(catalog['tee'], 'M')))
    swapped = cart(line(catalog['tee'], 'M', 3))
    resp = client.post('/payments/verify', json=callback(swapped, intent['orderId']))
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Cart does not match the payment that was made'
    assert stock_of(db, catalog['tee'], 'M') == 10


def test_unknown_gateway_order(client, catalog):
    body = cart(line(catalog['tee'], 'M'))
    resp = client.post('/payments/verify', json=callback(body, 'order_unknown'))
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Unknown payment order'
