from datetime import datetime, timedelta, timezone

import pytest

from conftest import ADMIN, cart, line, stock_of
from soulstitch import lifecycle
from soulstitch.errors import StateTransitionError, ValidationError
from soulstitch.models import Order

NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)


# ---------- pure rules ----------

@pytest.mark.parametrize('text,status', [
    ('RTO Initiated', 'returned'),
    ('Undelivered', 'returned'),
    ('Cancelled by seller', 'returned'),
    ('Delivered', 'delivered'),
    ('Out For Delivery', 'shipped'),
    ('In Transit', 'shipped'),
    ('Picked Up', 'shipped'),
    ('Pickup Scheduled', None),
    ('', None),
])
def test_carrier_status_mapping(text, status):
    assert lifecycle.carrier_status(text) == status


def test_terminal_states_never_move():
    for terminal in lifecycle.TERMINAL:
        for target in lifecycle.STATUSES:
            if target == terminal:
                assert lifecycle.check_transition(terminal, target) is False
                continue
            with pytest.raises(StateTransitionError):
                lifecycle.check_transition(terminal, target)


def test_shipped_order_cannot_be_cancelled():
    with pytest.raises(StateTransitionError) as exc:
        lifecycle.check_transition('shipped', 'cancelled')
    assert 'return' in exc.value.message


def test_unknown_status_is_a_validation_error():
    with pytest.raises(ValidationError):
        lifecycle.check_transition('pending', 'lost')


def test_paid_cancel_requires_refund_reference():
    with pytest.raises(StateTransitionError):
        lifecycle.check_transition('pending', 'cancelled', 'paid')
    assert lifecycle.check_transition('pending', 'cancelled', 'paid', {'refundId': 'rfnd_1'})
    assert lifecycle.check_transition('pending', 'cancelled', 'unpaid')


def test_carrier_cannot_regress():
    assert lifecycle.check_carrier_transition('shipped', 'returned')
    assert lifecycle.check_carrier_transition('shipped', 'shipped') is False
    with pytest.raises(StateTransitionError):
        lifecycle.check_carrier_transition('returned', 'delivered')
    with pytest.raises(StateTransitionError):
        lifecycle.check_carrier_transition('delivered', 'shipped')
    with pytest.raises(StateTransitionError):
        lifecycle.check_carrier_transition('delivered', 'returned')


def test_exchange_window():
    delivered = NOW - timedelta(days=3)
    lifecycle.check_exchange_request('delivered', None, delivered, 7, NOW)
    with pytest.raises(StateTransitionError):
        lifecycle.check_exchange_request('delivered', None, NOW - timedelta(days=8), 7, NOW)
    with pytest.raises(StateTransitionError):
        lifecycle.check_exchange_request('shipped', None, None, 7, NOW)
    with pytest.raises(StateTransitionError):
        lifecycle.check_exchange_request('delivered', None, delivered, 0, NOW)


def test_exchange_transitions():
    assert lifecycle.check_exchange_transition('pending', 'approved')
    assert lifecycle.check_exchange_transition('approved', 'approved') is False
    with pytest.raises(StateTransitionError):
        lifecycle.check_exchange_transition('pending', 'exchanged')
    with pytest.raises(StateTransitionError):
        lifecycle.check_exchange_transition('rejected', 'approved')


# ---------- over HTTP ----------

def place(client, catalog, *lines, **kw):
    resp = client.post('/orders', json=cart(*(lines or [line(catalog['tee'], 'M', 2)]), **kw))
    assert resp.status_code == 201
    return resp.get_json()


def set_status(client, order_id, status, **extra):
    return client.put(f'/orders/{order_id}', json={'status': status, **extra}, headers=ADMIN)


def deliver(client, order_id):
    assert set_status(client, order_id, 'shipped').status_code == 200
    resp = set_status(client, order_id, 'delivered')
    assert resp.status_code == 200
    return resp.get_json()


def test_status_update_needs_admin(client, catalog):
    order = place(client, catalog)
    resp = client.put(f'/orders/{order["id"]}', json={'status': 'processing'})
    assert resp.status_code == 403
    assert resp.get_json()['error'] == 'Admin access required'


def test_cancel_restocks_and_is_final(client, db, catalog):
    order = place(client, catalog)
    assert stock_of(db, catalog['tee'], 'M') == 8

    resp = set_status(client, order['id'], 'cancelled')
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'cancelled'
    assert stock_of(db, catalog['tee'], 'M') == 10

    resp = set_status(client, order['id'], 'pending')
    assert resp.status_code == 409
    assert resp.get_json()['current'] == 'cancelled'

    # replaying the same status is harmless and does not restock twice
    assert set_status(client, order['id'], 'cancelled').status_code == 200
    assert stock_of(db, catalog['tee'], 'M') == 10


def test_delivered_sets_timestamp(client, catalog):
    order = place(client, catalog)
    delivered = deliver(client, order['id'])
    assert delivered['status'] == 'delivered'
    assert delivered['deliveredAt'] is not None
    assert set_status(client, order['id'], 'cancelled').status_code == 409


def test_history_is_recorded(client, db, catalog):
    order = place(client, catalog)
    set_status(client, order['id'], 'processing', note='packed')
    with db.session() as session:
        history = [(h.from_status, h.to_status, h.source) for h in session.get(Order, order['id']).history]
    assert history == [(None, 'pending', 'checkout'), ('pending', 'processing', 'admin')]


def test_carrier_rto_then_late_delivered(client, db, catalog):
    order = place(client, catalog)
    assert client.post('/shipping/book', json={
        'orderId': order['id'],
        'address': {'line1': '12 MG Road', 'city': 'Pune', 'state': 'MH', 'pincode': '411001'},
        'customer': {'name': 'Asha', 'phone': '+91 98765 43210'},
    }, headers=ADMIN).status_code == 200

    resp = client.post('/webhooks/shipping', json={'awb': 'AWB1001', 'current_status': 'RTO Initiated'})
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'returned'
    assert stock_of(db, catalog['tee'], 'M') == 10

    replay = client.post('/webhooks/shipping', json={'awb': 'AWB1001', 'current_status': 'RTO Initiated'})
    assert replay.status_code == 200
    assert replay.get_json()['changed'] is False

    late = client.post('/webhooks/shipping', json={'awb': 'AWB1001', 'current_status': 'Delivered'})
    assert late.status_code == 409
    with db.session() as session:
        assert session.get(Order, order['id']).status == 'returned'


def test_webhook_edge_cases(app, client, catalog):
    assert client.post('/webhooks/shipping', json={'awb': 'NOPE', 'current_status': 'Delivered'}).status_code == 404
    assert client.post('/webhooks/shipping', json={'current_status': 'Delivered'}).status_code == 400

    app.config['SHIPPING_WEBHOOK_TOKEN'] = 'hook-token'
    resp = client.post('/webhooks/shipping', json={'awb': 'NOPE', 'current_status': 'Delivered'})
    assert resp.status_code == 403
    resp = client.post('/webhooks/shipping', json={'awb': 'NOPE', 'current_status': 'Delivered'},
                       headers={'x-api-key': 'hook-token'})
    assert resp.status_code == 404


def test_paid_cancel_over_http(client, db, catalog):
    order = place(client, catalog)
    with db.transaction() as session:
        session.get(Order, order['id']).payment_status = 'paid'

    assert set_status(client, order['id'], 'cancelled').status_code == 409
    resp = set_status(client, order['id'], 'cancelled', refundDetails={'refundId': 'rfnd_9', 'amount': 1200})
    assert resp.status_code == 200
    assert resp.get_json()['refundDetails']['refundId'] == 'rfnd_9'


def exchange_body(catalog, **extra):
    body = {'userId': 'u1', 'newProductId': catalog['tee'], 'newSize': 'L',
            'reason': 'Too small', 'photos': ['https://img.example/1.jpg']}
    body.update(extra)
    return body


def test_exchange_flow(client, db, catalog):
    order = place(client, catalog)
    resp = client.post(f'/orders/{order["id"]}/exchange', json=exchange_body(catalog))
    assert resp.status_code == 409

    deliver(client, order['id'])
    resp = client.post(f'/orders/{order["id"]}/exchange', json=exchange_body(catalog))
    assert resp.status_code == 201
    body = resp.get_json()
    assert body['status'] == 'delivered'
    assert body['displayStatus'] == 'exchange-pending'
    assert body['exchangeRequest']['newSize'] == 'L'

    assert client.post(f'/orders/{order["id"]}/exchange', json=exchange_body(catalog)).status_code == 409
    assert set_status(client, order['id'], 'returned').status_code == 409

    url = f'/orders/{order["id"]}/exchange'
    resp = client.put(url, json={'status': 'approved', 'adminNotes': 'ok'}, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.get_json()['displayStatus'] == 'exchange-approved'
    assert stock_of(db, catalog['tee'], 'L') == 0

    assert client.put(url, json={'status': 'exchanged'}, headers=ADMIN).status_code == 409
    resp = client.put(url, json={'status': 'picked-up', 'pickupTrackingId': 'RP-1'}, headers=ADMIN)
    assert resp.get_json()['exchangeRequest']['pickupTrackingId'] == 'RP-1'
    client.put(url, json={'status': 'in-transit'}, headers=ADMIN)
    resp = client.put(url, json={'status': 'exchanged'}, headers=ADMIN)
    assert resp.get_json()['displayStatus'] == 'exchanged'
    assert stock_of(db, catalog['tee'], 'L') == 0

    before = stock_of(db, catalog['tee'], 'M')
    resp = set_status(client, order['id'], 'returned')
    assert resp.status_code == 409
    assert resp.get_json()['error'] == 'Order was already exchanged and cannot be returned'
    assert stock_of(db, catalog['tee'], 'M') == before


def test_rejected_exchange_releases_the_replacement(client, db, catalog):
    order = place(client, catalog)
    deliver(client, order['id'])
    client.post(f'/orders/{order["id"]}/exchange', json=exchange_body(catalog))
    url = f'/orders/{order["id"]}/exchange'
    client.put(url, json={'status': 'approved'}, headers=ADMIN)
    assert stock_of(db, catalog['tee'], 'L') == 0

    resp = client.put(url, json={'status': 'rejected', 'adminNotes': 'worn'}, headers=ADMIN)
    assert resp.get_json()['displayStatus'] == 'exchange-rejected'
    assert stock_of(db, catalog['tee'], 'L') == 1
    assert set_status(client, order['id'], 'returned').status_code == 200


def test_exchange_guards(client, db, catalog):
    order = place(client, catalog)
    deliver(client, order['id'])
    url = f'/orders/{order["id"]}/exchange'

    assert client.post(url, json=exchange_body(catalog, userId='u2')).status_code == 404
    assert client.post(url, json=exchange_body(catalog, reason='')).status_code == 400

    with db.transaction() as session:
        session.get(Order, order['id']).delivered_at = datetime.now(timezone.utc) - timedelta(days=30)
    resp = client.post(url, json=exchange_body(catalog))
    assert resp.status_code == 409
    assert 'window' in resp.get_json()['error']


def test_products_without_exchange_window(client, catalog):
    order = place(client, catalog, line(catalog['cap'], 'FREE'))
    deliver(client, order['id'])
    resp = client.post(f'/orders/{order["id"]}/exchange', json=exchange_body(catalog))
    assert resp.status_code == 409


def test_completed_exchange_cannot_be_returned():
    with pytest.raises(StateTransitionError):
        lifecycle.check_transition('delivered', 'returned', 'paid', exchange_status='exchanged')
    assert lifecycle.check_transition('delivered', 'returned', 'paid', exchange_status='rejected')
