"""
Shiprocket booking adapter.

Only the HTTP calls live here. What a booking does to an order is decided in
orders.book_shipment().
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

import requests

from .errors import UpstreamBookingError, ValidationError

logger = logging.getLogger(__name__)

SHIPROCKET_API = 'https://apiv2.shiprocket.in/v1/external'
TOKEN_TTL_SECONDS = 50 * 60

# parcel defaults (cm / kg)
PARCEL_LENGTH = 10
PARCEL_BREADTH = 10
PARCEL_HEIGHT = 2
WEIGHT_PER_UNIT = 0.25
MIN_WEIGHT = 0.5


@dataclass
class BookingResult:
    tracking_id: str
    label_url: str = ''
    shipment_id: Optional[str] = None
    warning: Optional[str] = None


def clean_phone(phone):
    digits = re.sub(r'\D', '', str(phone or ''))
    return digits[-10:] if len(digits) >= 10 else ''


def build_payload(order, products, address, customer, pickup='Primary'):
    """
    Shiprocket ad-hoc order body. `order` is Order.to_dict(), `products`
    maps product id -> Product.
    """
    phone = clean_phone(customer.get('phone') or address.get('phone'))
    if not phone:
        raise ValidationError('Invalid phone number for shipment (need 10 digits)')
    missing = [f for f in ('pincode', 'city', 'state') if not address.get(f)]
    if missing:
        raise ValidationError(f'Missing address fields required for booking: {", ".join(missing)}')

    units = sum(p['quantity'] for p in order['products'])
    return {
        'order_id': order['orderCode'],
        'order_date': (order.get('createdAt') or '')[:10],
        'pickup_location': pickup,
        'billing_customer_name': customer.get('name') or 'Customer',
        'billing_last_name': '',
        'billing_address': str(address.get('line1') or address.get('houseNo') or '').strip(),
        'billing_address_2': str(address.get('line2') or address.get('street') or '').strip(),
        'billing_city': address['city'],
        'billing_pincode': str(address['pincode']),
        'billing_state': address['state'],
        'billing_country': 'India',
        'billing_email': customer.get('email') or '',
        'billing_phone': phone,
        'shipping_is_billing': True,
        'order_items': [
            {
                'name': products[p['productId']].name if p['productId'] in products else str(p['productId']),
                'sku': p['sku'],
                'units': p['quantity'],
                'selling_price': p['price'],
            }
            for p in order['products']
        ],
        'payment_method': 'Prepaid' if order['paymentStatus'] == 'paid' else 'COD',
        'sub_total': order['totalAmount'],
        'length': PARCEL_LENGTH,
        'breadth': PARCEL_BREADTH,
        'height': PARCEL_HEIGHT,
        'weight': max(MIN_WEIGHT, WEIGHT_PER_UNIT * units),
    }


def _upstream_details(e):
    resp = getattr(e, 'response', None)
    if resp is not None:
        try:
            return resp.json()
        except ValueError:
            return resp.text[:500]
    return str(e)


class ShiprocketClient:

    def __init__(self, email, password, pickup='Primary', http=None, timeout=20):
        self.email = email
        self.password = password
        self.pickup = pickup
        self.http = http or requests.Session()
        self.timeout = timeout
        self._token = None
        self._token_expires = 0

    def token(self):
        if self._token and time.monotonic() < self._token_expires:
            return self._token
        if not self.email or not self.password:
            raise UpstreamBookingError('Shiprocket credentials not configured')
        try:
            resp = self.http.post(f'{SHIPROCKET_API}/auth/login',
                                  json={'email': self.email, 'password': self.password},
                                  timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise UpstreamBookingError('Shiprocket login failed', details=_upstream_details(e)) from e
        self._token = resp.json().get('token')
        self._token_expires = time.monotonic() + TOKEN_TTL_SECONDS
        return self._token

    def _post(self, path, body):
        return self.http.post(f'{SHIPROCKET_API}{path}', json=body,
                              headers={'Authorization': f'Bearer {self.token()}'},
                              timeout=self.timeout)

    def book(self, payload):
        """
        Create the shipment and try to assign an AWB. A failed AWB assignment
        still returns a result, with a warning and a placeholder tracking id.
        """
        try:
            resp = self._post('/orders/create/adhoc', payload)
            resp.raise_for_status()
            data = resp.json() or {}
        except (requests.RequestException, ValueError) as e:
            logger.error('shiprocket booking failed for %s: %s', payload.get('order_id'), e)
            raise UpstreamBookingError('Shiprocket booking failed', details=_upstream_details(e)) from e

        shipment_id = data.get('shipment_id')
        if not shipment_id:
            raise UpstreamBookingError('Shiprocket booking failed', details=data or 'Shipment id not returned')

        try:
            resp = self._post('/courier/assign/awb', {'shipment_id': shipment_id})
            resp.raise_for_status()
            body = resp.json() or {}
            awb = body.get('data') or (body.get('response') or {}).get('data') or {}
        except (requests.RequestException, ValueError) as e:
            logger.warning('AWB assignment failed for shipment %s: %s', shipment_id, e)
            return BookingResult(tracking_id=f'SR-{shipment_id}', shipment_id=str(shipment_id),
                                 warning=str(_upstream_details(e)))

        awb_code = awb.get('awb_code')
        if not awb_code:
            return BookingResult(tracking_id=f'SR-{shipment_id}', shipment_id=str(shipment_id),
                                 warning='Courier not assigned yet; AWB pending')
        return BookingResult(tracking_id=awb_code, label_url=awb.get('label_url') or '',
                             shipment_id=str(shipment_id))
