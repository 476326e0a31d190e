"""
SoulStitch order service: checkout, stock reservation, payment verification
and the order lifecycle behind the storefront and admin console.
"""

import logging
from dataclasses import dataclass

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

__version__ = '1.4.0'

logger = logging.getLogger(__name__)


@dataclass
class Store:
    db: object
    broadcaster: object
    gateway: object
    carrier: object


def configure_logging(level):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def register_error_handlers(app):
    from .errors import StoreError
    from .helpers import log_action

    @app.errorhandler(StoreError)
    def handle_store_error(e):
        if e.status_code >= 500:
            logger.error('%s: %s', type(e).__name__, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({'error': e.description}), e.code

    @app.errorhandler(Exception)
    def handle_exception(e):
        # catch-all; in debug mode let it bubble up
        if app.debug:
            raise e
        logger.exception('unhandled error')
        log_action('unhandled_error', data={'error': str(e), 'type': type(e).__name__})
        return jsonify({'error': 'An unexpected error occurred'}), 500


def create_app(overrides=None, gateway=None, carrier=None, broadcaster=None):
    from .broadcast import Broadcaster
    from .config import load_config
    from .db import Database
    from .payments import RazorpayGateway
    from .routes import api
    from .seed import register_commands
    from .shipping import ShiprocketClient

    cfg = load_config(overrides)
    configure_logging(cfg['LOG_LEVEL'])

    app = Flask(__name__)
    app.config.update(cfg)

    db = Database(cfg['DATABASE_URL'], timeout=cfg['CHECKOUT_TIMEOUT_SECONDS'])
    db.create_all()

    app.extensions['soulstitch'] = Store(
        db=db,
        broadcaster=broadcaster or Broadcaster(cfg['BROADCAST_QUEUE_SIZE']),
        gateway=gateway or RazorpayGateway(cfg['RAZORPAY_KEY_ID'], cfg['RAZORPAY_SECRET']),
        carrier=carrier or ShiprocketClient(cfg['SHIPROCKET_EMAIL'], cfg['SHIPROCKET_PASSWORD'],
                                            cfg['SHIPROCKET_PICKUP']),
    )

    app.register_blueprint(api)
    register_error_handlers(app)
    register_commands(app)
    return app
