import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

# Ensure the backend root (containing the `territory_market` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from territory_market import create_app, db, socketio
from territory_market.wiring import build_services

ADMIN_SECRET = 'admin-secret'
CRON_SECRET = 'cron-secret'
PAYMENT_WEBHOOK_SECRET = 'webhook-secret'


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CACHE_URL = 'memory://'
    BID_INCREMENT = '1'
    SETTLEMENT_BATCH_SIZE = 100
    PROTECTION_TIERS = '0:7,100:14,200:21,300:28,400:30'
    ADMIN_SECRET = ADMIN_SECRET
    CRON_SECRET = CRON_SECRET
    PAYMENT_WEBHOOK_SECRET = PAYMENT_WEBHOOK_SECRET


class FakeClock:
    def __init__(self, start):
        self.current = start

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture()
def flask_app(clock):
    application = create_app(TestConfig)
    application.extensions['market_clock'] = clock
    with application.app_context():
        # Ensure models are imported so tables are created
        import territory_market.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def services(flask_app):
    return build_services(flask_app, db.session)


@pytest.fixture()
def make_territory(flask_app):
    from territory_market.models import Territory

    def _make(territory_id='T1', base_price='10', **fields):
        territory = Territory(id=territory_id, name=territory_id, base_price=Decimal(base_price), **fields)
        db.session.add(territory)
        db.session.commit()
        return territory
    return _make


@pytest.fixture()
def fund(services):
    """Credit a user's wallet through a confirmed payment."""
    counter = {'n': 0}

    def _fund(user_id, amount):
        counter['n'] += 1
        payment, _ = services.confirmations.confirm(f'pay-{user_id}-{counter["n"]}', user_id, amount)
        return payment
    return _fund


def admin_headers():
    return {'Authorization': f'Bearer {ADMIN_SECRET}'}


def cron_headers():
    return {'Authorization': f'Bearer {CRON_SECRET}'}


def webhook_headers():
    return {'Authorization': f'Bearer {PAYMENT_WEBHOOK_SECRET}'}
