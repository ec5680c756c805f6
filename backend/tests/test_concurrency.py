"""Bidders and settlement runs racing on a store shared between threads.

Runs on a file-backed SQLite database, and also on PostgreSQL when
TEST_DATABASE_URL points at a disposable database.
"""

import os
import threading
from collections import Counter
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func

from conftest import TestConfig
from territory_market import create_app, db
from territory_market.errors import BidTooLow
from territory_market.models import Auction, Bid, OwnershipTransfer, Territory, WalletTransaction
from territory_market.wiring import build_services


@pytest.fixture(params=['sqlite-file', 'postgresql'])
def shared_app(request, tmp_path, clock):
    if request.param == 'postgresql':
        database_uri = os.environ.get('TEST_DATABASE_URL')
        if not database_uri:
            pytest.skip('TEST_DATABASE_URL is not set')
        engine_options = {'pool_size': 10}
    else:
        database_uri = f"sqlite:///{tmp_path / 'market.db'}"
        engine_options = {'connect_args': {'timeout': 30, 'check_same_thread': False}}

    class SharedStoreConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = database_uri
        SQLALCHEMY_ENGINE_OPTIONS = engine_options

    application = create_app(SharedStoreConfig)
    application.extensions['market_clock'] = clock
    with application.app_context():
        import territory_market.models  # noqa: F401
        db.drop_all()
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _race(app, count, work):
    """Start `count` workers together, each with its own app context and session."""
    # Reading attributes after a commit reopens a transaction; SQLite would hold the write lock
    db.session.rollback()
    barrier = threading.Barrier(count)
    results = [None] * count
    failures = [None] * count

    def runner(index):
        with app.app_context():
            services = build_services(app, db.session)
            barrier.wait(timeout=10)
            try:
                results[index] = work(services, index)
            except Exception as exc:
                failures[index] = exc

    threads = [threading.Thread(target=runner, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert not any(thread.is_alive() for thread in threads)
    return results, failures


def _territory(territory_id):
    db.session.add(Territory(id=territory_id, name=territory_id, base_price=Decimal('10')))
    db.session.commit()


def test_concurrent_bids_keep_pointer_on_highest(shared_app, clock):
    services = build_services(shared_app, db.session)
    _territory('T1')
    auction = services.auctions.open_auction('T1', min_bid='10', end_time=clock.now() + timedelta(hours=1))
    auction_id = auction.id
    amounts = [Decimal(10 + i) for i in range(8)]

    results, failures = _race(
        shared_app, len(amounts),
        lambda svc, i: svc.auctions.place_bid(auction_id, f'bidder{i}', amounts[i]),
    )

    # Losing a race is always a clean "too low", never a store error
    assert all(f is None or isinstance(f, BidTooLow) for f in failures)
    accepted = [r for r in results if r is not None]
    assert accepted

    db.session.expire_all()
    bids = Bid.query.filter_by(auction_id=auction_id).order_by(Bid.id).all()
    assert len(bids) == len(accepted)
    # Serialized acceptance: every bid beats the one before it by the increment
    for previous, current in zip(bids, bids[1:]):
        assert current.amount >= previous.amount + Decimal('1')
    assert bids[-1].amount == Decimal('17')

    highest = db.session.query(func.max(Bid.amount)).filter(Bid.auction_id == auction_id).scalar()
    auction = db.session.get(Auction, auction_id)
    assert auction.current_bid == highest == Decimal('17')
    assert auction.current_bidder_id == 'bidder7'


def test_concurrent_settlement_runs_settle_each_auction_once(shared_app, clock):
    services = build_services(shared_app, db.session)
    auction_ids = []
    for i in range(5):
        territory_id = f'T{i}'
        _territory(territory_id)
        services.confirmations.confirm(f'pay-winner{i}', f'winner{i}', '100')
        auction = services.auctions.open_auction(
            territory_id, min_bid='10', end_time=clock.now() + timedelta(hours=1)
        )
        services.auctions.place_bid(auction.id, f'winner{i}', '25')
        auction_ids.append(auction.id)
    clock.advance(hours=2)

    results, failures = _race(shared_app, 2, lambda svc, _i: svc.settlement.close_expired_auctions())

    assert failures == [None, None]
    assert sum(r['processed'] for r in results) == 5
    assert sum(r['errors'] for r in results) == 0
    claims = Counter(outcome['auctionId'] for r in results for outcome in r['results'])
    assert claims == Counter({auction_id: 1 for auction_id in auction_ids})

    db.session.expire_all()
    for i, auction_id in enumerate(auction_ids):
        auction = db.session.get(Auction, auction_id)
        assert auction.status == 'ended'
        assert auction.ended_at == clock.now()
        assert auction.transfer_error is None
        assert OwnershipTransfer.query.filter_by(auction_id=auction_id).count() == 1
        purchases = WalletTransaction.query.filter_by(type='purchase', reference_id=str(auction_id)).all()
        assert len(purchases) == 1
        assert services.ledger.get(f'winner{i}').balance == Decimal('75')
        assert db.session.get(Territory, f'T{i}').owner_id == f'winner{i}'
