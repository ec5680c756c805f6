"""Auction lifecycle and the bid-acceptance rule.

Lifecycle::

    pending -> active -> ended
        \\         \\
         +---------+--> cancelled

Nothing leaves ``ended`` or ``cancelled``. The auction row's ``current_bid``
is a denormalized pointer: it is re-derived from the bid table inside the
same lock scope as every bid insert, and never used as an acceptance
precondition.
"""

import logging
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func

from territory_market.errors import (
    AuctionAlreadyOpen,
    AuctionNotActive,
    AuctionNotFound,
    BidTooLow,
    InvalidAuctionTransition,
    TerritoryNotFound,
    TerritoryProtected,
    ValidationError,
)
from territory_market.models import OPEN_AUCTION_STATUSES, Auction, Bid, Territory, money_value
from .pricing import to_money
from .tx import atomic

logger = logging.getLogger(__name__)

TRANSITIONS = {
    'pending': frozenset({'active', 'cancelled'}),
    'active': frozenset({'ended', 'cancelled'}),
    'ended': frozenset(),
    'cancelled': frozenset(),
}


def check_transition(current: str, target: str) -> None:
    if target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidAuctionTransition(
            f'Auction cannot move from {current} to {target}', fromStatus=current, toStatus=target
        )


def restore_sovereignty(territory, now) -> None:
    """Territory state once no auction is open on it."""
    if territory.owner_id is None:
        territory.sovereignty = 'unconquered'
    elif territory.is_protected(now):
        territory.sovereignty = 'protected'
    else:
        territory.sovereignty = 'ruled'


class AuctionStateMachine:

    def __init__(self, session, cache, clock, increment=Decimal('1'), default_duration=timedelta(days=1)):
        self.session = session
        self.cache = cache
        self.clock = clock
        self.increment = Decimal(str(increment))
        self.default_duration = default_duration

    # -- lookups --

    def get(self, auction_id, lock=False, skip_locked=False):
        query = self.session.query(Auction).filter(Auction.id == auction_id)
        if lock:
            query = query.with_for_update(skip_locked=skip_locked)
        auction = query.first()
        if auction is None:
            raise AuctionNotFound(f'Auction {auction_id} not found', auctionId=auction_id)
        return auction

    def bids_for(self, auction_id, limit=100):
        self.get(auction_id)
        return (
            self.session.query(Bid)
            .filter(Bid.auction_id == auction_id)
            .order_by(Bid.amount.desc(), Bid.created_at.asc(), Bid.id.asc())
            .limit(limit)
            .all()
        )

    def top_bid(self, auction, until=None):
        query = self.session.query(Bid).filter(Bid.auction_id == auction.id)
        if until is not None:
            query = query.filter(Bid.created_at <= until)
        return query.order_by(Bid.amount.desc(), Bid.created_at.asc(), Bid.id.asc()).first()

    def highest_amount(self, auction):
        highest = self.session.query(func.max(Bid.amount)).filter(Bid.auction_id == auction.id).scalar()
        return Decimal(str(highest)) if highest is not None else None

    def recompute_current_bid(self, auction, until=None):
        """Point the auction at its top bid. Caller must hold the auction row lock."""
        top = self.top_bid(auction, until=until)
        auction.current_bid = top.amount if top is not None else None
        auction.current_bidder_id = top.bidder_id if top is not None else None
        return top

    def min_next_bid(self, auction, highest=None):
        if highest is None:
            return Decimal(str(auction.min_bid))
        return highest + self.increment

    # -- transitions --

    def transition(self, auction, target: str) -> None:
        check_transition(auction.status, target)
        logger.info(f"[auction-transition] auction={auction.id} {auction.status} -> {target}")
        auction.status = target

    def release_territory(self, auction, now) -> None:
        territory = (
            self.session.query(Territory).filter(Territory.id == auction.territory_id).with_for_update().first()
        )
        if territory is None:
            return
        if territory.current_auction_id == auction.id:
            territory.current_auction_id = None
        restore_sovereignty(territory, now)
        territory.updated_at = now

    # -- operations --

    def open_auction(self, territory_id, min_bid=None, start_time=None, end_time=None):
        now = self.clock.now()
        start_time = start_time or now
        end_time = end_time or (start_time + self.default_duration)
        if end_time <= start_time:
            raise ValidationError('endTime must be after startTime')
        if end_time <= now:
            raise ValidationError('endTime must be in the future')

        with atomic(self.session):
            territory = (
                self.session.query(Territory).filter(Territory.id == territory_id).with_for_update().first()
            )
            if territory is None:
                raise TerritoryNotFound(f'Territory {territory_id} not found', territoryId=territory_id)
            existing = (
                self.session.query(Auction)
                .filter(Auction.territory_id == territory_id, Auction.status.in_(OPEN_AUCTION_STATUSES))
                .first()
            )
            if existing is not None:
                raise AuctionAlreadyOpen(
                    'An auction is already open for this territory', territoryId=territory_id, auctionId=existing.id
                )
            if territory.is_protected(now):
                raise TerritoryProtected(
                    'Territory is inside its protection window',
                    territoryId=territory_id,
                    protectionEndsAt=territory.protection_ends_at.isoformat(),
                )
            if min_bid is None:
                min_bid = territory.last_winning_amount or territory.market_base_price or territory.base_price
            min_bid = to_money(min_bid, field='minBid')

            auction = Auction(
                territory_id=territory_id,
                status='active' if start_time <= now else 'pending',
                start_time=start_time,
                end_time=end_time,
                min_bid=min_bid,
                created_at=now,
            )
            self.session.add(auction)
            self.session.flush()
            territory.current_auction_id = auction.id
            if territory.owner_id is None:
                territory.sovereignty = 'contested'
            territory.updated_at = now

        logger.info(
            f"[auction-open] auction={auction.id} territory={territory_id} status={auction.status} "
            f"min_bid={auction.min_bid} end={auction.end_time.isoformat()}"
        )
        self.cache.invalidate_auction(auction.id, territory_id)
        return auction

    def place_bid(self, auction_id, bidder_id, amount, bidder_name=None):
        if not bidder_id:
            raise ValidationError('bidderId is required', field='bidderId')
        amount = to_money(amount)

        with atomic(self.session):
            # Row lock serializes concurrent bidders on this auction only
            auction = self.get(auction_id, lock=True)
            now = self.clock.now()
            # A pending auction whose start has passed opens on its first bid
            if auction.status == 'pending' and auction.start_time <= now < auction.end_time:
                self.transition(auction, 'active')
            if auction.status != 'active' or now >= auction.end_time:
                raise AuctionNotActive(
                    'Auction is not accepting bids', auctionId=auction.id, status=auction.status,
                    endTime=auction.end_time.isoformat(),
                )
            highest = self.highest_amount(auction)
            required = self.min_next_bid(auction, highest)
            if amount < required:
                raise BidTooLow(
                    f'Minimum bid is {required}',
                    minNextBid=money_value(required),
                    currentBid=money_value(highest),
                    increment=money_value(self.increment),
                )
            bid = Bid(
                auction_id=auction.id,
                bidder_id=str(bidder_id),
                bidder_name=bidder_name,
                amount=amount,
                created_at=now,
            )
            self.session.add(bid)
            self.session.flush()
            self.recompute_current_bid(auction)
            territory_id = auction.territory_id
            current_bid = Decimal(str(auction.current_bid))

        logger.info(f"[bid-accepted] auction={auction_id} bidder={bidder_id} amount={amount} current={current_bid}")
        self.cache.invalidate_auction(auction_id, territory_id)
        return {
            'accepted': True,
            'bid': bid.to_dict(),
            'currentBid': money_value(current_bid),
            'minNextBid': money_value(current_bid + self.increment),
            'increment': money_value(self.increment),
            'auction': auction.to_dict(increment=self.increment),
        }

    def activate_due(self, limit=100):
        """Open pending auctions whose start time has arrived."""
        now = self.clock.now()
        with atomic(self.session):
            due = (
                self.session.query(Auction)
                .filter(Auction.status == 'pending', Auction.start_time <= now)
                .order_by(Auction.start_time)
                .limit(limit)
                .with_for_update(skip_locked=True)
                .all()
            )
            for auction in due:
                self.transition(auction, 'active')
            activated = [(a.id, a.territory_id) for a in due]
        if activated:
            self.cache.invalidate(
                auction_ids=[a for a, _ in activated], territory_ids=[t for _, t in activated]
            )
        return [a for a, _ in activated]

    def cancel(self, auction_id, reason='admin'):
        with atomic(self.session):
            auction = self.get(auction_id, lock=True)
            now = self.clock.now()
            self.transition(auction, 'cancelled')
            auction.cancel_reason = reason
            auction.ended_at = now
            self.release_territory(auction, now)
        logger.info(f"[auction-cancel] auction={auction_id} reason={reason}")
        self.cache.invalidate_auction(auction.id, auction.territory_id)
        return auction
