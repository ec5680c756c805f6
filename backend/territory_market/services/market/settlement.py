"""Time-driven auction close.

The scheduler calls ``close_expired_auctions`` at least once per period and
possibly from several hosts at the same time. Each auction is claimed in its
own transaction with ``FOR UPDATE SKIP LOCKED``, so concurrent runs split the
due auctions between them and an auction that is already closed is never
claimed again.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from territory_market.errors import MarketError
from territory_market.models import Auction, Territory, money_value
from .ownership import TransferRequest, auction_won_key
from .tx import atomic

logger = logging.getLogger(__name__)


class SettlementEngine:

    def __init__(self, session, cache, clock, auctions, transfers, batch_size=100):
        self.session = session
        self.cache = cache
        self.clock = clock
        self.auctions = auctions
        self.transfers = transfers
        self.batch_size = batch_size

    def close_expired_auctions(self):
        activated = self.auctions.activate_due(limit=self.batch_size)
        now = self.clock.now()
        results = []
        processed = errors = 0
        # Auctions whose transaction failed in this run stay active for the next run
        failed = set()

        while processed + errors < self.batch_size:
            claimed = None
            try:
                with atomic(self.session):
                    auction = self._claim_next(now, failed)
                    if auction is None:
                        break
                    claimed = (auction.id, auction.territory_id)
                    outcome = self._settle(auction, now)
            except SQLAlchemyError as exc:
                errors += 1
                if claimed is None:
                    logger.error(f"[settlement-claim-failed] error={exc!r}")
                    break
                failed.add(claimed[0])
                logger.error(f"[settlement-failed] auction={claimed[0]} error={exc!r}")
                results.append({'auctionId': claimed[0], 'territoryId': claimed[1], 'status': 'error',
                                'error': 'StoreUnavailable'})
                continue
            processed += 1
            results.append(outcome)
            self.cache.invalidate_auction(outcome['auctionId'], outcome['territoryId'])

        expired = self.expire_protection(now)
        logger.info(
            f"[settlement-run] processed={processed} errors={errors} activated={len(activated)} "
            f"protection_expired={len(expired)}"
        )
        return {
            'processed': processed,
            'errors': errors,
            'activated': activated,
            'protectionExpired': expired,
            'results': results,
        }

    def settle_one(self, auction_id):
        """Close one auction now, whatever its end time (admin "end now")."""
        now = self.clock.now()
        with atomic(self.session):
            auction = self.auctions.get(auction_id, lock=True)
            if auction.status != 'active':
                return {
                    'auctionId': auction.id,
                    'territoryId': auction.territory_id,
                    'status': auction.status,
                    'alreadySettled': auction.status in ('ended', 'cancelled'),
                    'auction': auction.to_dict(),
                }
            if auction.end_time > now:
                auction.end_time = now
            outcome = self._settle(auction, now)
            outcome['auction'] = auction.to_dict()
        self.cache.invalidate_auction(outcome['auctionId'], outcome['territoryId'])
        return outcome

    def expire_protection(self, now=None):
        """Move territories whose protection window has passed from protected to ruled."""
        now = now or self.clock.now()
        with atomic(self.session):
            territories = (
                self.session.query(Territory)
                .filter(Territory.sovereignty == 'protected', Territory.protection_ends_at <= now)
                .with_for_update(skip_locked=True)
                .all()
            )
            for territory in territories:
                territory.sovereignty = 'ruled'
                territory.updated_at = now
            expired = [t.id for t in territories]
        if expired:
            self.cache.invalidate(territory_ids=expired)
        return expired

    def _claim_next(self, now, exclude):
        query = self.session.query(Auction).filter(Auction.status == 'active', Auction.end_time <= now)
        if exclude:
            query = query.filter(Auction.id.notin_(sorted(exclude)))
        return query.order_by(Auction.end_time, Auction.id).limit(1).with_for_update(skip_locked=True).first()

    def _settle(self, auction, now):
        """Close a claimed auction. Runs inside the claim transaction."""
        # Bids stamped after the end time never win
        top = self.auctions.top_bid(auction, until=auction.end_time)
        if top is None:
            self.auctions.transition(auction, 'cancelled')
            auction.cancel_reason = 'no_bids'
            auction.ended_at = now
            self.auctions.release_territory(auction, now)
            logger.info(f"[settlement] auction={auction.id} cancelled reason=no_bids")
            return {
                'auctionId': auction.id,
                'territoryId': auction.territory_id,
                'status': 'cancelled',
                'reason': 'no_bids',
            }

        self.auctions.recompute_current_bid(auction, until=auction.end_time)
        self.auctions.transition(auction, 'ended')
        auction.ended_at = now
        auction.winning_amount = top.amount
        auction.winner_user_id = top.bidder_id
        auction.winning_bid_id = top.id
        self.session.flush()

        outcome = {
            'auctionId': auction.id,
            'territoryId': auction.territory_id,
            'status': 'ended',
            'winnerUserId': top.bidder_id,
            'winningAmount': money_value(top.amount),
        }
        try:
            request = TransferRequest.build(
                auction.territory_id,
                top.bidder_id,
                top.bidder_name or top.bidder_id,
                top.amount,
                'auction_won',
                auction_id=auction.id,
                idempotency_key=auction_won_key(auction.id),
            )
            result = self.transfers.apply(request)
        except MarketError as exc:
            # The close stands; the failed transfer is left for manual reconciliation
            auction.transfer_error = exc.kind
            self.auctions.release_territory(auction, now)
            logger.error(
                f"[settlement-transfer-failed] auction={auction.id} winner={top.bidder_id} "
                f"amount={top.amount} error={exc.kind}"
            )
            outcome['transferError'] = exc.kind
            return outcome

        outcome['transactionId'] = result.payload['transactionId']
        logger.info(
            f"[settlement] auction={auction.id} ended winner={top.bidder_id} amount={top.amount} "
            f"tx={result.payload['transactionId']}"
        )
        return outcome
