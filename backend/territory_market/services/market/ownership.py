"""Ownership transfer: money, owner and protection window in one transaction.

All checks run before any effect, so a failed transfer leaves nothing behind
in the caller's transaction. That lets settlement run a transfer inside its
own claim transaction and still commit the closed auction when the transfer
is refused.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from territory_market.errors import (
    AlreadyOwned,
    AuctionAlreadyTransferred,
    AuctionNotEnded,
    AuctionNotFound,
    InsufficientBalance,
    NotWinningBidder,
    PaymentIncomplete,
    PaymentNotFound,
    TerritoryNotFound,
    TerritoryUnderAuction,
    ValidationError,
)
from territory_market.models import (
    OPEN_AUCTION_STATUSES,
    TRANSFER_REASONS,
    Auction,
    OwnershipTransfer,
    Territory,
)
from .auctions import check_transition
from .pricing import next_market_base, to_money
from .tx import atomic

logger = logging.getLogger(__name__)


def auction_won_key(auction_id) -> str:
    return f'auction_won:{auction_id}'


@dataclass
class TransferRequest:
    territory_id: str
    user_id: str
    user_name: str
    price: Decimal
    reason: str
    payment_id: Optional[str] = None
    auction_id: Optional[int] = None
    idempotency_key: Optional[str] = None

    @classmethod
    def build(cls, territory_id, user_id, user_name, price, reason,
              payment_id=None, auction_id=None, idempotency_key=None):
        if reason not in TRANSFER_REASONS:
            raise ValidationError(
                f'reason must be one of {", ".join(TRANSFER_REASONS)}', field='reason'
            )
        if not territory_id:
            raise ValidationError('territoryId is required', field='territoryId')
        if not user_id or not str(user_id).strip():
            raise ValidationError('userId is required', field='userId')
        if not user_name or not str(user_name).strip():
            raise ValidationError('userName is required', field='userName')
        price = to_money(price, field='price', allow_zero=True)
        if reason == 'direct_purchase' and not payment_id:
            raise ValidationError('paymentId is required for direct_purchase', field='paymentId')
        if reason == 'auction_won':
            if auction_id is None:
                raise ValidationError('auctionId is required for auction_won', field='auctionId')
            try:
                auction_id = int(auction_id)
            except (TypeError, ValueError):
                raise ValidationError('auctionId must be an integer', field='auctionId')
            # One transfer per auction, whatever key the caller sent
            idempotency_key = auction_won_key(auction_id)
        elif auction_id is not None:
            try:
                auction_id = int(auction_id)
            except (TypeError, ValueError):
                raise ValidationError('auctionId must be an integer', field='auctionId')
        return cls(
            territory_id=str(territory_id),
            user_id=str(user_id).strip(),
            user_name=str(user_name).strip(),
            price=price,
            reason=reason,
            payment_id=str(payment_id) if payment_id else None,
            auction_id=auction_id,
            idempotency_key=str(idempotency_key) if idempotency_key else None,
        )


@dataclass
class TransferResult:
    payload: dict
    already_processed: bool = False
    territory_id: Optional[str] = None
    auction_ids: List[int] = field(default_factory=list)


class OwnershipTransferService:

    def __init__(self, session, cache, clock, ledger, protection, payments):
        self.session = session
        self.cache = cache
        self.clock = clock
        self.ledger = ledger
        self.protection = protection
        self.payments = payments

    def transfer(self, territory_id, user_id, user_name, price, reason,
                 payment_id=None, auction_id=None, idempotency_key=None) -> TransferResult:
        """Run a transfer in its own transaction and invalidate caches after commit."""
        request = TransferRequest.build(
            territory_id, user_id, user_name, price, reason, payment_id, auction_id, idempotency_key
        )
        replay = self._replay(request.idempotency_key)
        if replay is not None:
            return replay

        try:
            with atomic(self.session):
                result = self.apply(request)
        except IntegrityError:
            # A concurrent duplicate committed the same key first
            replay = self._replay(request.idempotency_key)
            if replay is None:
                raise
            return replay

        if not result.already_processed:
            self.cache.invalidate(auction_ids=result.auction_ids, territory_ids=[result.territory_id])
        return result

    def apply(self, request: TransferRequest) -> TransferResult:
        """Apply a transfer inside the caller's transaction. Does not commit."""
        territory = (
            self.session.query(Territory).filter(Territory.id == request.territory_id).with_for_update().first()
        )
        if territory is None:
            raise TerritoryNotFound(
                f'Territory {request.territory_id} not found', territoryId=request.territory_id
            )
        # Checked again under the territory lock
        replay = self._replay(request.idempotency_key)
        if replay is not None:
            return replay

        now = self.clock.now()
        open_auction = (
            self.session.query(Auction)
            .filter(Auction.territory_id == territory.id, Auction.status.in_(OPEN_AUCTION_STATUSES))
            .with_for_update()
            .first()
        )
        auction = None

        if request.reason == 'direct_purchase':
            if territory.owner_id is not None and territory.owner_id != request.user_id:
                raise AlreadyOwned(
                    'Territory already owned by another user',
                    territoryId=territory.id, currentOwner=territory.owner_id,
                )
            if open_auction is not None:
                raise TerritoryUnderAuction(
                    'Territory has an open auction', territoryId=territory.id, auctionId=open_auction.id
                )
            self._check_payment(request)
        elif request.reason == 'auction_won':
            auction = self._check_auction(request)

        wallet = None
        if request.reason != 'admin_fix' and request.price > 0:
            wallet = self.ledger.lock(request.user_id, create=False)
            balance = wallet.balance if wallet is not None else Decimal('0')
            if balance < request.price:
                raise InsufficientBalance(
                    'Insufficient balance',
                    userId=request.user_id, required=float(request.price), current=float(balance),
                )

        # -- effects --
        touched_auctions = []
        if wallet is not None:
            reference = str(auction.id) if auction is not None else territory.id
            self.ledger.debit(
                wallet, request.price, 'purchase',
                description=f'Territory {territory.id} ({request.reason})',
                reference_id=reference,
            )
        if request.reason == 'admin_fix' and open_auction is not None:
            check_transition(open_auction.status, 'cancelled')
            open_auction.status = 'cancelled'
            open_auction.cancel_reason = 'admin_fix'
            open_auction.ended_at = now
            touched_auctions.append(open_auction.id)

        previous_owner = territory.owner_id
        protection_ends_at = now + self.protection.duration_for(request.price)
        territory.owner_id = request.user_id
        territory.owner_name = request.user_name
        territory.sovereignty = 'protected'
        territory.protection_ends_at = protection_ends_at
        territory.last_winning_amount = request.price
        territory.current_auction_id = None
        territory.updated_at = now
        if auction is not None:
            old_base = territory.market_base_price or territory.base_price
            territory.market_base_price = next_market_base(old_base, request.price)
            auction.transferred_at = now
            auction.transfer_error = None
            touched_auctions.append(auction.id)

        log = OwnershipTransfer(
            transaction_id=request.idempotency_key or f'tx_{uuid.uuid4().hex}',
            idempotency_key=request.idempotency_key,
            territory_id=territory.id,
            previous_owner_id=previous_owner,
            new_owner_id=request.user_id,
            new_owner_name=request.user_name,
            price=request.price,
            reason=request.reason,
            payment_id=request.payment_id,
            auction_id=request.auction_id,
            protection_ends_at=protection_ends_at,
            created_at=now,
        )
        self.session.add(log)
        self.session.flush()

        logger.info(
            f"[ownership-transfer] territory={territory.id} from={previous_owner} to={request.user_id} "
            f"price={request.price} reason={request.reason} tx={log.transaction_id}"
        )
        return TransferResult(log.to_result(), False, territory.id, touched_auctions)

    def _check_payment(self, request):
        payment = self.payments.find(request.payment_id)
        if payment is None:
            raise PaymentNotFound(f'Payment {request.payment_id} not found', paymentId=request.payment_id)
        if payment.user_id != request.user_id:
            raise PaymentIncomplete('Payment belongs to another user', paymentId=payment.id)
        if payment.status != 'completed':
            raise PaymentIncomplete('Payment is not completed', paymentId=payment.id, status=payment.status)
        if payment.amount < request.price:
            raise PaymentIncomplete(
                'Payment does not cover the price',
                paymentId=payment.id, paid=float(payment.amount), price=float(request.price),
            )

    def _check_auction(self, request):
        auction = self.session.query(Auction).filter(Auction.id == request.auction_id).first()
        if auction is None:
            raise AuctionNotFound(f'Auction {request.auction_id} not found', auctionId=request.auction_id)
        if auction.territory_id != request.territory_id:
            raise ValidationError(
                'Auction belongs to another territory',
                auctionId=auction.id, territoryId=auction.territory_id,
            )
        if auction.status != 'ended':
            raise AuctionNotEnded('Auction has not ended', auctionId=auction.id, status=auction.status)
        if auction.winner_user_id != request.user_id:
            raise NotWinningBidder('User did not win this auction', auctionId=auction.id)
        already = (
            self.session.query(OwnershipTransfer.transaction_id)
            .filter(OwnershipTransfer.auction_id == auction.id)
            .first()
        )
        if auction.transferred_at is not None or already is not None:
            raise AuctionAlreadyTransferred(
                'Ownership for this auction was already transferred',
                auctionId=auction.id, transactionId=already[0] if already else None,
            )
        return auction

    def _replay(self, idempotency_key) -> Optional[TransferResult]:
        if not idempotency_key:
            return None
        existing = (
            self.session.query(OwnershipTransfer)
            .filter(OwnershipTransfer.idempotency_key == idempotency_key)
            .first()
        )
        if existing is None:
            return None
        logger.info(f"[ownership-replay] key={idempotency_key} tx={existing.transaction_id}")
        return TransferResult(existing.to_result(), True, existing.territory_id, [])

    # -- reads --

    def history(self, territory_id, limit=50):
        if self.session.get(Territory, territory_id) is None:
            raise TerritoryNotFound(f'Territory {territory_id} not found', territoryId=territory_id)
        return (
            self.session.query(OwnershipTransfer)
            .filter(OwnershipTransfer.territory_id == territory_id)
            .order_by(OwnershipTransfer.created_at.desc(), OwnershipTransfer.id.desc())
            .limit(limit)
            .all()
        )

    def owner_mismatches(self):
        """Territories whose owner disagrees with their latest transfer log row."""
        latest = (
            self.session.query(
                OwnershipTransfer.territory_id, func.max(OwnershipTransfer.id).label('last_id')
            )
            .group_by(OwnershipTransfer.territory_id)
            .subquery()
        )
        rows = (
            self.session.query(Territory, OwnershipTransfer)
            .join(latest, latest.c.territory_id == Territory.id)
            .join(OwnershipTransfer, OwnershipTransfer.id == latest.c.last_id)
            .all()
        )
        return [
            (territory.id, territory.owner_id, log.new_owner_id)
            for territory, log in rows
            if territory.owner_id != log.new_owner_id
        ]
