from datetime import datetime, timezone

from territory_market import db


AUCTION_STATUSES = ('pending', 'active', 'ended', 'cancelled')
OPEN_AUCTION_STATUSES = ('pending', 'active')
SOVEREIGNTY_STATES = ('unconquered', 'contested', 'protected', 'ruled')
TRANSFER_REASONS = ('direct_purchase', 'auction_won', 'admin_fix')
LEDGER_TYPES = ('purchase', 'charge', 'refund', 'reward', 'admin')

Money = db.Numeric(12, 2)


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def money_value(value):
    return float(value) if value is not None else None


def _ts(value):
    return value.isoformat() if value is not None else None


class Territory(db.Model):
    __tablename__ = 'territory'
    id = db.Column(db.String(255), primary_key=True)
    name = db.Column(db.String(255), nullable=True)
    owner_id = db.Column(db.String(128), nullable=True, index=True)
    owner_name = db.Column(db.String(255), nullable=True)
    sovereignty = db.Column(db.String(32), nullable=False, default='unconquered')  # unconquered, contested, protected, ruled
    protection_ends_at = db.Column(db.DateTime, nullable=True)
    base_price = db.Column(Money, nullable=True)
    market_base_price = db.Column(Money, nullable=True)
    last_winning_amount = db.Column(Money, nullable=True)
    current_auction_id = db.Column(
        db.Integer, db.ForeignKey('auction.id', name='fk_territory_current_auction_id', use_alter=True), nullable=True
    )
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    def is_protected(self, now):
        return (
            self.owner_id is not None
            and self.protection_ends_at is not None
            and self.protection_ends_at > now
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'ownerId': self.owner_id,
            'ownerName': self.owner_name,
            'sovereignty': self.sovereignty,
            'protectionEndsAt': _ts(self.protection_ends_at),
            'basePrice': money_value(self.base_price),
            'marketBasePrice': money_value(self.market_base_price),
            'lastWinningAmount': money_value(self.last_winning_amount),
            'currentAuctionId': self.current_auction_id,
            'updatedAt': _ts(self.updated_at),
        }


class Auction(db.Model):
    __tablename__ = 'auction'
    __table_args__ = (
        db.Index('ix_auction_status_end_time', 'status', 'end_time'),
    )
    id = db.Column(db.Integer, primary_key=True)
    territory_id = db.Column(db.String(255), db.ForeignKey('territory.id'), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default='pending')  # pending, active, ended, cancelled
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    min_bid = db.Column(Money, nullable=False)
    # Denormalized pointer to the top bid; always re-derived from the bid table
    current_bid = db.Column(Money, nullable=True)
    current_bidder_id = db.Column(db.String(128), nullable=True)
    winning_amount = db.Column(Money, nullable=True)
    winner_user_id = db.Column(db.String(128), nullable=True)
    winning_bid_id = db.Column(db.Integer, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    transferred_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(32), nullable=True)  # no_bids, admin, admin_fix
    # Set when the ownership transfer failed at close; needs manual reconciliation
    transfer_error = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    territory = db.relationship('Territory', foreign_keys=[territory_id])
    bids = db.relationship('Bid', back_populates='auction', lazy='dynamic')

    @property
    def is_open(self):
        return self.status in OPEN_AUCTION_STATUSES

    def to_dict(self, increment=None):
        payload = {
            'id': self.id,
            'territoryId': self.territory_id,
            'status': self.status,
            'startTime': _ts(self.start_time),
            'endTime': _ts(self.end_time),
            'minBid': money_value(self.min_bid),
            'currentBid': money_value(self.current_bid),
            'currentBidderId': self.current_bidder_id,
            'winningAmount': money_value(self.winning_amount),
            'winnerUserId': self.winner_user_id,
            'winningBidId': self.winning_bid_id,
            'endedAt': _ts(self.ended_at),
            'transferredAt': _ts(self.transferred_at),
            'cancelReason': self.cancel_reason,
            'transferError': self.transfer_error,
        }
        if increment is not None:
            payload['increment'] = money_value(increment)
            if self.current_bid is not None:
                payload['minNextBid'] = money_value(self.current_bid + increment)
            else:
                payload['minNextBid'] = money_value(self.min_bid)
        return payload


class Bid(db.Model):
    __tablename__ = 'bid'
    __table_args__ = (
        db.Index('ix_bid_auction_amount', 'auction_id', 'amount', 'created_at'),
    )
    id = db.Column(db.Integer, primary_key=True)
    auction_id = db.Column(db.Integer, db.ForeignKey('auction.id'), nullable=False)
    bidder_id = db.Column(db.String(128), nullable=False, index=True)
    bidder_name = db.Column(db.String(255), nullable=True)
    amount = db.Column(Money, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    auction = db.relationship('Auction', back_populates='bids')

    def to_dict(self):
        return {
            'id': self.id,
            'auctionId': self.auction_id,
            'bidderId': self.bidder_id,
            'bidderName': self.bidder_name,
            'amount': money_value(self.amount),
            'createdAt': _ts(self.created_at),
        }


class Wallet(db.Model):
    __tablename__ = 'wallet'
    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
    )
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), unique=True, nullable=False, index=True)
    balance = db.Column(Money, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    transactions = db.relationship('WalletTransaction', back_populates='wallet', lazy='dynamic')

    def to_dict(self):
        return {
            'userId': self.user_id,
            'balance': money_value(self.balance),
            'updatedAt': _ts(self.updated_at),
        }


class WalletTransaction(db.Model):
    __tablename__ = 'wallet_transaction'
    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey('wallet.id'), nullable=False, index=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    type = db.Column(db.String(16), nullable=False)  # purchase, charge, refund, reward, admin
    amount = db.Column(Money, nullable=False)  # signed
    balance_after = db.Column(Money, nullable=False)
    description = db.Column(db.Text, nullable=True)
    reference_id = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    wallet = db.relationship('Wallet', back_populates='transactions')

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'amount': money_value(self.amount),
            'balanceAfter': money_value(self.balance_after),
            'description': self.description,
            'referenceId': self.reference_id,
            'createdAt': _ts(self.created_at),
        }


class OwnershipTransfer(db.Model):
    """Append-only log of completed transfers, keyed for idempotent replay."""
    __tablename__ = 'ownership_transfer'
    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(255), unique=True, nullable=False)
    idempotency_key = db.Column(db.String(255), unique=True, nullable=True)
    territory_id = db.Column(db.String(255), db.ForeignKey('territory.id'), nullable=False, index=True)
    previous_owner_id = db.Column(db.String(128), nullable=True)
    new_owner_id = db.Column(db.String(128), nullable=False)
    new_owner_name = db.Column(db.String(255), nullable=False)
    price = db.Column(Money, nullable=False)
    reason = db.Column(db.String(32), nullable=False)  # direct_purchase, auction_won, admin_fix
    payment_id = db.Column(db.String(255), nullable=True)
    auction_id = db.Column(db.Integer, db.ForeignKey('auction.id'), nullable=True, index=True)
    protection_ends_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    def to_result(self):
        return {
            'transactionId': self.transaction_id,
            'territoryId': self.territory_id,
            'userId': self.new_owner_id,
            'userName': self.new_owner_name,
            'price': money_value(self.price),
            'reason': self.reason,
            'protectionEndsAt': _ts(self.protection_ends_at),
        }

    def to_dict(self):
        payload = self.to_result()
        payload.update({
            'previousOwnerId': self.previous_owner_id,
            'paymentId': self.payment_id,
            'auctionId': self.auction_id,
            'createdAt': _ts(self.created_at),
        })
        return payload


class Payment(db.Model):
    """Payment confirmed by the upstream gateway (capture happens elsewhere)."""
    __tablename__ = 'payment'
    id = db.Column(db.String(255), primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    amount = db.Column(Money, nullable=False)
    status = db.Column(db.String(16), nullable=False, default='pending')  # pending, completed, refunded
    confirmed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'amount': money_value(self.amount),
            'status': self.status,
            'confirmedAt': _ts(self.confirmed_at),
        }
