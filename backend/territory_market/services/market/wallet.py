import logging
from decimal import Decimal

from sqlalchemy import func

from territory_market.errors import InsufficientBalance, ValidationError
from territory_market.models import LEDGER_TYPES, Wallet, WalletTransaction
from .pricing import CENT

logger = logging.getLogger(__name__)


class WalletLedger:
    """Balances plus the append-only history that explains them.

    Every balance change goes through ``_append`` so a ledger row is written in
    the same transaction as the new balance. Callers own commit/rollback.
    """

    def __init__(self, session, clock):
        self.session = session
        self.clock = clock

    def get(self, user_id):
        return self.session.query(Wallet).filter_by(user_id=user_id).first()

    def lock(self, user_id, create=True):
        wallet = self.session.query(Wallet).filter_by(user_id=user_id).with_for_update().first()
        if wallet is None and create:
            wallet = Wallet(user_id=user_id, balance=Decimal('0'), updated_at=self.clock.now())
            self.session.add(wallet)
            self.session.flush()
        return wallet

    def debit(self, wallet, amount, type_='purchase', description=None, reference_id=None):
        amount = Decimal(amount)
        if wallet.balance < amount:
            raise InsufficientBalance(
                'Insufficient balance',
                userId=wallet.user_id,
                required=float(amount),
                current=float(wallet.balance),
            )
        return self._append(wallet, -amount, type_, description, reference_id)

    def credit(self, wallet, amount, type_='charge', description=None, reference_id=None):
        return self._append(wallet, Decimal(amount), type_, description, reference_id)

    def _append(self, wallet, signed_amount, type_, description, reference_id):
        if type_ not in LEDGER_TYPES:
            raise ValidationError(f'Unknown ledger entry type {type_!r}')
        now = self.clock.now()
        wallet.balance = wallet.balance + signed_amount
        wallet.updated_at = now
        entry = WalletTransaction(
            wallet_id=wallet.id,
            user_id=wallet.user_id,
            type=type_,
            amount=signed_amount,
            balance_after=wallet.balance,
            description=description,
            reference_id=reference_id,
            created_at=now,
        )
        self.session.add(entry)
        logger.info(f"[ledger] user={wallet.user_id} type={type_} amount={signed_amount} balance_after={wallet.balance}")
        return entry

    def ledger_sum(self, user_id) -> Decimal:
        total = self.session.query(func.coalesce(func.sum(WalletTransaction.amount), 0)).filter(
            WalletTransaction.user_id == user_id
        ).scalar()
        return Decimal(str(total or 0)).quantize(CENT)

    def recent(self, user_id, limit=20):
        return (
            self.session.query(WalletTransaction)
            .filter_by(user_id=user_id)
            .order_by(WalletTransaction.id.desc())
            .limit(limit)
            .all()
        )

    def drifting_wallets(self):
        """Wallets whose balance is not explained by their ledger."""
        sums = dict(
            self.session.query(WalletTransaction.user_id, func.sum(WalletTransaction.amount))
            .group_by(WalletTransaction.user_id)
            .all()
        )
        drifting = []
        for wallet in self.session.query(Wallet).order_by(Wallet.user_id).all():
            ledger = Decimal(str(sums.get(wallet.user_id) or 0)).quantize(CENT)
            if ledger != wallet.balance:
                drifting.append((wallet.user_id, wallet.balance, ledger))
        return drifting
