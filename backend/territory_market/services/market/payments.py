import logging

from sqlalchemy.exc import IntegrityError

from territory_market.errors import ConflictError, ValidationError
from territory_market.models import Payment
from .pricing import to_money
from .tx import atomic

logger = logging.getLogger(__name__)


class StorePaymentLookup:
    """Answers "did user X complete payment Y" from the confirmations we recorded."""

    def __init__(self, session):
        self.session = session

    def find(self, payment_id):
        if not payment_id:
            return None
        return self.session.query(Payment).filter(Payment.id == str(payment_id)).first()


class PaymentConfirmations:
    """Records upstream payment confirmations and credits the payer's wallet.

    A confirmation is keyed by the gateway payment id, so webhook replays
    credit the wallet once.
    """

    def __init__(self, session, clock, ledger):
        self.session = session
        self.clock = clock
        self.ledger = ledger

    def confirm(self, payment_id, user_id, amount):
        if not payment_id or not user_id:
            raise ValidationError('paymentId and userId are required')
        amount = to_money(amount)
        try:
            with atomic(self.session):
                existing = self.session.query(Payment).filter(Payment.id == str(payment_id)).with_for_update().first()
                if existing is not None:
                    return self._replay(existing, user_id, amount)
                now = self.clock.now()
                payment = Payment(
                    id=str(payment_id), user_id=str(user_id), amount=amount, status='completed', confirmed_at=now
                )
                self.session.add(payment)
                wallet = self.ledger.lock(str(user_id))
                self.ledger.credit(
                    wallet, amount, 'charge', description=f'Payment {payment_id} confirmed', reference_id=str(payment_id)
                )
        except IntegrityError:
            # Lost the insert race to an identical webhook delivery
            existing = self.session.query(Payment).filter(Payment.id == str(payment_id)).first()
            if existing is None:
                raise
            return self._replay(existing, user_id, amount)
        logger.info(f"[payment-confirmed] payment={payment_id} user={user_id} amount={amount}")
        return payment, False

    def _replay(self, payment, user_id, amount):
        if payment.user_id != str(user_id) or payment.amount != amount:
            raise ConflictError(
                'Payment already recorded with different details', paymentId=payment.id
            )
        return payment, True
