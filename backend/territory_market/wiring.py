from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from flask import current_app, g

from territory_market import db
from territory_market.services.market.auctions import AuctionStateMachine
from territory_market.services.market.ownership import OwnershipTransferService
from territory_market.services.market.payments import PaymentConfirmations, StorePaymentLookup
from territory_market.services.market.settlement import SettlementEngine
from territory_market.services.market.wallet import WalletLedger


@dataclass
class MarketServices:
    cache: object
    clock: object
    ledger: WalletLedger
    auctions: AuctionStateMachine
    transfers: OwnershipTransferService
    settlement: SettlementEngine
    confirmations: PaymentConfirmations


def build_services(app, session) -> MarketServices:
    """Wire the market services around one session."""
    cache = app.extensions['market_cache']
    clock = app.extensions['market_clock']
    ledger = WalletLedger(session, clock)
    auctions = AuctionStateMachine(
        session,
        cache,
        clock,
        increment=Decimal(str(app.config.get('BID_INCREMENT', '1'))),
        default_duration=timedelta(seconds=int(app.config.get('DEFAULT_AUCTION_DURATION_SEC', 86400))),
    )
    transfers = OwnershipTransferService(
        session, cache, clock, ledger, app.extensions['protection_schedule'], StorePaymentLookup(session)
    )
    settlement = SettlementEngine(
        session, cache, clock, auctions, transfers, batch_size=int(app.config.get('SETTLEMENT_BATCH_SIZE', 100))
    )
    return MarketServices(
        cache=cache,
        clock=clock,
        ledger=ledger,
        auctions=auctions,
        transfers=transfers,
        settlement=settlement,
        confirmations=PaymentConfirmations(session, clock, ledger),
    )


def market_services() -> MarketServices:
    """Services for the current request, built once per request."""
    if 'market_services' not in g:
        g.market_services = build_services(current_app, db.session)
    return g.market_services
