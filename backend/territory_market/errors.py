"""Error taxonomy for the market core.

Every error carries a stable ``kind`` (the wire name clients switch on) and
the HTTP status the API layer answers with. Validation errors are never worth
retrying; conflict errors are safe to retry with corrected input.
"""


class MarketError(Exception):
    kind = 'MarketError'
    status_code = 400

    def __init__(self, message=None, **details):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details

    def to_dict(self):
        payload = {'error': self.kind, 'message': self.message}
        payload.update(self.details)
        return payload


class ValidationError(MarketError):
    kind = 'ValidationError'
    status_code = 400


class Unauthorized(MarketError):
    kind = 'Unauthorized'
    status_code = 401


class NotFound(MarketError):
    kind = 'NotFound'
    status_code = 404


class ConflictError(MarketError):
    kind = 'Conflict'
    status_code = 409


# -- lookups --

class TerritoryNotFound(NotFound):
    kind = 'TerritoryNotFound'


class AuctionNotFound(NotFound):
    kind = 'AuctionNotFound'


class PaymentNotFound(NotFound):
    kind = 'PaymentNotFound'


# -- auction state machine --

class AuctionNotActive(ConflictError):
    kind = 'AuctionNotActive'


class BidTooLow(ConflictError):
    kind = 'BidTooLow'


class InvalidAuctionTransition(ConflictError):
    kind = 'InvalidAuctionTransition'


class AuctionAlreadyOpen(ConflictError):
    kind = 'AuctionAlreadyOpen'


class TerritoryProtected(ConflictError):
    kind = 'TerritoryProtected'


# -- ownership transfer --

class AlreadyOwned(ConflictError):
    kind = 'AlreadyOwned'


class TerritoryUnderAuction(ConflictError):
    kind = 'TerritoryUnderAuction'


class PaymentIncomplete(ConflictError):
    kind = 'PaymentIncomplete'


class InsufficientBalance(MarketError):
    kind = 'InsufficientBalance'
    status_code = 402


class AuctionNotEnded(ConflictError):
    kind = 'AuctionNotEnded'


class NotWinningBidder(ConflictError):
    kind = 'NotWinningBidder'


class AuctionAlreadyTransferred(ConflictError):
    kind = 'AuctionAlreadyTransferred'


class IntegrityViolation(MarketError):
    """Data no longer satisfies a core invariant. Never corrected automatically."""
    kind = 'IntegrityViolation'
    status_code = 500
