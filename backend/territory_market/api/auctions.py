from flask import Blueprint, jsonify, request, current_app
from territory_market import db
from territory_market.errors import AuctionNotFound, ValidationError
from territory_market.models import AUCTION_STATUSES, Auction
from territory_market.socketio_events import broadcast_committed
from territory_market.wiring import market_services
from territory_market.api.common import json_body, parse_timestamp, query_flag, query_int, require_secret


auctions = Blueprint('auctions', __name__)


@auctions.route('', methods=['POST'])
@require_secret('ADMIN_SECRET')
def open_auction():
    data = json_body()
    territory_id = data.get('territoryId')
    if not territory_id:
        raise ValidationError('territoryId is required', field='territoryId')
    services = market_services()
    auction = services.auctions.open_auction(
        territory_id,
        min_bid=data.get('minBid'),
        start_time=parse_timestamp(data.get('startTime'), 'startTime'),
        end_time=parse_timestamp(data.get('endTime'), 'endTime'),
    )
    current_app.logger.info(f"[open_auction] auction={auction.id} territory={territory_id}")
    broadcast_committed(auctions=[auction.id], territories=[territory_id])
    return jsonify(auction.to_dict(increment=services.auctions.increment)), 201


@auctions.route('', methods=['GET'])
def list_auctions():
    status = request.args.get('status') or None
    if status is not None and status not in AUCTION_STATUSES:
        raise ValidationError(f'status must be one of {", ".join(AUCTION_STATUSES)}', field='status')
    services = market_services()
    increment = services.auctions.increment

    def load():
        query = Auction.query
        if status:
            query = query.filter(Auction.status == status)
        rows = query.order_by(Auction.end_time.asc(), Auction.id.asc()).limit(100).all()
        return [a.to_dict(increment=increment) for a in rows]

    return jsonify({'auctions': services.cache.get_list('auctions', load, status=status)})


@auctions.route('/<int:auction_id>', methods=['GET'])
def get_auction(auction_id):
    services = market_services()

    def load():
        auction = db.session.get(Auction, auction_id)
        if auction is None:
            raise AuctionNotFound(f'Auction {auction_id} not found', auctionId=auction_id)
        return auction.to_dict(increment=services.auctions.increment)

    return jsonify(services.cache.get_auction(auction_id, load, skip_cache=query_flag('skipCache')))


@auctions.route('/<int:auction_id>/bids', methods=['GET'])
def list_bids(auction_id):
    limit = query_int('limit', default=50, maximum=500)
    bids = market_services().auctions.bids_for(auction_id, limit=limit)
    return jsonify({'auctionId': auction_id, 'bids': [b.to_dict() for b in bids]})


@auctions.route('/<int:auction_id>/bids', methods=['POST'])
def place_bid(auction_id):
    data = json_body()
    result = market_services().auctions.place_bid(
        auction_id,
        bidder_id=data.get('bidderId'),
        amount=data.get('amount'),
        bidder_name=data.get('bidderName'),
    )
    auction = result.pop('auction')
    broadcast_committed(auctions=[auction_id], territories=[auction['territoryId']])
    return jsonify(result), 201


@auctions.route('/<int:auction_id>/cancel', methods=['POST'])
@require_secret('ADMIN_SECRET')
def cancel_auction(auction_id):
    auction = market_services().auctions.cancel(auction_id, reason='admin')
    current_app.logger.info(f"[cancel_auction] auction={auction_id}")
    broadcast_committed(auctions=[auction.id], territories=[auction.territory_id])
    return jsonify(auction.to_dict())


@auctions.route('/<int:auction_id>/end', methods=['POST'])
@require_secret('ADMIN_SECRET')
def end_auction(auction_id):
    outcome = market_services().settlement.settle_one(auction_id)
    current_app.logger.info(f"[end_auction] auction={auction_id} status={outcome['status']}")
    broadcast_committed(auctions=[outcome['auctionId']], territories=[outcome['territoryId']])
    return jsonify(outcome)
