from flask import Blueprint, jsonify, current_app
from territory_market.errors import Unauthorized
from territory_market.socketio_events import broadcast_committed
from territory_market.wiring import market_services
from territory_market.api.common import REPLAY_HEADER, json_body, secret_matches


ownership = Blueprint('ownership', __name__)


@ownership.route('/transfer', methods=['POST'])
def transfer_ownership():
    data = json_body()
    reason = data.get('reason')
    if reason == 'admin_fix' and not secret_matches('ADMIN_SECRET'):
        raise Unauthorized('admin_fix requires admin credentials')

    result = market_services().transfers.transfer(
        territory_id=data.get('territoryId'),
        user_id=data.get('userId'),
        user_name=data.get('userName'),
        price=data.get('price'),
        reason=reason,
        payment_id=data.get('paymentId'),
        auction_id=data.get('auctionId'),
        # No requestId means no idempotency protection for this call
        idempotency_key=data.get('requestId'),
    )
    response = jsonify(result.payload)
    if result.already_processed:
        response.headers[REPLAY_HEADER] = 'true'
        current_app.logger.info(f"[transfer_ownership] replay tx={result.payload['transactionId']}")
        return response, 200
    broadcast_committed(auctions=result.auction_ids, territories=[result.territory_id])
    return response, 200
