from flask import Blueprint, jsonify, current_app
from territory_market.socketio_events import broadcast_committed
from territory_market.wiring import market_services
from territory_market.api.common import require_secret


cron = Blueprint('cron', __name__)


@cron.route('/close-expired-auctions', methods=['POST'])
@require_secret('CRON_SECRET')
def close_expired_auctions():
    summary = market_services().settlement.close_expired_auctions()
    current_app.logger.info(
        f"[close_expired_auctions] processed={summary['processed']} errors={summary['errors']}"
    )
    settled = [r for r in summary['results'] if r['status'] != 'error']
    broadcast_committed(
        auctions=[r['auctionId'] for r in settled] + summary['activated'],
        territories=[r['territoryId'] for r in settled] + summary['protectionExpired'],
    )
    return jsonify(summary)
