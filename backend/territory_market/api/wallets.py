from flask import Blueprint, jsonify, current_app
from territory_market.models import money_value
from territory_market.wiring import market_services
from territory_market.api.common import REPLAY_HEADER, json_body, query_int, require_secret


wallets = Blueprint('wallets', __name__)


@wallets.route('/wallets/<string:user_id>', methods=['GET'])
def get_wallet(user_id):
    limit = query_int('limit', default=20, maximum=200)
    ledger = market_services().ledger
    wallet = ledger.get(user_id)
    ledger_sum = ledger.ledger_sum(user_id)
    balance = wallet.balance if wallet is not None else ledger_sum
    return jsonify({
        'userId': user_id,
        'balance': money_value(balance),
        'ledgerSum': money_value(ledger_sum),
        'drift': money_value(balance - ledger_sum),
        'transactions': [t.to_dict() for t in ledger.recent(user_id, limit=limit)],
    })


@wallets.route('/payments/confirm', methods=['POST'])
@require_secret('PAYMENT_WEBHOOK_SECRET')
def confirm_payment():
    data = json_body()
    payment, replayed = market_services().confirmations.confirm(
        data.get('paymentId'), data.get('userId'), data.get('amount')
    )
    response = jsonify(payment.to_dict())
    if replayed:
        response.headers[REPLAY_HEADER] = 'true'
        return response, 200
    current_app.logger.info(f"[confirm_payment] payment={payment.id} user={payment.user_id}")
    return response, 201
