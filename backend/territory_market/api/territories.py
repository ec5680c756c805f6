from flask import Blueprint, jsonify, request
from territory_market import db
from territory_market.errors import TerritoryNotFound, ValidationError
from territory_market.models import SOVEREIGNTY_STATES, Territory
from territory_market.wiring import market_services
from territory_market.api.common import query_flag, query_int


territories = Blueprint('territories', __name__)


@territories.route('', methods=['GET'])
def list_territories():
    sovereignty = request.args.get('sovereignty') or None
    if sovereignty is not None and sovereignty not in SOVEREIGNTY_STATES:
        raise ValidationError(
            f'sovereignty must be one of {", ".join(SOVEREIGNTY_STATES)}', field='sovereignty'
        )
    owner_id = request.args.get('ownerId') or None

    def load():
        query = Territory.query
        if sovereignty:
            query = query.filter(Territory.sovereignty == sovereignty)
        if owner_id:
            query = query.filter(Territory.owner_id == owner_id)
        return [t.to_dict() for t in query.order_by(Territory.id).limit(500).all()]

    cached = market_services().cache.get_list('territories', load, sovereignty=sovereignty, owner=owner_id)
    return jsonify({'territories': cached})


@territories.route('/<string:territory_id>', methods=['GET'])
def get_territory(territory_id):
    def load():
        territory = db.session.get(Territory, territory_id)
        if territory is None:
            raise TerritoryNotFound(f'Territory {territory_id} not found', territoryId=territory_id)
        return territory.to_dict()

    cache = market_services().cache
    return jsonify(cache.get_territory(territory_id, load, skip_cache=query_flag('skipCache')))


@territories.route('/<string:territory_id>/history', methods=['GET'])
def territory_history(territory_id):
    limit = query_int('limit', default=50, maximum=200)
    rows = market_services().transfers.history(territory_id, limit=limit)
    return jsonify({'territoryId': territory_id, 'transfers': [r.to_dict() for r in rows]})
