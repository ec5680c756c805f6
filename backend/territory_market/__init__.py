from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from decimal import Decimal
import json
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

DEMO_TERRITORIES = [
    ('KR-11', 'Seoul', '120'),
    ('JP-13', 'Tokyo', '150'),
    ('US-NY', 'New York', '200'),
    ('FR-75', 'Paris', '90'),
    ('BR-SP', 'Sao Paulo', '60'),
]


def serialize_sqlite_writers(engine):
    """SQLite has no row locks, so every transaction takes the write lock up front."""
    @event.listens_for(engine, 'connect')
    def _disable_implicit_begin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    with flask_app.app_context():
        url = db.engine.url
        # A file-backed SQLite store is shared by threads and processes
        if url.get_backend_name() == 'sqlite' and url.database not in (None, '', ':memory:'):
            serialize_sqlite_writers(db.engine)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Market collaborators shared by every request; sessions are per request
    from territory_market.cache import CacheCoherence, create_cache_store
    from territory_market.clock import SystemClock
    from territory_market.services.market.pricing import ProtectionSchedule

    store_timeout_sec = flask_app.config.get('STORE_TIMEOUT_MS', 5000) / 1000.0
    cache_store = create_cache_store(flask_app.config.get('CACHE_URL', 'memory://'), timeout_sec=store_timeout_sec)
    flask_app.extensions['market_cache'] = CacheCoherence(
        cache_store,
        entity_ttl=flask_app.config.get('CACHE_TTL_ENTITY', 3600),
        auction_ttl=flask_app.config.get('CACHE_TTL_AUCTION', 30),
        list_ttl=flask_app.config.get('CACHE_TTL_LIST', 300),
    )
    flask_app.extensions['market_clock'] = SystemClock()
    flask_app.extensions['protection_schedule'] = ProtectionSchedule.parse(flask_app.config.get('PROTECTION_TIERS'))

    # Import and register blueprints here
    from territory_market.main import main
    flask_app.register_blueprint(main)

    from territory_market.api.auctions import auctions
    flask_app.register_blueprint(auctions, url_prefix='/api/auctions')

    from territory_market.api.territories import territories
    flask_app.register_blueprint(territories, url_prefix='/api/territories')

    from territory_market.api.ownership import ownership
    flask_app.register_blueprint(ownership, url_prefix='/api/ownership')

    from territory_market.api.cron import cron
    flask_app.register_blueprint(cron, url_prefix='/api/cron')

    from territory_market.api.wallets import wallets
    flask_app.register_blueprint(wallets, url_prefix='/api')

    from territory_market.errors import MarketError

    @flask_app.errorhandler(MarketError)
    def handle_market_error(exc):
        if exc.status_code >= 500:
            flask_app.logger.error(f"[market-error] kind={exc.kind} details={exc.details}")
        return jsonify(exc.to_dict()), exc.status_code

    @flask_app.errorhandler(SQLAlchemyError)
    def handle_store_error(exc):
        db.session.rollback()
        flask_app.logger.error(f"[store-unavailable] error={exc!r}")
        return jsonify({
            'error': 'StoreUnavailable',
            'message': 'The store is unavailable; retry with the same request id',
        }), 503

    # Register Socket.IO event handlers
    from territory_market.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from territory_market.models import Territory
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            # Seed demo territories
            for territory_id, name, base_price in DEMO_TERRITORIES:
                db.session.add(Territory(
                    id=territory_id,
                    name=name,
                    base_price=Decimal(base_price),
                    market_base_price=Decimal(base_price),
                ))

            db.session.commit()
            flask_app.extensions['market_cache'].invalidate(territory_ids=[t[0] for t in DEMO_TERRITORIES])
            print('Database has been reset and seeded!')

    @click.command('close-expired-auctions')
    def close_expired_auctions_command():
        """Closes every auction past its end time (what the cron host runs)."""
        from territory_market.wiring import build_services
        with flask_app.app_context():
            summary = build_services(flask_app, db.session).settlement.close_expired_auctions()
            print(json.dumps(summary, indent=2))

    @click.command('check-ledger')
    def check_ledger_command():
        """Reports wallet drift and territories disagreeing with their transfer log."""
        from territory_market.wiring import build_services
        with flask_app.app_context():
            services = build_services(flask_app, db.session)
            drifting = services.ledger.drifting_wallets()
            mismatches = services.transfers.owner_mismatches()
            for user_id, balance, ledger in drifting:
                print(f'wallet {user_id}: balance={balance} ledger={ledger}')
            for territory_id, owner_id, logged_owner in mismatches:
                print(f'territory {territory_id}: owner={owner_id} last_transfer_owner={logged_owner}')
            if drifting or mismatches:
                flask_app.logger.error(
                    f"[integrity] drifting_wallets={len(drifting)} owner_mismatches={len(mismatches)}"
                )
                raise SystemExit(1)
            print('Ledger and ownership log are consistent.')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(close_expired_auctions_command)
    flask_app.cli.add_command(check_ledger_command)

    return flask_app
