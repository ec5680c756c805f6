from decimal import Decimal

from territory_market import db
from territory_market.models import Territory


def test_check_ledger_clean(flask_app, fund):
    fund('alice', '10')
    result = flask_app.test_cli_runner().invoke(args=['check-ledger'])
    assert result.exit_code == 0
    assert 'consistent' in result.output


def test_check_ledger_reports_drift(flask_app, services, fund):
    fund('alice', '10')
    services.ledger.get('alice').balance = Decimal('12')
    db.session.commit()
    result = flask_app.test_cli_runner().invoke(args=['check-ledger'])
    assert result.exit_code == 1
    assert 'wallet alice' in result.output


def test_close_expired_auctions_command(flask_app):
    result = flask_app.test_cli_runner().invoke(args=['close-expired-auctions'])
    assert result.exit_code == 0
    assert '"processed": 0' in result.output


def test_db_reset_seeds_territories(flask_app):
    result = flask_app.test_cli_runner().invoke(args=['db-reset'])
    assert result.exit_code == 0
    assert Territory.query.count() == 5
