"""Request helpers shared by the market blueprints."""

import hmac
from datetime import datetime, timezone
from functools import wraps

from flask import current_app, request

from territory_market.errors import Unauthorized, ValidationError

REPLAY_HEADER = 'X-Idempotent-Replay'


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def bearer_token():
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token:
        return None
    return token.strip()


def secret_matches(config_key: str) -> bool:
    expected = current_app.config.get(config_key)
    supplied = bearer_token()
    # An unset secret locks the endpoint instead of opening it
    if not expected or not supplied:
        return False
    return hmac.compare_digest(str(expected), supplied)


def require_secret(config_key: str):
    """Reject the request with 401 unless it carries ``Bearer <config[config_key]>``."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not secret_matches(config_key):
                current_app.logger.warning(f"[auth-rejected] path={request.path} secret={config_key}")
                raise Unauthorized('Missing or invalid credentials')
            return view(*args, **kwargs)
        return wrapped
    return decorator


def parse_timestamp(value, field):
    """ISO-8601 string -> naive UTC datetime (None passes through)."""
    if value is None or value == '':
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be an ISO-8601 timestamp', field=field)
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'{field} must be an ISO-8601 timestamp', field=field)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def query_flag(name: str) -> bool:
    return request.args.get(name, '').lower() in ('1', 'true', 'yes')


def query_int(name: str, default: int, maximum: int) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f'{name} must be an integer', field=name)
    if value < 1:
        raise ValidationError(f'{name} must be positive', field=name)
    return min(value, maximum)
