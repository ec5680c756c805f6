from flask import Blueprint, jsonify
from sqlalchemy import text
from territory_market import db

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the territory market!'})

@main.route('/health')
def health():
    # Touches the store so a dead connection answers 503 via the store error handler
    db.session.execute(text('SELECT 1'))
    return jsonify({'status': 'ok'})
