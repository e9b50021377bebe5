from flask import Blueprint, jsonify
from clubtimer.services.timer.state import now_ms

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the club timer server!'})

@main.route('/time')
def server_time():
    # Lets clients estimate their clock offset against the authority's host
    return jsonify({'now_ms': now_ms()})
