import os
import logging
from flask import Flask, jsonify, request as flask_request
from flask_cors import CORS
from datetime import datetime as dt

from lootwheel.auth import validate_auth_data
from lootwheel.config import AUTH_SECRET, API_KEY_SECRET, ALLOWED_ORIGINS, PORT
from lootwheel.database import get_db, init_db
from lootwheel.errors import ValidationError, NotFoundError, EmptyCatalogError, InventoryRaceError
from lootwheel.jackpot import JackpotPool, JackpotWinSelector, pool_to_dict, win_to_dict, ANY_SCOPE
from lootwheel.ledger import prize_to_dict
from lootwheel.payouts import PayoutClient
from lootwheel.service import RewardService


# --- Logging Setup ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(os.environ.get("LOG_FILE", "lootwheel_app.log"), encoding='utf-8'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

init_db()

payout_client = PayoutClient()

# --- Flask App Setup ---
app = Flask(__name__)
CORS(app, resources={r"/api/*": {"origins": ALLOWED_ORIGINS}})


def authenticate():
    return validate_auth_data(flask_request.headers.get('X-Auth-Data'), AUTH_SECRET)

def check_admin_key():
    auth_header = flask_request.headers.get('Authorization')
    if not auth_header or not auth_header.startswith('Bearer '):
        return jsonify({"error": "Authorization header missing or malformed."}), 401
    if auth_header.split('Bearer ')[1] != API_KEY_SECRET:
        return jsonify({"error": "Invalid API Key."}), 403
    return None

def domain_error_response(e):
    if isinstance(e, ValidationError): return jsonify({"error": str(e)}), 400
    if isinstance(e, NotFoundError): return jsonify({"error": str(e)}), 404
    if isinstance(e, EmptyCatalogError): return jsonify({"error": "No rewards available for this lootbox.", "detail": str(e)}), 409
    if isinstance(e, InventoryRaceError): return jsonify({"error": "That NFT was just won by someone else. Please spin again."}), 409
    raise e

def build_service(db):
    return RewardService(db, payout_executor=payout_client)

def request_json():
    return flask_request.get_json(silent=True) or {}

def parse_int(value, field_name):
    try: return int(value)
    except (TypeError, ValueError): raise ValidationError(f"{field_name} must be an integer.")


# --- API Routes ---
@app.route('/')
def index_route():
    return "Lootwheel Rewards API Backend is Running!"

@app.route('/api/healthcheck', methods=['GET'])
def health_check():
    return jsonify({"status": "ok"})

@app.route('/api/spin', methods=['POST'])
def spin_api():
    uid = authenticate()
    if not uid: return jsonify({"error": "Auth failed"}), 401
    data = request_json(); scope = data.get('scope'); stake_amount = data.get('stake_amount', 0)
    if not scope: return jsonify({"error": "scope required"}), 400
    db = next(get_db())
    try:
        result = build_service(db).spin(uid, scope, stake_amount)
        return jsonify({"status": "success", **result.to_dict()})
    except (ValidationError, NotFoundError, EmptyCatalogError, InventoryRaceError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error in spin for user {uid} in '{scope}': {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue during spin."}), 500
    finally: db.close()

@app.route('/api/claim_prize', methods=['POST'])
def claim_prize_api():
    uid = authenticate()
    if not uid: return jsonify({"error": "Auth failed"}), 401
    data = request_json(); destination = data.get('destination_address')
    db = next(get_db())
    try:
        prize_id = parse_int(data.get('prize_id'), "prize_id")
        outcome = build_service(db).claim_prize(uid, prize_id, destination)
        return jsonify(outcome.to_dict())
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error claiming prize {data.get('prize_id')} for user {uid}: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue during claim."}), 500
    finally: db.close()

@app.route('/api/catalog/<scope>', methods=['GET'])
def get_catalog_api(scope):
    db = next(get_db())
    try:
        return jsonify(build_service(db).get_catalog(scope).to_dict())
    except Exception as e: logger.error(f"Error loading catalog for '{scope}': {e}", exc_info=True); return jsonify({"error": "Could not load rewards."}), 500
    finally: db.close()

@app.route('/api/pending_prizes/<scope>', methods=['GET'])
def get_pending_prizes_api(scope):
    uid = authenticate()
    if not uid: return jsonify({"error": "Auth failed"}), 401
    db = next(get_db())
    try:
        prizes = build_service(db).get_pending_prizes(uid, scope)
        return jsonify({"prizes": [prize_to_dict(p) for p in prizes]})
    except Exception as e: logger.error(f"Error loading pending prizes for {uid} in '{scope}': {e}", exc_info=True); return jsonify({"error": "Could not load pending prizes."}), 500
    finally: db.close()

@app.route('/api/jackpot/evaluate', methods=['POST'])
def evaluate_jackpot_api():
    uid = authenticate()
    if not uid: return jsonify({"error": "Auth failed"}), 401
    data = request_json()
    db = next(get_db())
    try:
        outcome = build_service(db).evaluate_jackpot(uid, data.get('stake_amount', 0), scope=data.get('scope'))
        return jsonify(outcome.to_dict())
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error evaluating jackpot for user {uid}: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue during jackpot check."}), 500
    finally: db.close()

@app.route('/api/jackpot/pools', methods=['GET'])
def get_jackpot_pools_api():
    scope_arg = flask_request.args.get('scope')
    scope = ANY_SCOPE if scope_arg is None else (None if scope_arg in ('', 'main') else scope_arg)
    db = next(get_db())
    try:
        return jsonify({"pools": [pool_to_dict(p) for p in JackpotPool(db).list_active_pools(scope)]})
    except Exception as e: logger.error(f"Error loading jackpot pools: {e}", exc_info=True); return jsonify({"error": "Could not load jackpot pools."}), 500
    finally: db.close()

@app.route('/api/jackpot/participants/<int:pool_id>', methods=['GET'])
def get_jackpot_participants_api(pool_id):
    db = next(get_db())
    try:
        pools = JackpotPool(db); pools.get_pool(pool_id)
        return jsonify({"pool_id": pool_id, "total_contributions": pools.total_contributions(pool_id),
                        "participants": [p.to_dict() for p in pools.participants(pool_id)]})
    except NotFoundError as e: return domain_error_response(e)
    except Exception as e: logger.error(f"Error loading participants for pool {pool_id}: {e}", exc_info=True); return jsonify({"error": "Could not load participants."}), 500
    finally: db.close()

@app.route('/api/jackpot/wins', methods=['GET'])
def get_jackpot_wins_api():
    uid = authenticate()
    if not uid: return jsonify({"error": "Auth failed"}), 401
    db = next(get_db())
    try:
        return jsonify({"wins": [win_to_dict(w) for w in JackpotWinSelector(db).list_user_wins(uid)]})
    except Exception as e: logger.error(f"Error loading jackpot wins for {uid}: {e}", exc_info=True); return jsonify({"error": "Could not load jackpot wins."}), 500
    finally: db.close()

@app.route('/api/jackpot/claim', methods=['POST'])
def claim_jackpot_api():
    uid = authenticate()
    if not uid: return jsonify({"error": "Auth failed"}), 401
    data = request_json()
    db = next(get_db())
    try:
        win_id = parse_int(data.get('win_id'), "win_id")
        return jsonify(build_service(db).claim_jackpot_win(uid, win_id, data.get('destination_address')).to_dict())
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error claiming jackpot win {data.get('win_id')} for {uid}: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue during jackpot claim."}), 500
    finally: db.close()

@app.route('/api/jackpot/settle', methods=['POST'])
def settle_jackpot_api():
    data = request_json()
    db = next(get_db())
    try:
        pool_id = parse_int(data.get('pool_id'), "pool_id")
        return jsonify(build_service(db).settle_jackpot(pool_id).to_dict())
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error settling jackpot pool {data.get('pool_id')}: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue during settlement."}), 500
    finally: db.close()

# --- Admin Endpoints ---
@app.route('/api/admin/rewards', methods=['POST'])
def add_reward_api():
    denied = check_admin_key()
    if denied: return denied
    data = request_json(); rebalance = data.get('rebalance', True)
    if not isinstance(rebalance, bool): return jsonify({"error": "rebalance must be true or false."}), 400
    db = next(get_db())
    try:
        service = build_service(db)
        entry = service.add_reward(data.get('scope'), data.get('display_name'), data.get('unit_price'),
                                   data.get('weight_percent'), rebalance=rebalance)
        return jsonify({"status": "success", "id": entry.id, "catalog": service.get_catalog(entry.scope).to_dict()}), 201
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error adding reward: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue."}), 500
    finally: db.close()

@app.route('/api/admin/rewards/<int:entry_id>/weight', methods=['POST'])
def set_reward_weight_api(entry_id):
    denied = check_admin_key()
    if denied: return denied
    data = request_json()
    db = next(get_db())
    try:
        service = build_service(db)
        entry = service.set_reward_weight(entry_id, data.get('weight_percent'))
        return jsonify({"status": "success", "catalog": service.get_catalog(entry.scope).to_dict()})
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error updating weight of reward {entry_id}: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue."}), 500
    finally: db.close()

@app.route('/api/admin/rewards/<int:entry_id>/deactivate', methods=['POST'])
def deactivate_reward_api(entry_id):
    denied = check_admin_key()
    if denied: return denied
    db = next(get_db())
    try:
        build_service(db).deactivate_reward(entry_id)
        return jsonify({"status": "success"})
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error deactivating reward {entry_id}: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue."}), 500
    finally: db.close()

@app.route('/api/admin/nfts/deposit', methods=['POST'])
def deposit_nft_api():
    denied = check_admin_key()
    if denied: return denied
    data = request_json()
    db = next(get_db())
    try:
        service = build_service(db)
        item = service.deposit_nft(data.get('scope'), data.get('mint'), data.get('display_name'))
        share = service.inventory.current_share(item.scope)
        return jsonify({"status": "success", "id": item.id, "mint": item.mint_identity, "percentage": float(share)})
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error depositing NFT {data.get('mint')}: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue."}), 500
    finally: db.close()

@app.route('/api/admin/prizes/<int:prize_id>/return', methods=['POST'])
def return_prize_api(prize_id):
    denied = check_admin_key()
    if denied: return denied
    db = next(get_db())
    try:
        scope, mint, share = build_service(db).return_to_inventory(prize_id)
        return jsonify({"status": "success", "scope": scope, "mint": mint, "percentage": float(share)})
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error returning prize {prize_id} to inventory: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue."}), 500
    finally: db.close()

@app.route('/api/admin/jackpot/pools', methods=['POST'])
def create_jackpot_pool_api():
    denied = check_admin_key()
    if denied: return denied
    data = request_json()
    db = next(get_db())
    try:
        end_time = dt.fromisoformat(data['end_time']) if data.get('end_time') else None
        pool = build_service(db).create_jackpot_pool(
            name=data.get('name'), contribution_rate=data.get('contribution_rate', 0.01),
            min_amount=data.get('min_amount', 0.0), max_amount=data.get('max_amount', 0.0),
            scope=data.get('scope'), description=data.get('description'), end_time=end_time)
        return jsonify({"status": "success", "pool": pool_to_dict(pool)}), 201
    except ValueError as e: return jsonify({"error": f"Invalid end_time: {e}"}), 400
    except (ValidationError, NotFoundError) as e: return domain_error_response(e)
    except Exception as e: db.rollback(); logger.error(f"Error creating jackpot pool: {e}", exc_info=True); return jsonify({"error": "Database error or unexpected issue."}), 500
    finally: db.close()


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=PORT, debug=False, use_reloader=True)
