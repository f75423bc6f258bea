"""
Admin API Routes
Password-protected management of the Gemini key pool and generation runs

Security:
- Constant-time password comparison
- Per-IP lockout after repeated failed logins
- Expiring session tokens, extended on activity
"""
import os
import re
import secrets
import time
from functools import wraps
from flask import Blueprint, request, jsonify
from dotenv import load_dotenv, set_key, find_dotenv

from logging_config import get_logger
from key_pool import get_key_pool, reset_key_pool, ConfigurationError
from gemini_service import check_api_keys
from database import list_generation_jobs

logger = get_logger('admin')

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')

# token -> expiry timestamp
active_sessions = {}
SESSION_DURATION = 3600  # 1 hour

# ip -> {'failures': count, 'locked_until': timestamp}
login_attempts = {}
MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_DURATION = 300  # 5 minutes

KEY_FIELDS = ('GEMINI_API_KEY', 'GEMINI_API_KEYS')


def _client_ip() -> str:
    # First hop of X-Forwarded-For when behind a proxy
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def _lockout_remaining(ip: str) -> int:
    """Seconds until this IP may try again (0 if not locked out)."""
    record = login_attempts.get(ip)
    if not record or not record['locked_until']:
        return 0
    remaining = record['locked_until'] - time.time()
    if remaining > 0:
        return int(remaining) + 1
    # Lockout over, start counting again
    login_attempts.pop(ip, None)
    return 0


def _register_failure(ip: str):
    record = login_attempts.setdefault(ip, {'failures': 0, 'locked_until': 0})
    record['failures'] += 1
    if record['failures'] >= MAX_LOGIN_ATTEMPTS:
        record['locked_until'] = time.time() + LOCKOUT_DURATION
        logger.warning(f"Locked out {ip} for {LOCKOUT_DURATION}s after {record['failures']} failed logins")


def _drop_expired_sessions():
    now = time.time()
    for token in [t for t, expires in active_sessions.items() if expires < now]:
        active_sessions.pop(token, None)


def require_auth(f):
    """Reject requests without a live X-Admin-Token"""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = request.headers.get('X-Admin-Token')
        if not token:
            return jsonify({'error': 'No auth token provided'}), 401

        _drop_expired_sessions()
        if token not in active_sessions:
            return jsonify({'error': 'Invalid or expired token'}), 401

        active_sessions[token] = time.time() + SESSION_DURATION
        return f(*args, **kwargs)
    return decorated


def mask_key(key: str) -> str:
    """First 4 and last 4 characters only"""
    if not key or len(key) < 12:
        return '****'
    return f"{key[:4]}...{key[-4:]}"


def update_env_file(key: str, value: str) -> bool:
    """Persist one variable to .env and to the running process environment."""
    dotenv_path = find_dotenv() or os.path.join(os.path.dirname(__file__), '.env')
    if not os.path.exists(dotenv_path):
        logger.error("Could not find .env file")
        return False

    try:
        set_key(dotenv_path, key, value)
    except OSError as e:
        logger.error(f"Failed to write {key} to .env: {e}")
        return False

    load_dotenv(dotenv_path, override=True)
    os.environ[key] = value
    logger.info(f"Updated {key} in .env file")
    return True


def _normalize_keys(value) -> str:
    """Accept a list or a comma/newline separated string; return a comma separated string."""
    if isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        parts = re.split(r'[\n\r,;]+', str(value or ''))
    return ','.join(p.strip() for p in parts if p.strip())


@admin_bp.route('/login', methods=['POST'])
def admin_login():
    """
    Exchange the admin password for a session token.

    Expected JSON:
    - password: Admin password

    Returns:
    - token: Session token (valid for 1 hour, extended on use)
    """
    client_ip = _client_ip()
    retry_after = _lockout_remaining(client_ip)
    if retry_after:
        logger.warning(f"Login attempt from locked out {client_ip}")
        return jsonify({
            'error': 'Too many login attempts. Please try again later.',
            'retry_after': retry_after
        }), 429

    admin_password = os.getenv('ADMIN_PASSWORD')
    if not admin_password:
        logger.error("ADMIN_PASSWORD not configured")
        return jsonify({'error': 'Admin not configured'}), 500

    password = str((request.get_json(silent=True) or {}).get('password', ''))
    if not secrets.compare_digest(password.encode('utf-8'), admin_password.encode('utf-8')):
        _register_failure(client_ip)
        logger.warning(f"Failed admin login from {client_ip}")
        return jsonify({'error': 'Invalid password'}), 401

    login_attempts.pop(client_ip, None)
    token = secrets.token_urlsafe(32)
    active_sessions[token] = time.time() + SESSION_DURATION
    logger.info(f"Admin login from {client_ip}")

    return jsonify({
        'status': 'authenticated',
        'token': token,
        'expires_in': SESSION_DURATION
    })


@admin_bp.route('/logout', methods=['POST'])
@require_auth
def admin_logout():
    active_sessions.pop(request.headers.get('X-Admin-Token'), None)
    return jsonify({'status': 'logged_out'})


@admin_bp.route('/verify', methods=['GET'])
@require_auth
def verify_session():
    return jsonify({'status': 'valid'})


@admin_bp.route('/keys', methods=['GET'])
@require_auth
def get_api_keys():
    """Masked view of the key pool, in rotation order"""
    try:
        pool = get_key_pool()
    except ConfigurationError:
        return jsonify({'keys': [], 'count': 0, 'cursor': 0})

    keys = [
        {'key': f'API Key {i + 1}', 'masked': mask_key(key)}
        for i, key in enumerate(pool.all())
    ]
    return jsonify({'keys': keys, 'count': len(keys), 'cursor': pool.cursor})


@admin_bp.route('/keys/status', methods=['GET', 'POST'])
@require_auth
def test_api_keys_route():
    """Probe every pooled key with a cheap request"""
    try:
        results = check_api_keys()
    except ConfigurationError as e:
        return jsonify({'error': 'configuration_error', 'message': str(e)}), 503

    healthy = sum(1 for r in results if r['status'] == 'ok')
    logger.info(f"Key status check: {healthy}/{len(results)} active")
    return jsonify({'results': results, 'active': healthy, 'total': len(results)})


@admin_bp.route('/keys', methods=['PUT'])
@require_auth
def update_api_keys():
    """
    Replace pool credentials and rebuild the pool.

    Expected JSON (either or both):
    - GEMINI_API_KEY: Primary key
    - GEMINI_API_KEYS: Extra keys, list or comma/newline separated string
    """
    data = request.get_json(silent=True) or {}

    updated = []
    errors = []
    for field in KEY_FIELDS:
        if field not in data:
            continue
        if field == 'GEMINI_API_KEYS':
            value = _normalize_keys(data[field])
        else:
            value = str(data[field] or '').strip()
        if not value:
            continue
        if update_env_file(field, value):
            updated.append(field)
        else:
            errors.append(field)

    if updated:
        reset_key_pool()
        logger.info(f"Key pool reset after updating {', '.join(updated)}")

    if errors:
        return jsonify({
            'status': 'partial',
            'updated': updated,
            'errors': errors,
            'message': f'Failed to update: {", ".join(errors)}'
        }), 500

    if not updated:
        return jsonify({'status': 'no_changes', 'message': 'No keys provided to update'})

    return jsonify({
        'status': 'updated',
        'updated': updated,
        'message': f'Updated: {", ".join(updated)}'
    })


@admin_bp.route('/jobs', methods=['GET'])
@require_auth
def list_jobs_api():
    """
    Recent chapter generation runs.

    Query params:
    - project_id: Filter by project (optional)
    - status: Filter by status (optional)
    - limit: Max rows (default 50)
    """
    jobs = list_generation_jobs(
        project_id=request.args.get('project_id') or None,
        status=request.args.get('status') or None,
        limit=request.args.get('limit', 50, type=int)
    )
    return jsonify({'jobs': jobs, 'total': len(jobs)})
