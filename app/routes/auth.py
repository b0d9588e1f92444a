from flask import Blueprint, request, jsonify, make_response, current_app
from flask_login import login_user, logout_user, login_required, current_user
from werkzeug.security import generate_password_hash, check_password_hash
import jwt
from app.models import User, LoginHistory
from app import db, login_manager, limiter

from datetime import datetime, timedelta
import datetime as dt

auth_bp = Blueprint('auth', __name__)

ROLES = ('admin', 'fiscal', 'viewer')


def _extract_client_ip(req):
    forwarded_for = req.headers.get('X-Forwarded-For', '')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    return req.remote_addr


def _record_login_event(user, req, method='password'):
    login_history = LoginHistory(
        user_id=user.id,
        login_time=datetime.now(),
        login_ip=_extract_client_ip(req),
        login_user_agent=req.headers.get('User-Agent', ''),
        login_method=method
    )
    db.session.add(login_history)
    db.session.commit()
    return login_history


def _record_logout_event(user, req):
    last_login = (
        LoginHistory.query
        .filter_by(user_id=user.id)
        .order_by(LoginHistory.login_time.desc())
        .first()
    )
    if last_login and last_login.logout_time is None:
        last_login.logout_time = datetime.now()
        last_login.logout_ip = _extract_client_ip(req)
        last_login.logout_user_agent = req.headers.get('User-Agent', '')
        db.session.commit()
        return last_login
    return None


def _user_payload(user):
    return {
        'id': user.id,
        'username': user.username,
        'email': user.email,
        'role': user.role,
    }


@auth_bp.route('/login', methods=['POST'])
@limiter.limit("2 per 5 seconds")
def login():
    data = request.get_json() or {}
    email = (data.get('email') or '').lower()
    password = data.get('password') or ''
    user = User.query.filter_by(email=email).first()

    if user and check_password_hash(user.password, password):
        login_user(user)
        _record_login_event(user, request, method='password')
        return jsonify({'message': 'Logged in successfully', 'user': _user_payload(user)}), 200
    return jsonify({'error': 'INVALID_CREDENTIALS', 'message': 'Invalid credentials'}), 401


@auth_bp.route('/me', methods=['GET'])
@login_required
@limiter.limit("10 per minute")
def me():
    return jsonify(_user_payload(current_user)), 200


@auth_bp.route('/register', methods=['POST'])
@login_required
@limiter.limit("5 per 5 seconds")
def register():
    # Only admins can register users
    if getattr(current_user, 'role', 'viewer') != 'admin':
        return jsonify({'error': 'FORBIDDEN', 'message': 'Forbidden'}), 403

    data = request.get_json() or {}
    username = (data.get('username') or '').lower()
    email = (data.get('email') or '').lower()
    password = data.get('password')
    role = data.get('role', 'viewer')

    if not username or not email or not password:
        return jsonify({'error': 'VALIDATION_ERROR', 'message': 'Missing fields'}), 400
    if role not in ROLES:
        return jsonify({'error': 'VALIDATION_ERROR', 'message': f'Unknown role {role}'}), 400
    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'VALIDATION_ERROR', 'message': 'Email already exists'}), 400

    new_user = User(
        username=username,
        email=email,
        password=generate_password_hash(password),
        role=role,
    )
    db.session.add(new_user)
    db.session.commit()
    return jsonify({'message': 'User created successfully', 'user': _user_payload(new_user)}), 201


@auth_bp.route('/logout', methods=['POST'])
@login_required
@limiter.limit("5 per 5 seconds")
def logout():
    _record_logout_event(current_user, request)
    logout_user()
    response = make_response(jsonify({'message': 'Logged out successfully'}), 200)
    response.delete_cookie('session')
    return response


def _user_from_authorization(req):
    auth_header = req.headers.get('Authorization') if req else None
    if not auth_header:
        return None

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != 'bearer':
        return None

    try:
        data = jwt.decode(parts[1], current_app.config['SECRET_KEY'], algorithms=['HS256'])
    except jwt.InvalidTokenError:
        return None

    return User.query.filter_by(email=data.get('sub')).first()


@login_manager.request_loader
def load_user_from_request(req):
    return _user_from_authorization(req)


@auth_bp.route('/login_by_token', methods=['POST'])
@limiter.limit("2 per 5 seconds")
def login_by_token():
    user = _user_from_authorization(request)
    if not user:
        return jsonify({'error': 'INVALID_TOKEN', 'message': 'Invalid or expired token'}), 401

    login_user(user)
    _record_login_event(user, request, method='jwt_token')
    return jsonify({'message': 'Logged in successfully', 'user': _user_payload(user)}), 200


@auth_bp.route('/generate_jwt_token', methods=['POST'])
@login_required
@limiter.limit("5 per 5 seconds")
def generate_jwt_token():
    now = dt.datetime.now(dt.timezone.utc)
    token = jwt.encode({
        'sub': current_user.email,
        'iat': now,
        'exp': now + timedelta(minutes=current_app.config['JWT_EXPIRATION_MINUTES'])
    }, current_app.config['SECRET_KEY'], algorithm='HS256')

    return jsonify({'token': token}), 200
