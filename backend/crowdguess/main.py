from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from crowdguess import db
from crowdguess.models import AdminUser, Game

main = Blueprint('main', __name__)


@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the CrowdGuess server!'})


@main.route('/api/admin/register', methods=['POST'])
def register_admin():
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip() if isinstance(data.get('name'), str) else ''
    if not name:
        return jsonify({'error': 'name is required'}), 400
    email = data.get('email') if isinstance(data.get('email'), str) else None

    admin = AdminUser(name=name[:64], email=email)
    db.session.add(admin)
    db.session.commit()
    login_user(admin, remember=True)
    return jsonify(admin.to_dict()), 201


@main.route('/api/admin/login', methods=['POST'])
def login_admin():
    # Identity handshake only: the admin id is the credential
    data = request.get_json(silent=True) or {}
    admin_id = data.get('adminId')
    admin = db.session.get(AdminUser, admin_id) if isinstance(admin_id, str) else None
    if not admin:
        return jsonify({'error': 'Admin not found'}), 404
    login_user(admin, remember=True)
    return jsonify(admin.to_dict())


@main.route('/api/admin/logout', methods=['POST'])
@login_required
def logout_admin():
    logout_user()
    return jsonify({'success': True})


@main.route('/api/admin/me')
@login_required
def current_admin():
    return jsonify(current_user.to_dict())


@main.route('/api/admin/games')
@login_required
def list_games():
    games = Game.query.filter_by(status='active').order_by(Game.created_at.desc()).all()
    return jsonify([game.to_dict() for game in games])
