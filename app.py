import logging
import os
from http import HTTPStatus

import click
from flask import Blueprint, Flask, current_app, jsonify, request
from flask.cli import with_appcontext
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

import errors
from auth import require_role, session_for
from config import Config
from extensions import db, login_manager
from models import User, UserRole, UserStatus
from services import LibraryServices

STUDENT = (UserRole.STUDENT,)
STAFF = (UserRole.STAFF, UserRole.ADMIN, UserRole.SUPER_ADMIN)
ADMIN = (UserRole.ADMIN, UserRole.SUPER_ADMIN)

ERROR_STATUS = {
    cls.code: cls.http_status
    for cls in (errors.ValidationError, errors.InvalidState, errors.InsufficientCopies,
                errors.Unauthorized, errors.NotFound, errors.Conflict, errors.InfrastructureError)
}

bp = Blueprint("library", __name__)


def create_app(config_object=Config, services=None, **overrides):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config.update(overrides)

    if not app.testing:
        logging.basicConfig(
            level=app.config["LOG_LEVEL"],
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    app.logger.setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)
    login_manager.init_app(app)
    app.extensions["library"] = services or LibraryServices.from_config(app.config)
    app.register_blueprint(bp)
    app.cli.add_command(create_user_command)

    with app.app_context():
        db.create_all()
    return app


def library():
    return current_app.extensions["library"]


def _payload():
    return request.get_json(silent=True) or request.form.to_dict()


def respond(res, created=False):
    if res["success"]:
        status = HTTPStatus.CREATED if created else HTTPStatus.OK
    else:
        status = ERROR_STATUS.get(res.get("error"), HTTPStatus.BAD_REQUEST)
    return jsonify(res), status


@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (ValueError, TypeError):
        return None


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(errors.result(False, "Authentication required.",
                                 error=errors.Unauthorized.code)), HTTPStatus.UNAUTHORIZED


# ------------------------- Authentication -------------------------
@bp.route('/register', methods=['POST'])
def register():
    data = _payload()
    username = (data.get('username') or '').strip()
    password = (data.get('password') or '').strip()
    full_name = (data.get('full_name') or data.get('name') or '').strip()
    email = (data.get('email') or '').strip().lower()

    if not username or not password or not email:
        return respond(errors.result(False, "Username, password, and email are required.",
                                     error=errors.ValidationError.code))
    if User.query.filter_by(username=username).first():
        return respond(errors.result(False, f"Username '{username}' is already taken.",
                                     error=errors.Conflict.code))
    if User.query.filter_by(email=email).first():
        return respond(errors.result(False, f"Email '{email}' is already registered.",
                                     error=errors.Conflict.code))

    user = User(
        username=username,
        password_hash=generate_password_hash(password),
        full_name=full_name,
        email=email,
        role=UserRole.STUDENT,
        status=UserStatus.ACTIVE,
    )
    try:
        db.session.add(user)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return respond(errors.result(False, "Username or email already exists.",
                                     error=errors.Conflict.code))
    current_app.logger.info("student %s registered", user.id)
    return respond(errors.result(True, "Registration successful.",
                                 data={"id": user.id, "username": user.username}), created=True)


@bp.route('/login', methods=['POST'])
def login():
    data = _payload()
    username = (data.get('username') or '').strip()
    password = (data.get('password') or '').strip()
    if not username or not password:
        return respond(errors.result(False, "Username and password are required.",
                                     error=errors.ValidationError.code))

    # allow login via username or email
    user = User.query.filter_by(username=username).first()
    if not user:
        user = User.query.filter_by(email=username.lower()).first()
    if not user or not check_password_hash(user.password_hash, password):
        return jsonify(errors.result(False, "Invalid credentials.",
                                     error=errors.Unauthorized.code)), HTTPStatus.UNAUTHORIZED
    if not user.is_active:
        return respond(errors.result(False, "Account inactive. Contact admin.",
                                     error=errors.Unauthorized.code))

    login_user(user, remember=bool(data.get('remember')))
    return respond(errors.result(True, "Logged in successfully.",
                                 data={"id": user.id, "role": user.role.value}))


@bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return respond(errors.result(True, "Logged out."))


@bp.route('/me')
@login_required
def me():
    s = session_for(current_user)
    return respond(errors.result(True, "OK", data={
        "id": s.user_id, "role": s.role.value, "permissions": sorted(s.permissions)}))


# ------------------------- Books -------------------------
@bp.route('/api/books', methods=['GET'])
@require_role(*STUDENT)
def books(session):
    return respond(library().list_books_with_remaining_availability(session))


@bp.route('/api/catalog', methods=['GET'])
@require_role(*STAFF)
def catalog(session):
    return respond(library().search_books(request.args.get('q', '').strip()))


@bp.route('/api/books/<int:book_id>', methods=['GET'])
@login_required
def get_book(book_id):
    return respond(library().get_book(book_id))


@bp.route('/api/books', methods=['POST'])
@require_role(*ADMIN)
def add_book(session):
    return respond(library().create_book(session, _payload()), created=True)


@bp.route('/api/books/<int:book_id>', methods=['PATCH', 'PUT'])
@require_role(*ADMIN)
def edit_book(session, book_id):
    return respond(library().update_book(session, book_id, _payload()))


@bp.route('/api/books/<int:book_id>', methods=['DELETE'])
@require_role(*ADMIN)
def delete_book(session, book_id):
    return respond(library().delete_book(session, book_id))


@bp.route('/api/books/<int:book_id>/borrowers')
@require_role(*STAFF)
def book_borrowers(session, book_id):
    return respond(library().book_borrowers(session, book_id))


# ------------------------- Requests (student) -------------------------
@bp.route('/api/requests', methods=['POST'])
@require_role(*STUDENT)
def create_request(session):
    data = _payload()
    return respond(library().create_request(session, data.get('book_id'), data.get('quantity', 1)),
                   created=True)


@bp.route('/api/requests/mine')
@require_role(*STUDENT)
def my_requests(session):
    return respond(library().my_requests(session))


@bp.route('/api/requests/<int:request_id>/cancel', methods=['POST'])
@require_role(*STUDENT)
def cancel_request(session, request_id):
    return respond(library().cancel_request(session, request_id))


@bp.route('/api/requests/<int:request_id>/return', methods=['POST'])
@require_role(*STUDENT)
def return_request(session, request_id):
    return respond(library().return_request(session, request_id))


# ------------------------- Requests (staff / admin) -------------------------
@bp.route('/api/requests')
@require_role(*STAFF)
def list_requests(session):
    return respond(library().list_requests(session))


@bp.route('/api/requests/overdue')
@require_role(*STAFF)
def overdue_requests(session):
    return respond(library().overdue_requests(session))


@bp.route('/api/requests/<int:request_id>/approve', methods=['POST'])
@require_role(*ADMIN)
def approve_request(session, request_id):
    data = _payload()
    return respond(library().approve_request(session, request_id, data.get('staff_id'),
                                             data.get('due_date')))


@bp.route('/api/requests/<int:request_id>/reject', methods=['POST'])
@require_role(*STAFF)
def reject_request(session, request_id):
    return respond(library().reject_request(session, request_id))


@bp.route('/api/requests/<int:request_id>/borrowed', methods=['POST'])
@require_role(*STAFF)
def mark_borrowed(session, request_id):
    return respond(library().mark_borrowed(session, request_id))


@bp.route('/api/requests/<int:request_id>/receive', methods=['POST'])
@require_role(*STAFF)
def receive_request(session, request_id):
    data = _payload()
    return respond(library().record_fine_outcome(
        session,
        request_id,
        damaged=data.get('damaged_quantity', 0),
        lost=data.get('lost_quantity', 0),
        received=data.get('received_quantity', 0),
        description=data.get('description'),
        fine_amount=data.get('fine_amount', 0),
        fine_due_date=data.get('fine_due_date'),
    ))


# ------------------------- Fines -------------------------
@bp.route('/api/fines/<int:fine_id>/settle', methods=['POST'])
@require_role(*STAFF)
def settle_fine(session, fine_id):
    data = _payload()
    return respond(library().settle_fine(session, fine_id, data.get('status', 'Paid')))


@bp.route('/api/fines/mine')
@require_role(*STUDENT)
def my_fines(session):
    return respond(library().my_fines(session))


@bp.route('/api/fines/books')
@require_role(*STAFF)
def books_with_fines(session):
    return respond(library().books_with_fines(session))


# ------------------------- Notifications / staff -------------------------
@bp.route('/api/notifications')
@require_role(*STUDENT)
def notifications(session):
    return respond(library().notifications(session))


@bp.route('/api/staff')
@require_role(*ADMIN)
def staff_members(session):
    return respond(library().list_staff(session))


# ------------------------- Simple error pages -------------------------
@bp.app_errorhandler(404)
def not_found(e):
    return jsonify(errors.result(False, "Not found.", error=errors.NotFound.code)), HTTPStatus.NOT_FOUND


@bp.app_errorhandler(405)
def method_not_allowed(e):
    return jsonify(errors.result(False, "Method not allowed.")), HTTPStatus.METHOD_NOT_ALLOWED


# ------------------------- CLI -------------------------
@click.command('create-user')
@click.argument('username')
@click.argument('email')
@click.password_option()
@click.option('--role', type=click.Choice([r.value for r in UserRole]), default=UserRole.STAFF.value)
@click.option('--full-name', default='')
@with_appcontext
def create_user_command(username, email, password, role, full_name):
    """Create a staff, admin or student account."""
    user = User(
        username=username,
        email=email.lower(),
        full_name=full_name or username,
        password_hash=generate_password_hash(password),
        role=UserRole(role),
        status=UserStatus.ACTIVE,
    )
    db.session.add(user)
    db.session.commit()
    click.echo(f"Created {role} account '{username}' (id {user.id}).")


if __name__ == "__main__":
    # Use PORT env var when deployed (platforms like Render/Heroku set this).
    port = int(os.environ.get("PORT", 5000))
    debug_mode = os.environ.get("FLASK_DEBUG", "False").lower() in ("1", "true", "yes")
    create_app().run(host="0.0.0.0", port=port, debug=debug_mode)
