from flask import jsonify
from sqlalchemy.exc import SQLAlchemyError

from crowdguess import db
from crowdguess.errors import SessionError


def register_error_handlers(app) -> None:
    """Translate session errors and storage failures into JSON responses."""

    @app.errorhandler(SessionError)
    def handle_session_error(exc):
        db.session.rollback()
        return jsonify({'error': exc.message, 'code': exc.code}), exc.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_storage_error(exc):
        db.session.rollback()
        app.logger.exception('[api-storage-error]')
        return jsonify({'error': 'Request failed', 'code': 'storage_error'}), 500
