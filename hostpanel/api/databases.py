from flask import Blueprint, request

from ..auth import token_required
from .common import active_required, json_body, log_activity, ok, panel

bp = Blueprint('databases', __name__)


# ============== Database Management ==============

@bp.route('/databases', methods=['GET'])
@token_required
def list_databases():
    return ok(panel().databases.list_databases(request.current_user))


@bp.route('/databases', methods=['POST'])
@token_required
@active_required
def create_database():
    data = json_body('name', 'password')
    database = panel().databases.create_database(request.current_user, data['name'], data['password'])
    log_activity('database_create', database['name'])
    return ok(database, 201, 'Database created')


@bp.route('/databases/<int:database_id>', methods=['DELETE'])
@token_required
@active_required
def delete_database(database_id):
    panel().databases.delete_database(request.current_user, database_id)
    log_activity('database_delete', str(database_id))
    return ok(message='Database deleted')
