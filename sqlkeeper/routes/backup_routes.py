"""
Backup routes - Run backups, list artifacts and apply retention.
"""

from flask import Blueprint, current_app, jsonify, request

from sqlkeeper.backup.errors import PruneFailed
from sqlkeeper.backup.jobs import build_request, execute_backup, list_artifacts, prune_backups
from sqlkeeper.scheduler import trigger_backup_now


bp = Blueprint('backups', __name__, url_prefix='/api/backups')


def _request_overrides():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValueError('Request body must be a JSON object')
    return data


@bp.route('/', methods=['GET'])
def list_backups():
    """
    List backups in the backup directory, newest first.

    Returns:
        JSON with artifact name, path, size and modification time
    """
    artifacts = list_artifacts()
    return jsonify({
        'directory': current_app.config['BACKUP_DIR'],
        'backups': artifacts,
        'total': len(artifacts)
    })


@bp.route('/run', methods=['POST'])
def run_backup():
    """
    Run a backup synchronously.

    Request body (all optional, config defaults apply):
        connection, tables, exclude, format, include_data, storage, path, filename

    Returns:
        201 with the run record on success, 500 with the run record on failure
    """
    try:
        backup_request = build_request(current_app.config, **_request_overrides())
        run = execute_backup(backup_request, trigger='manual')
    except (TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    status_code = 201 if run.status == 'success' else 500
    return jsonify(run.to_dict()), status_code


@bp.route('/trigger', methods=['POST'])
def trigger_backup():
    """
    Queue a backup in the scheduler and return immediately.

    Returns:
        202 with the scheduler job ID
    """
    try:
        job_id = trigger_backup_now(_request_overrides())
    except (TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 409

    return jsonify({'message': 'Backup queued', 'job_id': job_id}), 202


@bp.route('/prune', methods=['POST'])
def prune():
    """
    Apply the configured retention policy to the backup directory.

    Returns:
        JSON with deleted paths; 500 with partial results if deletions failed
    """
    try:
        deleted = prune_backups()
    except PruneFailed as e:
        return jsonify({
            'error': str(e),
            'deleted': e.deleted,
            'failures': e.failures
        }), 500

    return jsonify({'deleted': deleted, 'count': len(deleted)})
