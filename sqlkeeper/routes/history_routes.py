"""
Backup history routes - View backup execution history.
"""

from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request

from sqlkeeper import db
from sqlkeeper.models import BackupRun


bp = Blueprint('history', __name__, url_prefix='/api/history')

STATUSES = ('running', 'success', 'failed')


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get backup history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/failed)
        - connection: Filter by connection name
        - days: Only show backups from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    status_filter = request.args.get('status')
    connection_filter = request.args.get('connection')
    days_filter = request.args.get('days', type=int)
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 200))
    offset = max(offset, 0)

    query = BackupRun.query

    if status_filter:
        if status_filter not in STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if connection_filter:
        query = query.filter(BackupRun.connection == connection_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupRun.started_at >= cutoff_date)

    total_count = query.count()

    records = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [record.to_dict() for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_history_detail(run_id):
    """
    Get a single backup run.

    Returns:
        JSON with the run record, its duration and logs
    """
    record = db.get_or_404(BackupRun, run_id)

    data = record.to_dict(include_logs=True)
    data['duration_seconds'] = None
    if record.completed_at:
        data['duration_seconds'] = int((record.completed_at - record.started_at).total_seconds())

    return jsonify(data)


@bp.route('/<int:run_id>/logs', methods=['GET'])
def get_history_logs(run_id):
    """
    Get the execution logs of a backup run, one entry per line.
    """
    record = db.get_or_404(BackupRun, run_id)

    return jsonify({
        'id': record.id,
        'status': record.status,
        'logs': record.logs.split('\n') if record.logs else []
    })
