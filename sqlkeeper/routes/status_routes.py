"""
Status routes - Connection, dump utility and scheduler health.
"""

from flask import Blueprint, current_app, jsonify

from sqlkeeper.backup.drivers import create_driver
from sqlkeeper.backup.errors import ConnectionFailed
from sqlkeeper.backup.jobs import load_connection_profile
from sqlkeeper.models import BackupRun
from sqlkeeper.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('status', __name__, url_prefix='/api')


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Report whether a backup could run right now.

    Returns:
        JSON with:
        - connection: non-secret connection details and reachability
        - dump_binary: dump utility name and availability
        - database_size_mb / size_warning: current size against DB_SIZE_WARNING_MB
        - scheduler: running state and scheduled jobs
        - last_run: most recent backup run
    """
    config = current_app.config

    try:
        profile = load_connection_profile(config)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    driver = create_driver(profile, binaries=config.get('DUMP_BINARIES'))
    connection = {'name': profile.name, 'details': profile.describe(), 'reachable': False, 'error': None}
    database_size = None

    try:
        driver.test_connection()
        connection['reachable'] = True
        database_size = driver.database_size()
    except ConnectionFailed as e:
        connection['error'] = str(e)
    finally:
        driver.dispose()

    size_mb = round(database_size / 1024 / 1024, 2) if database_size is not None else None
    warning_mb = config.get('DB_SIZE_WARNING_MB')

    last_run = BackupRun.query.order_by(BackupRun.started_at.desc(), BackupRun.id.desc()).first()

    return jsonify({
        'connection': connection,
        'dump_binary': {
            'name': driver.binary,
            'available': driver.binary_available()
        },
        'database_size_mb': size_mb,
        'size_warning': bool(warning_mb and size_mb is not None and size_mb > warning_mb),
        'scheduler': {
            'status': 'running' if is_scheduler_running() else 'stopped',
            'jobs': get_scheduled_jobs()
        },
        'last_run': last_run.to_dict() if last_run else None
    })
