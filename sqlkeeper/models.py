from datetime import datetime

from sqlkeeper import db


class BackupRun(db.Model):
    """Backup execution history and logs"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    connection = db.Column(db.String(100), nullable=False)
    trigger = db.Column(db.String(20), nullable=False, default='manual')  # manual, scheduled, cli
    status = db.Column(db.String(20), nullable=False)  # running, success, failed
    state = db.Column(db.String(30), nullable=False, default='idle')  # last BackupState reached
    failed_stage = db.Column(db.String(20))  # connection, tables, dump, compress, publish
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    artifact_path = db.Column(db.String(500))
    file_size_bytes = db.Column(db.BigInteger)
    storage = db.Column(db.String(50), nullable=False, default='local')
    published_to = db.Column(db.String(500))
    pruned_count = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    warnings = db.Column(db.Text)  # Newline separated
    logs = db.Column(db.Text)  # Detailed execution logs

    def to_dict(self, include_logs=False):
        data = {
            'id': self.id,
            'connection': self.connection,
            'trigger': self.trigger,
            'status': self.status,
            'state': self.state,
            'failed_stage': self.failed_stage,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'artifact_path': self.artifact_path,
            'file_size_bytes': self.file_size_bytes,
            'file_size_mb': round(self.file_size_bytes / 1024 / 1024, 2) if self.file_size_bytes else None,
            'storage': self.storage,
            'published_to': self.published_to,
            'pruned_count': self.pruned_count,
            'error_message': self.error_message,
            'warnings': self.warnings.split('\n') if self.warnings else [],
            'has_logs': bool(self.logs)
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRun {self.id} connection={self.connection} status={self.status}>'
