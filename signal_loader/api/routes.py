# signal_loader/api/routes.py
import os
from datetime import datetime, timedelta, timezone
from flask import jsonify, request, current_app
from signal_loader import db, get_loader_scheduler
from signal_loader.api import bp
from signal_loader.models import BackfillJob, Job, Lease, ExecutionRecord
from signal_loader.jobs.exceptions import (BackfillNotFoundError, BackfillStateError, JobNotFoundError,
                                           ValidationError)
from signal_loader.jobs.utils.logging_config import LOG_FILE_NAME


def _iso(value):
    return value.isoformat() if value else None


def _job_to_dict(job):
    return {
        'id': job.id,
        'code': job.code,
        'source_ref': job.source_ref,
        'status': job.status,
        'enabled': job.enabled,
        'last_watermark': _iso(job.last_watermark),
        'failed_since': _iso(job.failed_since),
        'consecutive_empty_runs': job.consecutive_empty_runs,
        'min_interval_seconds': job.min_interval_seconds,
        'max_interval_seconds': job.max_interval_seconds,
        'max_query_period_seconds': job.max_query_period_seconds,
        'max_parallel_executions': job.max_parallel_executions,
        'source_tz_offset_hours': job.source_tz_offset_hours,
        'purge_strategy': job.purge_strategy,
    }


def _execution_to_dict(exe):
    return {
        'id': exe.id,
        'job_code': exe.job_code,
        'outcome': exe.outcome,
        'holder': exe.holder,
        'lease_id': exe.lease_id,
        'start_time': _iso(exe.start_time),
        'end_time': _iso(exe.end_time),
        'duration_seconds': exe.duration_seconds,
        'requested_from': _iso(exe.requested_from),
        'requested_to': _iso(exe.requested_to),
        'actual_from': _iso(exe.actual_from),
        'actual_to': _iso(exe.actual_to),
        'rows_fetched': exe.rows_fetched,
        'rows_ingested': exe.rows_ingested,
        'rows_purged': exe.rows_purged,
        'rows_skipped': exe.rows_skipped,
        'empty_reason': exe.empty_reason,
        'error_message': exe.error_message,
        'execution_metadata': exe.execution_metadata,
    }


def _lease_to_dict(lease):
    return {
        'id': lease.id,
        'job_code': lease.job_code,
        'holder': lease.holder,
        'acquired_at': _iso(lease.acquired_at),
        'released_at': _iso(lease.released_at),
        'execution_record_id': lease.execution_record_id,
    }


# Error handlers
@bp.errorhandler(404)
def not_found_error(error):
    return jsonify({'error': 'Not found'}), 404


@bp.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    return jsonify({'error': 'Internal server error'}), 500


@bp.route('/jobs', methods=['GET'])
def get_jobs():
    """List all jobs with their runtime state"""
    jobs = Job.query.order_by(Job.code).all()
    return jsonify([_job_to_dict(job) for job in jobs])


@bp.route('/jobs/<code>', methods=['GET'])
def get_job(code):
    job = Job.query.filter_by(code=code).first_or_404()
    data = _job_to_dict(job)
    data['active_leases'] = Lease.query.filter_by(job_code=code, released_at=None).count()
    return jsonify(data)


@bp.route('/jobs/<code>/executions', methods=['GET'])
def get_job_executions(code):
    """Get execution history for a job, newest first"""
    Job.query.filter_by(code=code).first_or_404()
    limit = request.args.get('limit', type=int, default=50)
    if limit < 1:
        return jsonify({'error': 'limit must be positive'}), 400

    executions = ExecutionRecord.query.filter_by(job_code=code) \
        .order_by(ExecutionRecord.start_time.desc(), ExecutionRecord.id.desc()) \
        .limit(limit).all()
    return jsonify([_execution_to_dict(exe) for exe in executions])


@bp.route('/jobs/<code>/logs', methods=['GET'])
def get_job_logs(code):
    """Get log entries mentioning a job from the execution log file"""
    Job.query.filter_by(code=code).first_or_404()

    hours = request.args.get('hours', type=int, default=24)
    log_level = request.args.get('level', type=str)

    log_folder = current_app.config.get('LOG_FOLDER')
    if not log_folder:
        return jsonify({'error': 'File logging is disabled'}), 404

    log_file = os.path.join(log_folder, LOG_FILE_NAME)
    if not os.path.exists(log_file):
        current_app.logger.error(f"Log file not found at: {log_file}")
        return jsonify({'error': 'Log file not found'}), 404

    # asctime is written in local time
    time_threshold = datetime.now() - timedelta(hours=hours)

    logs = []
    current_log_entry = None
    with open(log_file, 'r', encoding='utf-8') as file:
        for line in file:
            line = line.rstrip('\n')
            if not line.strip():
                continue

            try:
                timestamp = datetime.strptime(line[:19], '%Y-%m-%d %H:%M:%S')
            except ValueError:
                # Continuation line (traceback) of the previous entry
                if current_log_entry:
                    current_log_entry['message'] += '\n' + line
                continue

            if current_log_entry:
                logs.append(current_log_entry)
                current_log_entry = None

            parts = line[19:].split(' - ', 3)
            if len(parts) < 4:
                continue
            _, logger_name, level, message = parts
            if code in message:
                current_log_entry = {
                    'timestamp': timestamp.isoformat(),
                    'logger': logger_name,
                    'level': level,
                    'message': message,
                }

    if current_log_entry:
        logs.append(current_log_entry)

    logs = [log for log in logs if datetime.fromisoformat(log['timestamp']) >= time_threshold]
    if log_level:
        logs = [log for log in logs if log['level'].upper() == log_level.upper()]

    # Newest first
    logs.sort(key=lambda x: x['timestamp'], reverse=True)
    return jsonify(logs)


@bp.route('/executions/<int:id>', methods=['GET'])
def get_execution(id):
    execution = db.get_or_404(ExecutionRecord, id)
    data = _execution_to_dict(execution)
    data['error_detail'] = execution.error_detail
    return jsonify(data)


@bp.route('/leases', methods=['GET'])
def get_leases():
    """List leases; ?active=true restricts to unreleased ones"""
    query = Lease.query
    if request.args.get('active', '').lower() in ('1', 'true', 'yes'):
        query = query.filter(Lease.released_at.is_(None))
    job_code = request.args.get('job_code')
    if job_code:
        query = query.filter_by(job_code=job_code)
    leases = query.order_by(Lease.acquired_at.desc()).limit(500).all()
    return jsonify([_lease_to_dict(lease) for lease in leases])


@bp.route('/scheduler/tunables', methods=['GET'])
def get_tunables():
    loader_scheduler = get_loader_scheduler()
    return jsonify({
        'holder': loader_scheduler.holder,
        'tunables': loader_scheduler.tunables().to_dict(),
    })


@bp.route('/scheduler/recover', methods=['POST'])
def force_recovery():
    """Reset every enabled FAILED job to IDLE now"""
    try:
        recovered = get_loader_scheduler().force_recovery()
        return jsonify({'recovered': recovered})
    except Exception as e:
        current_app.logger.error(f"Forced recovery failed: {e}")
        return jsonify({'error': f'Failed to recover jobs: {str(e)}'}), 500


@bp.route('/scheduler/cleanup-leases', methods=['POST'])
def force_lease_cleanup():
    reaped = get_loader_scheduler().force_lease_cleanup()
    return jsonify({'reaped': reaped})


@bp.route('/scheduler/tick', methods=['POST'])
def run_tick():
    """Run one scheduling cycle synchronously"""
    try:
        summary = get_loader_scheduler().tick()
        return jsonify(summary.to_dict())
    except Exception as e:
        current_app.logger.error(f"Manual tick failed: {e}")
        return jsonify({'error': f'Tick failed: {str(e)}'}), 500


@bp.route('/sources/<ref>/ping', methods=['POST'])
def ping_source(ref):
    """Check that a source database is reachable"""
    result = get_loader_scheduler().source_manager.ping(ref)
    return jsonify(result), (200 if result['ok'] else 503)


def _backfill_to_dict(backfill):
    return {
        'id': backfill.id,
        'job_code': backfill.job_code,
        'from_time': _iso(backfill.from_time),
        'to_time': _iso(backfill.to_time),
        'purge_strategy': backfill.purge_strategy,
        'status': backfill.status,
        'requested_by': backfill.requested_by,
        'requested_at': _iso(backfill.requested_at),
        'holder': backfill.holder,
        'start_time': _iso(backfill.start_time),
        'end_time': _iso(backfill.end_time),
        'duration_seconds': backfill.duration_seconds,
        'rows_fetched': backfill.rows_fetched,
        'rows_ingested': backfill.rows_ingested,
        'rows_purged': backfill.rows_purged,
        'error_message': backfill.error_message,
    }


def _parse_utc(value):
    """ISO 8601 text to a naive UTC datetime; None when missing or unparsable"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@bp.route('/backfills', methods=['GET'])
def get_backfills():
    """List backfills, newest first; filter with ?job_code= and ?status="""
    limit = request.args.get('limit', type=int, default=50)
    if limit < 1:
        return jsonify({'error': 'limit must be positive'}), 400
    service = get_loader_scheduler().backfill_service(db.session)
    backfills = service.list_backfills(job_code=request.args.get('job_code'),
                                       status=request.args.get('status'), limit=limit)
    return jsonify([_backfill_to_dict(backfill) for backfill in backfills])


@bp.route('/backfills', methods=['POST'])
def submit_backfill():
    data = request.get_json(silent=True) or {}
    from_time = _parse_utc(data.get('from_time'))
    to_time = _parse_utc(data.get('to_time'))
    if from_time is None or to_time is None:
        return jsonify({'error': 'from_time and to_time must be ISO 8601 timestamps'}), 400

    service = get_loader_scheduler().backfill_service(db.session)
    try:
        backfill = service.submit(data.get('job_code'), from_time, to_time,
                                  purge_strategy=data.get('purge_strategy'),
                                  requested_by=data.get('requested_by') or 'api')
    except JobNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except ValidationError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify(_backfill_to_dict(backfill)), 201


@bp.route('/backfills/<int:id>', methods=['GET'])
def get_backfill(id):
    backfill = db.get_or_404(BackfillJob, id)
    data = _backfill_to_dict(backfill)
    data['error_detail'] = backfill.error_detail
    return jsonify(data)


@bp.route('/backfills/<int:id>/execute', methods=['POST'])
def execute_backfill(id):
    """Run a PENDING backfill synchronously"""
    service = get_loader_scheduler().backfill_service(db.session)
    try:
        backfill = service.execute(id)
    except BackfillNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except BackfillStateError as e:
        return jsonify({'error': str(e)}), 409
    return jsonify(_backfill_to_dict(backfill))


@bp.route('/backfills/<int:id>/cancel', methods=['POST'])
def cancel_backfill(id):
    service = get_loader_scheduler().backfill_service(db.session)
    try:
        backfill = service.cancel(id)
    except BackfillNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except BackfillStateError as e:
        return jsonify({'error': str(e)}), 409
    return jsonify(_backfill_to_dict(backfill))


@bp.route('/scheduler/gap-scan', methods=['POST'])
def run_gap_scan():
    """Scan recent history for gaps and queue backfills now"""
    summary = get_loader_scheduler().run_gap_scan()
    return jsonify(summary.to_dict())
