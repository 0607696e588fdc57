import json

import click
from flask.cli import AppGroup

from signal_loader import db, get_loader_scheduler
from signal_loader.jobs.exceptions import JobNotFoundError, LoaderError
from signal_loader.jobs.executor import ExecutionStatus
from signal_loader.models import BackfillStatus, Job, PurgeStrategy

loader_cli = AppGroup('loader', help='Loader operator commands')


@loader_cli.command('tick')
def tick_cmd():
    """Run one scheduling cycle now"""
    summary = get_loader_scheduler().tick()
    click.echo(json.dumps(summary.to_dict()))


@loader_cli.command('recover')
def recover_cmd():
    """Reset every enabled FAILED job to IDLE"""
    recovered = get_loader_scheduler().force_recovery()
    click.echo(f"Recovered {recovered} job(s)")


@loader_cli.command('cleanup-leases')
def cleanup_leases_cmd():
    """Release stale leases left by dead replicas"""
    reaped = get_loader_scheduler().force_lease_cleanup()
    click.echo(f"Reaped {reaped} stale lease(s)")


@loader_cli.command('run')
@click.argument('code')
def run_cmd(code):
    """Run one window of a job immediately, under a lease"""
    loader_scheduler = get_loader_scheduler()
    lock_manager = loader_scheduler.lock_manager_factory(db.session)
    tunables = loader_scheduler.tunables_provider.tunables()

    job = Job.query.filter_by(code=code).first()
    if job is None:
        click.echo(str(JobNotFoundError(code)))
        raise SystemExit(1)

    lease = lock_manager.try_acquire(job, max_global=tunables.max_global_leases)
    if lease is None:
        click.echo(f"Job {code} is at its parallel execution limit, not started")
        raise SystemExit(2)

    try:
        result = loader_scheduler.executor_factory(db.session, lock_manager).run(job, lease=lease)
    finally:
        lock_manager.release(lease)

    click.echo(f"{result.status} job={code} fetched={result.rows_fetched} ingested={result.rows_ingested}"
               + (f" error={result.error}" if result.error else ''))
    if result.status == ExecutionStatus.FAILED:
        raise SystemExit(1)


@loader_cli.command('ping')
@click.argument('ref')
def ping_cmd(ref):
    """Check that a source database is reachable"""
    result = get_loader_scheduler().source_manager.ping(ref)
    if result['ok']:
        click.echo(f"Source {ref} OK ({result['latency_ms']} ms)")
    else:
        click.echo(f"Source {ref} unreachable: {result['error']}")
        raise SystemExit(1)


@loader_cli.command('jobs')
def jobs_cmd():
    """List jobs and their state"""
    for job in Job.query.order_by(Job.code).all():
        click.echo(f"{job.code:<30} {job.status:<8} enabled={job.enabled} watermark={job.last_watermark}")


@loader_cli.command('gap-scan')
def gap_scan_cmd():
    """Scan recent execution history for gaps and queue backfills"""
    summary = get_loader_scheduler().run_gap_scan()
    click.echo(json.dumps(summary.to_dict()))


@loader_cli.group('backfill')
def backfill_cli():
    """Reload explicit historical windows"""


@backfill_cli.command('submit')
@click.argument('code')
@click.argument('from_time', type=click.DateTime())
@click.argument('to_time', type=click.DateTime())
@click.option('--strategy', type=click.Choice(PurgeStrategy.ALL), default=PurgeStrategy.PURGE_AND_RELOAD)
@click.option('--requested-by', default='cli')
def backfill_submit_cmd(code, from_time, to_time, strategy, requested_by):
    """Queue a backfill of CODE over [FROM_TIME, TO_TIME), UTC"""
    service = get_loader_scheduler().backfill_service(db.session)
    try:
        backfill = service.submit(code, from_time, to_time, purge_strategy=strategy, requested_by=requested_by)
    except LoaderError as e:
        click.echo(str(e))
        raise SystemExit(1)
    click.echo(f"Submitted backfill {backfill.id} job={code} [{from_time}, {to_time}) strategy={strategy}")


@backfill_cli.command('run')
@click.argument('backfill_id', type=int, required=False)
def backfill_run_cmd(backfill_id):
    """Run one PENDING backfill, or all of them when no id is given"""
    service = get_loader_scheduler().backfill_service(db.session)
    if backfill_id is None:
        executed = service.execute_pending()
    else:
        try:
            executed = [service.execute(backfill_id)]
        except LoaderError as e:
            click.echo(str(e))
            raise SystemExit(1)

    for backfill in executed:
        click.echo(f"{backfill.status} backfill={backfill.id} job={backfill.job_code} "
                   f"ingested={backfill.rows_ingested} purged={backfill.rows_purged}"
                   + (f" error={backfill.error_message}" if backfill.error_message else ''))
    if any(backfill.status == BackfillStatus.FAILED for backfill in executed):
        raise SystemExit(1)


@backfill_cli.command('cancel')
@click.argument('backfill_id', type=int)
def backfill_cancel_cmd(backfill_id):
    service = get_loader_scheduler().backfill_service(db.session)
    try:
        service.cancel(backfill_id)
    except LoaderError as e:
        click.echo(str(e))
        raise SystemExit(1)
    click.echo(f"Cancelled backfill {backfill_id}")


@backfill_cli.command('list')
@click.option('--job', 'job_code')
@click.option('--status', type=click.Choice(BackfillStatus.ALL))
@click.option('--limit', type=int, default=50)
def backfill_list_cmd(job_code, status, limit):
    """List backfills, newest first"""
    service = get_loader_scheduler().backfill_service(db.session)
    for backfill in service.list_backfills(job_code=job_code, status=status, limit=limit):
        click.echo(f"{backfill.id:<6} {backfill.job_code:<30} {backfill.status:<9} "
                   f"[{backfill.from_time}, {backfill.to_time}) by={backfill.requested_by}")
