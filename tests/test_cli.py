import json
from datetime import timedelta

import pytest

from signal_loader import db
from signal_loader.models import JobStatus, Lease

from conftest import NOW, fresh_job

WATERMARK = NOW - timedelta(hours=5)


@pytest.fixture()
def runner(app):
    return app.test_cli_runner()


def test_tick_prints_summary(runner, make_job, source):
    make_job(last_watermark=WATERMARK)
    source.rows['sales'] = [{'ts': 1706349600, 'cnt': 3}]

    result = runner.invoke(args=['loader', 'tick'])

    assert result.exit_code == 0
    summary = json.loads(result.output)
    assert summary['executed'] == 1


def test_run_job(runner, make_job, source):
    make_job(last_watermark=WATERMARK)
    source.rows['sales'] = [{'ts': 1706349600, 'cnt': 3}]

    result = runner.invoke(args=['loader', 'run', 'job_a'])

    assert result.exit_code == 0
    assert 'SUCCESS job=job_a fetched=1 ingested=1' in result.output
    assert fresh_job('job_a').last_watermark == NOW
    assert Lease.query.filter(Lease.released_at.is_(None)).count() == 0


def test_run_unknown_job(runner, app):
    result = runner.invoke(args=['loader', 'run', 'missing'])

    assert result.exit_code == 1
    assert 'Job not found: missing' in result.output


def test_run_failing_job(runner, make_job, source):
    make_job(last_watermark=WATERMARK, source_ref='broken')
    source.errors['broken'] = RuntimeError('socket closed')

    result = runner.invoke(args=['loader', 'run', 'job_a'])

    assert result.exit_code == 1
    assert 'FAILED job=job_a' in result.output
    assert 'error=socket closed' in result.output


def test_run_job_at_limit(runner, make_job):
    make_job(last_watermark=WATERMARK)
    db.session.add(Lease(id='busy', job_code='job_a', holder='other-replica', acquired_at=NOW))
    db.session.commit()

    result = runner.invoke(args=['loader', 'run', 'job_a'])

    assert result.exit_code == 2
    assert 'parallel execution limit' in result.output


def test_recover(runner, make_job):
    make_job(status=JobStatus.FAILED, failed_since=NOW)

    result = runner.invoke(args=['loader', 'recover'])

    assert 'Recovered 1 job(s)' in result.output


def test_cleanup_leases(runner, make_job):
    make_job()
    db.session.add(Lease(id='stale', job_code='job_a', holder='dead', acquired_at=NOW - timedelta(hours=3)))
    db.session.commit()

    result = runner.invoke(args=['loader', 'cleanup-leases'])

    assert 'Reaped 1 stale lease(s)' in result.output


def test_ping(runner, source):
    source.rows['sales'] = []

    assert runner.invoke(args=['loader', 'ping', 'sales']).exit_code == 0
    failed = runner.invoke(args=['loader', 'ping', 'missing'])
    assert failed.exit_code == 1
    assert 'unreachable' in failed.output


def test_jobs_listing(runner, make_job):
    make_job('job_a')
    make_job('job_b', status=JobStatus.FAILED)

    result = runner.invoke(args=['loader', 'jobs'])

    lines = result.output.strip().splitlines()
    assert len(lines) == 2
    assert lines[0].startswith('job_a')
    assert 'FAILED' in lines[1]


def test_backfill_submit_run_and_list(runner, make_job, source):
    make_job(last_watermark=NOW)
    source.rows['sales'] = [{'ts': 1706349600, 'cnt': 3}]

    submitted = runner.invoke(args=['loader', 'backfill', 'submit', 'job_a',
                                    '2024-01-27T10:00:00', '2024-01-27T11:00:00'])
    assert submitted.exit_code == 0
    assert 'Submitted backfill 1 job=job_a' in submitted.output

    ran = runner.invoke(args=['loader', 'backfill', 'run'])
    assert ran.exit_code == 0
    assert 'SUCCESS backfill=1 job=job_a ingested=1 purged=0' in ran.output

    listed = runner.invoke(args=['loader', 'backfill', 'list', '--status', 'SUCCESS'])
    [line] = listed.output.strip().splitlines()
    assert 'by=cli' in line
    assert fresh_job('job_a').last_watermark == NOW


def test_backfill_errors_exit_nonzero(runner, make_job):
    make_job()

    unknown = runner.invoke(args=['loader', 'backfill', 'submit', 'missing',
                                  '2024-01-27T10:00:00', '2024-01-27T11:00:00'])
    assert unknown.exit_code == 1
    assert 'Job not found' in unknown.output
    assert runner.invoke(args=['loader', 'backfill', 'run', '999']).exit_code == 1


def test_backfill_cancel(runner, make_job):
    make_job()
    runner.invoke(args=['loader', 'backfill', 'submit', 'job_a', '2024-01-27T10:00:00', '2024-01-27T11:00:00'])

    result = runner.invoke(args=['loader', 'backfill', 'cancel', '1'])

    assert 'Cancelled backfill 1' in result.output
    assert runner.invoke(args=['loader', 'backfill', 'cancel', '1']).exit_code == 1


def test_gap_scan_prints_summary(runner, make_job):
    make_job(last_watermark=NOW)

    result = runner.invoke(args=['loader', 'gap-scan'])

    assert result.exit_code == 0
    assert json.loads(result.output)['jobs_scanned'] == 1
