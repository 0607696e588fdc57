from datetime import timedelta

import pytest
from sqlalchemy import update

from signal_loader import db
from signal_loader.jobs.backfill import BackfillService
from signal_loader.jobs.exceptions import (BackfillNotFoundError, BackfillStateError, InvalidArgument,
                                           JobNotFoundError, SourceQueryError)
from signal_loader.models import BackfillJob, BackfillStatus, JobStatus, PurgeStrategy, SignalRecord

from conftest import NOW, fresh_job

TS_10 = 1706349600  # 2024-01-27 10:00:00 UTC
FROM = NOW - timedelta(hours=5)
TO = NOW - timedelta(hours=4)


@pytest.fixture()
def service(executor, clock):
    return BackfillService(db.session, executor, holder='test-replica', clock=clock)


def _signals(code='job_a'):
    return SignalRecord.query.filter_by(job_code=code).order_by(SignalRecord.load_timestamp).all()


def _fresh_backfill(backfill_id):
    db.session.expire_all()
    return db.session.get(BackfillJob, backfill_id)


def test_submit_queues_pending(make_job, service):
    make_job()

    backfill = service.submit('job_a', FROM, TO, requested_by='ops')

    assert backfill.status == BackfillStatus.PENDING
    assert backfill.purge_strategy == PurgeStrategy.PURGE_AND_RELOAD
    assert backfill.requested_at == NOW
    assert backfill.requested_by == 'ops'
    assert service.count_active('job_a') == 1
    assert service.count_active('job_b') == 0


def test_submit_rejects_bad_requests(make_job, service):
    make_job()

    with pytest.raises(JobNotFoundError):
        service.submit('missing', FROM, TO)
    with pytest.raises(InvalidArgument):
        service.submit('  ', FROM, TO)
    with pytest.raises(InvalidArgument):
        service.submit('job_a', None, TO)
    with pytest.raises(InvalidArgument):
        service.submit('job_a', TO, FROM)
    with pytest.raises(InvalidArgument):
        service.submit('job_a', FROM, NOW + timedelta(minutes=1))
    with pytest.raises(InvalidArgument):
        service.submit('job_a', FROM, TO, purge_strategy='TRUNCATE')

    assert BackfillJob.query.count() == 0


def test_execute_reloads_window(make_job, service, source):
    make_job(last_watermark=NOW, purge_strategy=PurgeStrategy.FAIL_ON_DUPLICATE)
    db.session.add(SignalRecord(job_code='job_a', load_timestamp=TS_10, segment_key='eu'))
    db.session.commit()
    source.rows['sales'] = [{'ts': TS_10, 'seg1': 'eu', 'cnt': 5}, {'ts': TS_10 + 1800, 'seg1': 'eu', 'cnt': 2}]
    backfill_id = service.submit('job_a', FROM, TO).id

    service.execute(backfill_id)

    backfill = _fresh_backfill(backfill_id)
    assert backfill.status == BackfillStatus.SUCCESS
    assert backfill.holder == 'test-replica'
    assert backfill.start_time == NOW
    assert backfill.duration_seconds == 0
    assert backfill.rows_fetched == 2
    assert backfill.rows_ingested == 2
    assert backfill.rows_purged == 1
    assert [s.rec_count for s in _signals()] == [5, 2]

    job = fresh_job('job_a')
    assert job.last_watermark == NOW
    assert job.status == JobStatus.IDLE


def test_execute_failure_is_recorded_on_the_backfill(make_job, service, source):
    make_job(last_watermark=NOW)
    source.errors['sales'] = SourceQueryError('sales', 'Lost connection during query')
    backfill_id = service.submit('job_a', FROM, TO).id

    service.execute(backfill_id)

    backfill = _fresh_backfill(backfill_id)
    assert backfill.status == BackfillStatus.FAILED
    assert "Source 'sales': Lost connection during query" == backfill.error_message
    assert 'Traceback' in backfill.error_detail
    assert backfill.end_time == NOW
    job = fresh_job('job_a')
    assert job.status == JobStatus.IDLE
    assert job.failed_since is None


def test_only_pending_backfills_run(make_job, service, source):
    make_job(last_watermark=NOW)
    backfill_id = service.submit('job_a', FROM, TO).id
    service.execute(backfill_id)

    with pytest.raises(BackfillStateError) as exc_info:
        service.execute(backfill_id)
    assert exc_info.value.status == BackfillStatus.SUCCESS
    assert len(source.queries) == 1

    with pytest.raises(BackfillNotFoundError):
        service.execute(999)


def test_backfill_claimed_elsewhere_is_not_run(make_job, service, source):
    make_job(last_watermark=NOW)
    backfill_id = service.submit('job_a', FROM, TO).id
    db.session.execute(update(BackfillJob).where(BackfillJob.id == backfill_id)
                       .values(status=BackfillStatus.RUNNING, holder='other-replica'))
    db.session.commit()

    with pytest.raises(BackfillStateError):
        service.execute(backfill_id)

    assert source.queries == []
    assert _fresh_backfill(backfill_id).holder == 'other-replica'


def test_cancel(make_job, service, source):
    make_job(last_watermark=NOW)
    backfill_id = service.submit('job_a', FROM, TO).id

    assert service.cancel(backfill_id).status == BackfillStatus.CANCELLED

    backfill = _fresh_backfill(backfill_id)
    assert backfill.end_time == NOW
    with pytest.raises(BackfillStateError):
        service.execute(backfill_id)
    with pytest.raises(BackfillStateError):
        service.cancel(backfill_id)
    with pytest.raises(BackfillNotFoundError):
        service.cancel(999)
    assert source.queries == []


def test_execute_pending_runs_oldest_first(make_job, service, source, clock):
    make_job(last_watermark=NOW)
    first_id = service.submit('job_a', FROM, TO).id
    clock.advance(minutes=1)
    second_id = service.submit('job_a', TO, TO + timedelta(hours=1)).id
    cancelled_id = service.submit('job_a', FROM, TO).id
    service.cancel(cancelled_id)

    assert [b.id for b in service.execute_pending(limit=1)] == [first_id]
    assert [b.id for b in service.execute_pending()] == [second_id]
    assert "ts >= '2024-01-27T10:00:00Z'" in source.queries[0][1]
    assert "ts >= '2024-01-27T11:00:00Z'" in source.queries[1][1]
    assert service.execute_pending() == []


def test_fail_abandoned(make_job, service):
    make_job()
    for backfill_id, started in ((1, NOW - timedelta(hours=3)), (2, NOW - timedelta(minutes=10))):
        db.session.add(BackfillJob(id=backfill_id, job_code='job_a', from_time=FROM, to_time=TO,
                                   status=BackfillStatus.RUNNING, holder='dead-replica', start_time=started,
                                   requested_at=started))
    db.session.commit()

    assert service.fail_abandoned(7200) == 1

    abandoned = _fresh_backfill(1)
    assert abandoned.status == BackfillStatus.FAILED
    assert abandoned.error_message == 'Backfill abandoned: holder dead-replica presumed dead'
    assert _fresh_backfill(2).status == BackfillStatus.RUNNING


def test_list_and_window_lookup(make_job, service, clock):
    make_job('job_a')
    make_job('job_b')
    older_id = service.submit('job_a', FROM, TO).id
    clock.advance(minutes=1)
    newer_id = service.submit('job_a', TO, TO + timedelta(hours=1)).id
    service.submit('job_b', FROM, TO)
    service.cancel(newer_id)

    assert [b.id for b in service.list_backfills(job_code='job_a')] == [newer_id, older_id]
    assert [b.id for b in service.list_backfills(status=BackfillStatus.CANCELLED)] == [newer_id]
    assert len(service.list_backfills(limit=1)) == 1

    assert service.exists_for_window('job_a', FROM, TO) is True
    assert service.exists_for_window('job_a', TO, TO + timedelta(hours=1)) is False
    assert service.count_active() == 2


def test_scheduler_runs_pending_backfills(make_job, loader_scheduler, source):
    make_job(last_watermark=NOW)
    source.rows['sales'] = [{'ts': TS_10, 'seg1': 'eu', 'cnt': 1}]
    backfill_id = loader_scheduler.backfill_service(db.session).submit('job_a', FROM, TO).id

    summary = loader_scheduler.run_pending_backfills()

    assert summary == {'abandoned': 0, 'executed': 1, 'succeeded': 1, 'failed': 0}
    assert _fresh_backfill(backfill_id).status == BackfillStatus.SUCCESS
    assert len(_signals()) == 1


def test_scheduler_backfill_cycle_swallows_errors(loader_scheduler, mocker):
    mocker.patch.object(loader_scheduler, 'backfill_service', side_effect=RuntimeError('wiring failed'))

    assert loader_scheduler.run_pending_backfills()['executed'] == 0
