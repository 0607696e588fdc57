import threading
from datetime import timedelta
from types import SimpleNamespace

from signal_loader import db
from signal_loader.jobs.common.lock_manager import LockManager
from signal_loader.models import Lease

from conftest import NOW


def _manager(clock, holder='replica-1'):
    return LockManager(db.session, holder, clock=clock)


def test_acquire_and_release(make_job, clock):
    job = make_job()
    manager = _manager(clock)

    lease = manager.try_acquire(job)

    assert lease is not None
    assert lease.job_code == 'job_a'
    assert lease.holder == 'replica-1'
    assert lease.acquired_at == NOW
    assert manager.count_active('job_a') == 1

    assert manager.release(lease) is True
    assert manager.count_active('job_a') == 0


def test_release_is_idempotent(make_job, clock):
    job = make_job()
    manager = _manager(clock)
    lease = manager.try_acquire(job)

    assert manager.release(lease.id) is True
    assert manager.release(lease.id) is False
    assert manager.release('no-such-lease') is False
    assert manager.release(None) is False


def test_ceiling_is_enforced(make_job, clock):
    job = make_job(max_parallel_executions=2)
    first = _manager(clock, 'replica-1')
    second = _manager(clock, 'replica-2')

    assert first.try_acquire(job) is not None
    assert second.try_acquire(job) is not None
    assert first.try_acquire(job) is None
    assert first.count_active('job_a') == 2


def test_ceiling_is_read_from_the_job_row(make_job, clock):
    job = make_job(max_parallel_executions=1)
    assert job.code == 'job_a'
    db.session.expunge(job)
    # A stale in-memory value must not widen the ceiling
    job.max_parallel_executions = 5
    manager = _manager(clock)

    assert manager.try_acquire(job) is not None
    assert manager.try_acquire(job) is None


def test_missing_job_is_not_leased(app, clock):
    manager = _manager(clock)
    assert manager.try_acquire(SimpleNamespace(code='ghost')) is None
    assert manager.count_active() == 0


def test_global_cap(make_job, clock):
    job_a = make_job('job_a', max_parallel_executions=3)
    job_b = make_job('job_b', max_parallel_executions=3)
    manager = _manager(clock)

    assert manager.try_acquire(job_a, max_global=2) is not None
    assert manager.try_acquire(job_b, max_global=2) is not None
    assert manager.try_acquire(job_a, max_global=2) is None
    assert manager.try_acquire(job_a) is not None


def test_concurrent_acquirers_never_exceed_ceiling(app, make_job, clock):
    job = make_job(max_parallel_executions=2)
    assert job.code == 'job_a'
    barrier = threading.Barrier(3)
    results = []
    results_lock = threading.Lock()

    def contend(holder):
        with app.app_context():
            manager = LockManager(db.session, holder, clock=clock)
            barrier.wait()
            lease = manager.try_acquire(job)
            with results_lock:
                results.append(lease.id if lease is not None else None)
            db.session.remove()

    threads = [threading.Thread(target=contend, args=(f'replica-{n}',)) for n in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(results) == 3
    assert len([lease_id for lease_id in results if lease_id]) == 2
    assert _manager(clock).count_active('job_a') == 2


def test_stale_leases_are_reaped(make_job, clock):
    job = make_job()
    manager = _manager(clock)
    lease = manager.try_acquire(job)
    lease_id = lease.id

    clock.advance(minutes=30)
    assert manager.cleanup_stale_leases(3600) == 0

    clock.advance(hours=3)
    assert manager.cleanup_stale_leases(3600) == 1
    assert manager.count_active() == 0

    db.session.expire_all()
    assert db.session.get(Lease, lease_id).released_at == NOW + timedelta(hours=3, minutes=30)
    assert manager.try_acquire(job) is not None


def test_purge_released_leases(make_job, clock):
    job = make_job(max_parallel_executions=2)
    manager = _manager(clock)
    old_id = manager.try_acquire(job).id
    manager.release(old_id)
    kept_id = manager.try_acquire(job).id

    clock.advance(days=8)
    assert manager.purge_released_leases(7) == 1

    db.session.expire_all()
    assert db.session.get(Lease, old_id) is None
    assert db.session.get(Lease, kept_id) is not None


def test_active_leases_lists_unreleased_only(make_job, clock):
    job = make_job(max_parallel_executions=2)
    manager = _manager(clock)
    first = manager.try_acquire(job)
    clock.advance(seconds=1)
    second = manager.try_acquire(job)
    manager.release(first)

    assert [lease.id for lease in manager.active_leases('job_a')] == [second.id]
    assert manager.active_leases('job_b') == []
