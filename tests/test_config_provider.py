import pytest
from sqlalchemy.exc import OperationalError

from signal_loader import db
from signal_loader.jobs.common.config_provider import ConfigPlanProvider, Tunables
from signal_loader.jobs.exceptions import ValidationError
from signal_loader.models import ConfigPlan, ConfigValue


def _plan(name, values, active=False, parent='scheduler'):
    plan = ConfigPlan(parent=parent, plan_name=name, is_active=active)
    plan.values = [ConfigValue(config_key=key, config_value=value) for key, value in values.items()]
    db.session.add(plan)
    db.session.commit()
    return plan


def test_from_config_reads_loader_keys():
    tunables = Tunables.from_config({'LOADER_WORKER_POOL_SIZE': '8', 'LOADER_MAX_EMPTY_RUNS': None})

    assert tunables.worker_pool_size == 8
    assert tunables.max_empty_runs == Tunables().max_empty_runs
    assert tunables.to_dict()['recovery_threshold_seconds'] == 1200


def test_defaults_without_active_plan(app):
    _plan('night', {'worker_pool_size': '16'}, active=False)
    provider = ConfigPlanProvider(Tunables(worker_pool_size=3))

    assert provider.tunables() == Tunables(worker_pool_size=3)
    assert provider.raw_values() == {}


def test_active_plan_overrides_defaults(app):
    _plan('day', {'worker_pool_size': '6', 'tick_interval_seconds': ' 30 ', 'unrelated_key': 'x'}, active=True)
    provider = ConfigPlanProvider()

    tunables = provider.tunables()

    assert tunables.worker_pool_size == 6
    assert tunables.tick_interval_seconds == 30
    assert tunables.recovery_threshold_seconds == Tunables().recovery_threshold_seconds


def test_bad_values_are_ignored(app, caplog):
    _plan('broken', {'worker_pool_size': 'many', 'max_empty_runs': '0', 'max_global_leases': '50'}, active=True)

    tunables = ConfigPlanProvider().tunables()

    assert tunables.worker_pool_size == Tunables().worker_pool_size
    assert tunables.max_empty_runs == Tunables().max_empty_runs
    assert tunables.max_global_leases == 50
    assert 'Ignoring unparsable config value worker_pool_size' in caplog.text


def test_plans_are_scoped_by_parent(app):
    _plan('other', {'worker_pool_size': '9'}, active=True, parent='reports')

    assert ConfigPlanProvider().tunables().worker_pool_size == Tunables().worker_pool_size
    assert ConfigPlanProvider(parent='reports').tunables().worker_pool_size == 9


def test_switching_plans_is_seen_on_next_read(app):
    _plan('day', {'worker_pool_size': '4'}, active=True)
    _plan('night', {'worker_pool_size': '12'})
    provider = ConfigPlanProvider()
    assert provider.tunables().worker_pool_size == 4

    provider.activate_plan('scheduler', 'night', switched_by='ops@example.com')

    assert provider.tunables().worker_pool_size == 12
    active = ConfigPlan.query.filter_by(parent='scheduler', is_active=True).all()
    assert [plan.plan_name for plan in active] == ['night']
    assert active[0].updated_by == 'ops@example.com'


@pytest.mark.parametrize('parent, plan_name', [('', 'day'), ('scheduler', ' '), ('scheduler', 'missing')])
def test_activate_plan_rejects_bad_input(app, parent, plan_name):
    with pytest.raises(ValidationError):
        ConfigPlanProvider().activate_plan(parent, plan_name)


def test_datastore_error_falls_back_to_defaults(app, mocker):
    provider = ConfigPlanProvider(Tunables(worker_pool_size=2))
    mocker.patch.object(provider, 'raw_values',
                        side_effect=OperationalError('SELECT', {}, Exception('no such table')))

    assert provider.tunables() == Tunables(worker_pool_size=2)
