from signal_loader.jobs.common.replica import FALLBACK_REPLICA_NAME, resolve_holder_identity


def test_configured_name_wins():
    assert resolve_holder_identity(' loader-0 ', environ={'HOSTNAME': 'pod-1'}) == 'loader-0'


def test_hostname_variable():
    assert resolve_holder_identity(None, environ={'HOSTNAME': 'loader-7d9f-abc'}) == 'loader-7d9f-abc'
    assert resolve_holder_identity('', environ={'COMPUTERNAME': 'WIN-BOX'}) == 'WIN-BOX'


def test_network_hostname(mocker):
    mocker.patch('signal_loader.jobs.common.replica.socket.gethostname', return_value='worker.local')

    assert resolve_holder_identity(environ={'HOSTNAME': '  '}) == 'worker.local'


def test_fallback(mocker):
    mocker.patch('signal_loader.jobs.common.replica.socket.gethostname', side_effect=OSError('no network'))

    assert resolve_holder_identity(environ={}) == FALLBACK_REPLICA_NAME
