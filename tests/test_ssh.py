from unittest.mock import MagicMock

import paramiko
import pytest

import helpers
from helpers import (
    AccessPointSettings,
    CommandError,
    CommandTimeout,
    ConnectFailed,
    SSHConnection,
    SessionFailed,
    run_command,
)


class FakeChannel:
    def __init__(self, stdout=b'', stderr=b'', exit_status=0, finishes=True):
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self.exit_status = exit_status
        self.finishes = finishes
        self.command = None
        self.closed = False

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        return self._stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        return self._stderr.pop(0)

    def exit_status_ready(self):
        return self.finishes

    def recv_exit_status(self):
        return self.exit_status

    def close(self):
        self.closed = True


@pytest.fixture
def client(monkeypatch):
    client = MagicMock()
    client.get_transport.return_value.is_active.return_value = True
    monkeypatch.setattr(helpers.paramiko, 'SSHClient', lambda: client)
    return client


def with_channel(client, channel):
    client.get_transport.return_value.open_session.return_value = channel
    return channel


def test_run_returns_output(client):
    channel = with_channel(client, FakeChannel(stdout=b'ath1     ESSID: "254"\n'))

    with SSHConnection('10.0.100.2', 'root', 'secret') as ssh:
        output = ssh.run('iwinfo')

    assert output == 'ath1     ESSID: "254"\n'
    assert channel.command == 'iwinfo'
    assert channel.closed
    client.close.assert_called_once()


def test_connect_uses_password_auth(client):
    with_channel(client, FakeChannel())

    run_command(AccessPointSettings('vivid', '10.0.100.2', 'root', 'secret', 36, True), 'wifi reload')

    args, kwargs = client.connect.call_args
    assert args == ('10.0.100.2',)
    assert kwargs['port'] == 22
    assert kwargs['username'] == 'root'
    assert kwargs['password'] == 'secret'
    assert kwargs['look_for_keys'] is False
    assert kwargs['timeout'] == helpers.CONNECT_TIMEOUT_SEC


@pytest.mark.parametrize('error', [
    paramiko.AuthenticationException('bad password'),
    OSError('No route to host'),
])
def test_connect_failure(client, error):
    client.connect.side_effect = error

    with pytest.raises(ConnectFailed):
        with SSHConnection('10.0.100.2', 'root', 'secret'):
            pass

    client.close.assert_called_once()


def test_session_failure(client):
    client.get_transport.return_value.open_session.side_effect = paramiko.SSHException('channel refused')

    with SSHConnection('10.0.100.2', 'root', 'secret') as ssh:
        with pytest.raises(SessionFailed):
            ssh.run('iwinfo')


def test_inactive_transport(client):
    client.get_transport.return_value.is_active.return_value = False

    with SSHConnection('10.0.100.2', 'root', 'secret') as ssh:
        with pytest.raises(SessionFailed):
            ssh.run('iwinfo')


def test_nonzero_exit_status(client):
    with_channel(client, FakeChannel(stderr=b'uci: Parse error', exit_status=1))

    with SSHConnection('10.0.100.2', 'root', 'secret') as ssh:
        with pytest.raises(CommandError, match='Parse error'):
            ssh.run('uci batch')


def test_stderr_fails_command(client):
    with_channel(client, FakeChannel(stderr=b'wifi: radio0 not found'))

    with SSHConnection('10.0.100.2', 'root', 'secret') as ssh:
        with pytest.raises(CommandError):
            ssh.run('wifi radio0')


def test_stderr_warning_is_ignored(client):
    with_channel(client, FakeChannel(stdout=b'ok', stderr=b'Warning: deprecated option'))

    with SSHConnection('10.0.100.2', 'root', 'secret') as ssh:
        assert ssh.run('wifi reload') == 'ok'


def test_command_timeout_closes_connection(client):
    channel = with_channel(client, FakeChannel(finishes=False))

    with SSHConnection('10.0.100.2', 'root', 'secret', command_timeout=0.1) as ssh:
        with pytest.raises(CommandTimeout):
            ssh.run('iwinfo')
        assert ssh.client is None

    assert channel.closed
    client.close.assert_called_once()

