"""Tests for the socket disconnect strategies."""

import logging
import subprocess
import sys
import time

import pytest

import rbh


@pytest.fixture
def peer(make_peer):
    return make_peer('n9A', '192.168.1.10')


class TestSocketKill:

    def test_command(self, peer):
        assert rbh.SocketKillDisconnector().command(peer) == [
            'ss', '-K', '-H', 'dst', '192.168.1.10']

    def test_command_in_container(self, peer):
        assert rbh.SocketKillDisconnector('rippled').command(peer) == [
            'docker', 'exec', 'rippled', 'ss', '-K', '-H', 'dst', '192.168.1.10']

    def test_disconnect(self, peer, monkeypatch, caplog):
        calls = []

        def run(cmd, **kwargs):
            calls.append(cmd)
            return subprocess.CompletedProcess(
                cmd, 0, stdout='ESTAB 0 0 10.0.0.1:51235 192.168.1.10:40000\n', stderr='')

        monkeypatch.setattr(rbh.subprocess, 'run', run)
        with caplog.at_level(logging.INFO, logger='rbh'):
            rbh.SocketKillDisconnector().disconnect(peer)

        assert calls == [['ss', '-K', '-H', 'dst', '192.168.1.10']]
        assert '192.168.1.10:40000' in caplog.text

    def test_no_output_is_not_an_error(self, peer, monkeypatch, caplog):
        monkeypatch.setattr(rbh.subprocess, 'run',
            lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 0, stdout='', stderr=''))

        with caplog.at_level(logging.INFO, logger='rbh'):
            rbh.SocketKillDisconnector().disconnect(peer)

        assert '`ss -K` unsupported' in caplog.text

    def test_error_status(self, peer, monkeypatch):
        monkeypatch.setattr(rbh.subprocess, 'run',
            lambda cmd, **kwargs: subprocess.CompletedProcess(
                cmd, 1, stdout='', stderr='Operation not permitted\n'))

        with pytest.raises(rbh.TerminationFailed, match='Operation not permitted'):
            rbh.SocketKillDisconnector().disconnect(peer)

    def test_missing_utility(self, peer, monkeypatch):
        def run(cmd, **kwargs):
            raise FileNotFoundError(2, 'No such file or directory', cmd[0])

        monkeypatch.setattr(rbh.subprocess, 'run', run)

        with pytest.raises(rbh.TerminationUnsupported):
            rbh.SocketKillDisconnector().disconnect(peer)


class FakePopen:
    """Popen stand-in whose first communicate() may time out."""

    instances = []

    def __init__(self, cmd, hangs=False, returncode=0, output=''):
        self.cmd = cmd
        self.hangs = hangs
        self.returncode = returncode
        self.output = output
        self.killed = False
        FakePopen.instances.append(self)

    def communicate(self, timeout=None):
        if self.hangs and not self.killed:
            raise subprocess.TimeoutExpired(self.cmd, timeout)
        return self.output, None

    def kill(self):
        self.killed = True
        self.returncode = -9


class TestTCPKill:

    def test_command(self, peer):
        assert rbh.TCPKillDisconnector().command(peer) == [
            'tcpkill', '-3', 'host', '192.168.1.10']

    def test_command_with_iface_and_container(self, peer):
        disconnector = rbh.TCPKillDisconnector('rippled', aggression=9, iface='eth0')
        assert disconnector.command(peer) == [
            'docker', 'exec', 'rippled', 'timeout', '0.5',
            'tcpkill', '-i', 'eth0', '-9', 'host', '192.168.1.10']

    def test_container_deadline_hit_is_success(self, peer, monkeypatch):
        monkeypatch.setattr(rbh.subprocess, 'Popen',
            lambda cmd, **kwargs: FakePopen(cmd, returncode=rbh.TIMEOUT_EXIT_STATUS))

        rbh.TCPKillDisconnector('rippled').disconnect(peer)

    def test_local_status_124_is_an_error(self, peer, monkeypatch):
        monkeypatch.setattr(rbh.subprocess, 'Popen',
            lambda cmd, **kwargs: FakePopen(cmd, returncode=rbh.TIMEOUT_EXIT_STATUS))

        with pytest.raises(rbh.TerminationFailed):
            rbh.TCPKillDisconnector().disconnect(peer)

    @pytest.mark.parametrize('aggression', [0, 10])
    def test_aggression_range(self, aggression):
        with pytest.raises(ValueError):
            rbh.TCPKillDisconnector(aggression=aggression)

    def test_deadline_is_best_effort_success(self, peer, monkeypatch):
        FakePopen.instances.clear()
        monkeypatch.setattr(rbh.subprocess, 'Popen',
            lambda cmd, **kwargs: FakePopen(cmd, hangs=True))

        rbh.TCPKillDisconnector().disconnect(peer)

        assert FakePopen.instances[0].killed

    def test_error_before_deadline(self, peer, monkeypatch):
        monkeypatch.setattr(rbh.subprocess, 'Popen',
            lambda cmd, **kwargs: FakePopen(cmd, returncode=1, output='tcpkill: pcap_open_live\n'))

        with pytest.raises(rbh.TerminationFailed, match='pcap_open_live'):
            rbh.TCPKillDisconnector().disconnect(peer)

    def test_missing_utility(self, peer, monkeypatch):
        def popen(cmd, **kwargs):
            raise FileNotFoundError(2, 'No such file or directory', cmd[0])

        monkeypatch.setattr(rbh.subprocess, 'Popen', popen)

        with pytest.raises(rbh.TerminationUnsupported):
            rbh.TCPKillDisconnector().disconnect(peer)

    def test_long_running_process_is_stopped(self, peer, monkeypatch):
        disconnector = rbh.TCPKillDisconnector(deadline=0.2)
        monkeypatch.setattr(disconnector, 'command',
            lambda peer: [sys.executable, '-c', 'import time; time.sleep(30)'])

        started = time.monotonic()
        disconnector.disconnect(peer)

        assert time.monotonic() - started < 5


class TestMakeDisconnector:

    def test_default(self):
        assert isinstance(rbh.make_disconnector(), rbh.SocketKillDisconnector)

    def test_sskill_in_container(self):
        disconnector = rbh.make_disconnector('sskill', 'rippled')
        assert isinstance(disconnector, rbh.SocketKillDisconnector)
        assert disconnector.container == 'rippled'

    def test_tcpkill(self):
        disconnector = rbh.make_disconnector('tcpkill', 'rippled', aggression=5, iface='eth0')
        assert isinstance(disconnector, rbh.TCPKillDisconnector)
        assert disconnector.aggression == 5
        assert disconnector.deadline == rbh.TCPKILL_DEADLINE

    def test_unknown(self):
        with pytest.raises(ValueError):
            rbh.make_disconnector('iptables')
