"""
Tests for acquisition.connections - the connection-source fallback chain and process attribution
Tests source ordering, quality sorting, pid/name attribution and the aggregate views.
"""

from __future__ import annotations

import socket
from unittest.mock import Mock, patch

import psutil
import pytest

from acquisition.connections import (
    ConnectionMonitor,
    compute_connection_stats,
    connection_sort_key,
    sort_connections,
)
from acquisition.errors import SourceUnavailable
from acquisition.models import ConnectionRecord, ConnectionState, Protocol, SocketInfo
from acquisition.sources import ConnectionSource


def _record(
    remote_ip="93.184.216.34",
    remote_port=443,
    local_port=50000,
    state=ConnectionState.ESTABLISHED,
    protocol=Protocol.TCP,
    rtt=None,
    pid=None,
    name=None,
    sent=0,
    received=0,
    inode=None,
):
    return ConnectionRecord(
        local_ip="192.168.1.10",
        local_port=local_port,
        remote_ip=remote_ip,
        remote_port=remote_port,
        protocol=protocol,
        state=state,
        pid=pid,
        process_name=name,
        bytes_sent=sent,
        bytes_received=received,
        socket_info=SocketInfo(rtt=rtt, inode=inode),
    )


def _failing(name):
    def collect(timeout):
        raise SourceUnavailable(name, "command not found")

    return ConnectionSource(name, collect)


def _answering(name, records):
    return ConnectionSource(name, lambda timeout: list(records))


@pytest.fixture(autouse=True)
def no_host_sockets():
    """keep attribution off the real socket table unless a test supplies one"""
    with patch("acquisition.owners.psutil.net_connections", return_value=[]):
        yield


class TestSorting:
    """Tests for connection quality ordering"""

    def test_known_rtt_first_ascending(self):
        """Test rtt 50, unknown, 10 sorts to 10, 50, unknown"""
        records = [_record(rtt=50.0), _record(rtt=None), _record(rtt=10.0)]
        ordered = sort_connections(records)
        assert [r.socket_info.rtt for r in ordered] == [10.0, 50.0, None]

    def test_ties_by_total_bytes_descending(self):
        """Test equal rtt (or both unknown) puts the busier connection first"""
        quiet, busy = _record(sent=10), _record(sent=500, received=500)
        assert sort_connections([quiet, busy]) == [busy, quiet]

        fast_quiet, fast_busy = _record(rtt=5.0, sent=1), _record(rtt=5.0, sent=2)
        assert sort_connections([fast_quiet, fast_busy]) == [fast_busy, fast_quiet]

    def test_sort_key_shape(self):
        """Test the key puts unknown rtt in a separate, later bucket"""
        assert connection_sort_key(_record(rtt=1.5, sent=3)) == (0, 1.5, -3)
        assert connection_sort_key(_record(sent=3)) == (1, 0.0, -3)


class TestFallbackChain:
    """Tests for ConnectionMonitor.update source selection"""

    def test_first_answering_source_wins(self):
        """Test failures fall through and later sources are never asked"""
        never = Mock(side_effect=AssertionError("should not be called"))
        monitor = ConnectionMonitor(
            sources=[_failing("ss"), _answering("procfs", [_record()]), ConnectionSource("netstat", never)],
        )
        monitor.update()
        assert monitor.last_source == "procfs"
        assert len(monitor.connections()) == 1
        never.assert_not_called()

    def test_empty_answer_is_success(self):
        """Test a source that runs fine but lists nothing stops the chain"""
        monitor = ConnectionMonitor(
            sources=[_answering("ss", []), _answering("netstat", [_record()])],
        )
        monitor.update()
        assert monitor.last_source == "ss"
        assert monitor.connections() == []

    def test_every_source_failing(self):
        """Test the set is emptied and the source cleared, without raising"""
        monitor = ConnectionMonitor(sources=[_answering("ss", [_record()])])
        monitor.update()
        assert monitor.last_source == "ss"

        monitor.sources = (_failing("ss"), _failing("procfs"), _failing("netstat"), _failing("lsof"))
        monitor.update()
        assert monitor.connections() == []
        assert monitor.last_source is None

    def test_timeout_is_passed_to_sources(self):
        """Test every collect call receives the configured timeout"""
        collect = Mock(return_value=[])
        monitor = ConnectionMonitor(sources=[ConnectionSource("ss", collect)], timeout=0.75)
        monitor.update()
        collect.assert_called_once_with(0.75)

    def test_connections_returns_a_copy(self):
        """Test callers cannot mutate the monitor's current set"""
        monitor = ConnectionMonitor(sources=[_answering("ss", [_record()])])
        monitor.update()
        monitor.connections().clear()
        assert len(monitor.connections()) == 1


class TestAttribution:
    """Tests for pid and process name attribution"""

    def _sockets(self, *conns):
        return patch("acquisition.owners.psutil.net_connections", return_value=list(conns))

    def test_pidless_records_get_owner(self):
        """Test records without a pid are matched to psutil's socket table by endpoint"""
        owned = Mock(
            pid=42, laddr=("::ffff:192.168.1.10", 50000), raddr=("93.184.216.34", 443),
            status=psutil.CONN_ESTABLISHED, type=socket.SOCK_STREAM,
        )
        listener = Mock(
            pid=43, laddr=("192.168.1.10", 8080), raddr=(), status=psutil.CONN_LISTEN, type=socket.SOCK_STREAM,
        )
        records = [
            _record(inode=5555),
            _record(local_port=8080, remote_ip="0.0.0.0", remote_port=0, state=ConnectionState.LISTEN),
            _record(local_port=50001, inode=9999),
        ]
        monitor = ConnectionMonitor(sources=[_answering("procfs", records)])
        with self._sockets(owned, listener), patch("acquisition.connections.psutil.Process") as mock_process:
            mock_process.return_value.name.side_effect = ["nginx", "python3"]
            monitor.update()

        by_port = {r.local_port: r for r in monitor.connections()}
        assert (by_port[50000].pid, by_port[50000].process_name) == (42, "nginx")
        assert by_port[8080].pid == 43
        assert by_port[50001].pid is None
        assert by_port[50001].process_name is None
        assert monitor.process_name(42) == "nginx"

    def test_udp_and_tcp_do_not_mix(self):
        """Test a udp socket on the same endpoint does not claim a tcp record"""
        udp = Mock(pid=5, laddr=("192.168.1.10", 50000), raddr=("93.184.216.34", 443),
                   status=psutil.CONN_NONE, type=socket.SOCK_DGRAM)
        monitor = ConnectionMonitor(sources=[_answering("netstat", [_record()])])
        with self._sockets(udp):
            monitor.update()
        assert monitor.connections()[0].pid is None

    def test_socket_table_unavailable(self):
        """Test a psutil failure leaves records unattributed without raising"""
        monitor = ConnectionMonitor(sources=[_answering("procfs", [_record(inode=5555)])])
        with patch("acquisition.owners.psutil.net_connections", side_effect=psutil.Error("boom")):
            monitor.update()
        assert monitor.connections()[0].pid is None
        assert monitor.last_source == "procfs"

    def test_records_with_pids_skip_the_table(self):
        """Test the socket table is not read when every record already has an owner"""
        monitor = ConnectionMonitor(sources=[_answering("ss", [_record(pid=7, name="curl")])])
        with patch("acquisition.owners.psutil.net_connections") as mock_table:
            monitor.update()
        mock_table.assert_not_called()

    def test_source_names_are_kept(self):
        """Test a name supplied by the source is not overwritten"""
        monitor = ConnectionMonitor(sources=[_answering("ss", [_record(pid=7, name="curl")])])
        with patch("acquisition.connections.psutil.Process") as mock_process:
            monitor.update()
        assert monitor.connections()[0].process_name == "curl"
        mock_process.assert_not_called()

    def test_psutil_name_lookup(self):
        """Test psutil supplies names the source did not"""
        monitor = ConnectionMonitor(sources=[_answering("ss", [_record(pid=77)])])
        with patch("acquisition.connections.psutil.Process") as mock_process:
            mock_process.return_value.name.return_value = "python3"
            monitor.update()
        assert monitor.connections()[0].process_name == "python3"
        mock_process.assert_called_once_with(77)

    def test_vanished_process(self):
        """Test a pid that is already gone keeps no name"""
        monitor = ConnectionMonitor(sources=[_answering("ss", [_record(pid=78)])])
        with patch("acquisition.connections.psutil.Process", side_effect=psutil.NoSuchProcess(78)):
            monitor.update()
        assert monitor.connections()[0].process_name is None
        assert monitor.process_name(78) is None

    def test_name_cache_is_reused_within_a_cycle(self):
        """Test a pid is looked up once even with many sockets"""
        records = [_record(pid=77, local_port=p) for p in range(50000, 50005)]
        monitor = ConnectionMonitor(sources=[_answering("ss", records)])
        with patch("acquisition.connections.psutil.Process") as mock_process:
            mock_process.return_value.name.return_value = "python3"
            monitor.update()
        assert mock_process.call_count == 1
        assert {r.process_name for r in monitor.connections()} == {"python3"}


class TestAggregates:
    """Tests for stats, top processes and top remote hosts"""

    @pytest.fixture
    def monitor(self):
        records = [
            _record(remote_ip="1.1.1.1", pid=1, name="firefox"),
            _record(remote_ip="1.1.1.1", pid=1, name="firefox", local_port=50001),
            _record(remote_ip="8.8.8.8", pid=2, name="curl", protocol=Protocol.TCP6),
            _record(remote_ip="0.0.0.0", remote_port=0, state=ConnectionState.LISTEN, pid=3, name="sshd"),
            _record(remote_ip="1.1.1.1", state=ConnectionState.TIME_WAIT),
            _record(remote_ip="0.0.0.0", remote_port=0, state=ConnectionState.CLOSE, protocol=Protocol.UDP),
        ]
        monitor = ConnectionMonitor(sources=[_answering("ss", records)])
        monitor.update()
        return monitor

    def test_connection_stats(self, monitor):
        """Test state buckets and tcp/udp counts"""
        stats = monitor.connection_stats()
        assert stats.to_dict() == {
            "total": 6,
            "established": 3,
            "listening": 1,
            "time_wait": 1,
            "other": 1,
            "tcp": 5,
            "udp": 1,
        }

    def test_empty_stats(self):
        """Test an empty set gives all-zero stats"""
        assert compute_connection_stats([]).total == 0

    def test_top_processes(self, monitor):
        """Test connection counts per process name, busiest first"""
        assert monitor.top_processes(2) == [("firefox", 2), ("curl", 1)]

    def test_top_remote_hosts(self, monitor):
        """Test only established connections to real peers are counted"""
        assert monitor.top_remote_hosts() == [("1.1.1.1", 2), ("8.8.8.8", 1)]
