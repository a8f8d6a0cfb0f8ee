"""
Tests for acquisition.owners - socket ownership from psutil
Tests endpoint normalization and the system wide / per-process socket listings.
"""

from __future__ import annotations

import socket
from unittest.mock import Mock, patch

import psutil
import pytest

from acquisition.errors import SourceUnavailable
from acquisition.owners import OwnedSocket, endpoint_key, inet_sockets, normalize_ip, owner_map


class TestEndpointKey:
    """Tests for endpoint normalization"""

    @pytest.mark.parametrize(
        "ip, expected",
        [
            ("::ffff:10.0.0.5", "10.0.0.5"),
            ("FE80::1%eth0", "fe80::1"),
            ("::ffff", "::ffff"),
            ("192.168.1.10", "192.168.1.10"),
        ],
    )
    def test_normalize_ip(self, ip, expected):
        assert normalize_ip(ip) == expected

    def test_unspecified_remote_is_folded(self):
        """Test listeners match whatever placeholder the source printed for the remote end"""
        expected = ("0.0.0.0", 22, "", 0, True)
        assert endpoint_key("0.0.0.0", 22, "0.0.0.0", 0, True) == expected
        assert endpoint_key("0.0.0.0", 22, "*", 0, True) == expected
        assert endpoint_key("0.0.0.0", 22, "", 0, True) == expected


class TestInetSockets:
    """Tests for inet_sockets"""

    def test_system_table(self):
        """Test ownerless rows are dropped and the rest keyed by endpoint"""
        rows = [
            Mock(pid=10, laddr=("10.0.0.5", 5353), raddr=(), status=psutil.CONN_NONE, type=socket.SOCK_DGRAM),
            Mock(pid=None, laddr=("10.0.0.5", 1), raddr=(), status=psutil.CONN_NONE, type=socket.SOCK_DGRAM),
        ]
        with patch("acquisition.owners.psutil.net_connections", return_value=rows) as mock_table:
            sockets = inet_sockets()
        mock_table.assert_called_once_with(kind="inet")
        assert sockets == [OwnedSocket(10, ("10.0.0.5", 5353, "", 0, False), psutil.CONN_NONE)]

    def test_denied_table_asks_each_process(self):
        """Test per-process listings are used, skipping processes that deny access"""
        mine = Mock(pid=20)
        mine.net_connections.return_value = [
            Mock(laddr=("127.0.0.1", 8766), raddr=(), status=psutil.CONN_LISTEN, type=socket.SOCK_STREAM)
        ]
        theirs = Mock(pid=1)
        theirs.net_connections.side_effect = psutil.AccessDenied(1)

        with patch("acquisition.owners.psutil.net_connections", side_effect=psutil.AccessDenied()):
            with patch("acquisition.owners.psutil.process_iter", return_value=[theirs, mine]):
                sockets = inet_sockets()
        assert [(s.pid, s.status) for s in sockets] == [(20, psutil.CONN_LISTEN)]

    def test_other_failures_are_source_errors(self):
        with patch("acquisition.owners.psutil.net_connections", side_effect=psutil.Error("boom")):
            with pytest.raises(SourceUnavailable):
                inet_sockets()

    def test_owner_map_keeps_first_owner(self):
        """Test a socket shared after fork is credited to the first pid listed"""
        key = ("0.0.0.0", 80, "", 0, True)
        sockets = [OwnedSocket(100, key, psutil.CONN_LISTEN), OwnedSocket(101, key, psutil.CONN_LISTEN)]
        assert owner_map(sockets) == {key: 100}
