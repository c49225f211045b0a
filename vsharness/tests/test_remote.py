"""Tests for the SSH command channel."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from vsharness.errors import RemoteCommandError, TransferError
from vsharness.remote import ConnectionParams, SSHChannel, probe


def _connect_returning(conn):
    cm = MagicMock()
    cm.__aenter__.return_value = conn
    cm.__aexit__.return_value = False
    return MagicMock(return_value=cm)


def _conn_with_result(stdout="", exit_status=0):
    conn = MagicMock()
    conn.run = AsyncMock(return_value=SimpleNamespace(stdout=stdout, exit_status=exit_status))
    return conn


def _conn_with_sftp(write):
    remote_file = MagicMock()
    remote_file.write = AsyncMock(side_effect=write)
    file_cm = MagicMock()
    file_cm.__aenter__.return_value = remote_file
    file_cm.__aexit__.return_value = False

    sftp = MagicMock()
    sftp.open.return_value = file_cm
    sftp_cm = MagicMock()
    sftp_cm.__aenter__.return_value = sftp
    sftp_cm.__aexit__.return_value = False

    conn = MagicMock()
    conn.start_sftp_client.return_value = sftp_cm
    return conn, sftp, remote_file


@pytest.fixture
def params(tmp_path):
    return ConnectionParams(
        host="localhost", port=2222, username="admin",
        key_path=str(tmp_path / "missing-key"), command_timeout=2.0,
    )


class TestConnectionParams:

    def test_from_address(self):
        params = ConnectionParams.from_address("10.0.0.5:2222", username="admin")
        assert params.host == "10.0.0.5"
        assert params.port == 2222
        assert params.address == "10.0.0.5:2222"

    @pytest.mark.parametrize("address", ["localhost", "localhost:", ":22", "host:ssh"])
    def test_from_address_rejects_garbage(self, address):
        with pytest.raises(ValueError):
            ConnectionParams.from_address(address)

    def test_with_timeout_caps_connect_timeout(self):
        params = ConnectionParams(host="h", port=1, connect_timeout=10.0, command_timeout=30.0)
        short = params.with_timeout(5.0)
        assert short.connect_timeout == 5.0
        assert short.command_timeout == 5.0
        assert params.command_timeout == 30.0

    def test_missing_key_means_no_client_keys(self, params):
        assert params.load_client_keys() == []

    def test_key_is_loaded(self, params):
        key = object()
        with patch("vsharness.remote.asyncssh.read_private_key", return_value=key) as read:
            assert params.load_client_keys() == [key]
        read.assert_called_once_with(params.key_path)


class TestExec:

    @pytest.mark.asyncio
    async def test_returns_combined_output(self, params):
        conn = _conn_with_result(stdout="hello\n")
        connect = _connect_returning(conn)
        with patch("vsharness.remote.asyncssh.connect", connect):
            output = await SSHChannel(params).exec("echo hello")

        assert output == "hello\n"
        conn.run.assert_awaited_once_with("echo hello", stderr=asyncssh.STDOUT, check=False)
        kwargs = connect.call_args.kwargs
        assert kwargs["known_hosts"] is None
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "admin"
        assert kwargs["preferred_auth"] == "publickey"

    @pytest.mark.asyncio
    async def test_each_call_opens_a_new_connection(self, params):
        connect = _connect_returning(_conn_with_result(stdout="ok"))
        channel = SSHChannel(params)
        with patch("vsharness.remote.asyncssh.connect", connect):
            await channel.exec("true")
            await channel.exec("true")
        assert connect.call_count == 2

    @pytest.mark.asyncio
    async def test_non_zero_exit_keeps_output(self, params):
        conn = _conn_with_result(stdout="No such file\n", exit_status=2)
        with patch("vsharness.remote.asyncssh.connect", _connect_returning(conn)):
            with pytest.raises(RemoteCommandError) as exc_info:
                await SSHChannel(params).exec("ls /nope")

        err = exc_info.value
        assert err.exit_status == 2
        assert err.output == "No such file\n"
        assert err.command == "ls /nope"

    @pytest.mark.asyncio
    async def test_transport_error_has_no_exit_status(self, params):
        connect = MagicMock(side_effect=OSError("connection refused"))
        with patch("vsharness.remote.asyncssh.connect", connect):
            with pytest.raises(RemoteCommandError) as exc_info:
                await SSHChannel(params).exec("true")
        assert exc_info.value.exit_status is None
        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_command_timeout(self, params):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        conn = MagicMock()
        conn.run = AsyncMock(side_effect=hang)
        channel = SSHChannel(ConnectionParams(host="h", port=1, command_timeout=0.05))
        with patch("vsharness.remote.asyncssh.connect", _connect_returning(conn)):
            with pytest.raises(RemoteCommandError, match="timed out"):
                await channel.exec("sleep 10")


class TestTransfer:

    @pytest.mark.asyncio
    async def test_full_copy_reports_bytes(self, params, tmp_path):
        local = tmp_path / "agent"
        local.write_bytes(b"x" * 600_000)
        written_chunks = []

        def write(data):
            written_chunks.append(bytes(data))
            return len(data)

        conn, sftp, _ = _conn_with_sftp(write)
        with patch("vsharness.remote.asyncssh.connect", _connect_returning(conn)):
            written = await SSHChannel(params).transfer(local, "/tmp/agent")

        assert written == local.stat().st_size
        assert b"".join(written_chunks) == local.read_bytes()
        sftp.open.assert_called_once_with("/tmp/agent", "wb")

    @pytest.mark.asyncio
    async def test_short_write_is_fatal(self, params, tmp_path):
        local = tmp_path / "agent"
        local.write_bytes(b"y" * 1000)
        conn, _, _ = _conn_with_sftp(lambda data: len(data) - 1)
        with patch("vsharness.remote.asyncssh.connect", _connect_returning(conn)):
            with pytest.raises(TransferError) as exc_info:
                await SSHChannel(params).transfer(local, "/tmp/agent")

        assert exc_info.value.written == 999
        assert exc_info.value.expected == 1000

    @pytest.mark.asyncio
    async def test_missing_local_file(self, params, tmp_path):
        connect = MagicMock()
        with patch("vsharness.remote.asyncssh.connect", connect):
            with pytest.raises(TransferError):
                await SSHChannel(params).transfer(tmp_path / "nope", "/tmp/agent")
        connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_sftp_error_becomes_transfer_error(self, params, tmp_path):
        local = tmp_path / "agent"
        local.write_bytes(b"z")
        conn = MagicMock()
        conn.start_sftp_client.side_effect = asyncssh.SFTPError(4, "failure")
        with patch("vsharness.remote.asyncssh.connect", _connect_returning(conn)):
            with pytest.raises(TransferError):
                await SSHChannel(params).transfer(local, "/tmp/agent")


class TestProbe:

    @pytest.mark.asyncio
    async def test_probe_accepts_ready(self):
        channel = MagicMock()
        channel.exec = AsyncMock(return_value="ready\n")
        await probe(channel)
        channel.exec.assert_awaited_once_with("echo ready")

    @pytest.mark.asyncio
    async def test_probe_rejects_other_output(self):
        channel = MagicMock()
        channel.exec = AsyncMock(return_value="Permission denied\n")
        with pytest.raises(RemoteCommandError, match="unexpected output"):
            await probe(channel)
