"""Unit tests for TransferEngine and PendingOperation.

The control channel is scripted with FakeControlSocket and the passive
data connection is replaced with FakeDataSocket.
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from ftpkit.ftp.connection import ControlSession, SessionState
from ftpkit.ftp.data_channel import DataChannelNegotiator
from ftpkit.ftp.exceptions import (
    FTPCancelledError,
    FTPCommandRejectedError,
    FTPLocalFileError,
    FTPNotConnectedError,
    FTPTimeoutError,
    FTPTransportError,
)
from ftpkit.ftp.listing import EntryType, ListingParser
from ftpkit.ftp.transfer import (
    OperationKind,
    OperationResult,
    PendingOperation,
    TransferEngine,
    TransferProgress,
)

from tests.conftest import FakeDataSocket


PASV = b"227 Entering Passive Mode (127,0,0,1,200,14)\r\n"


def make_engine(session, block_size=8192):
    negotiator = DataChannelNegotiator(session, timeout=5)
    parser = ListingParser(now=datetime(2024, 6, 1))
    return TransferEngine(session, negotiator, parser=parser, block_size=block_size)


def patch_data_connection(data_sock):
    return patch("ftpkit.ftp.data_channel.socket.create_connection", return_value=data_sock)


class Recorder:
    """Collects progress and completion notifications."""

    def __init__(self):
        self.progress = []
        self.completions = []

    def on_progress(self, progress: TransferProgress) -> None:
        self.progress.append(progress)

    def on_complete(self, result: OperationResult) -> None:
        self.completions.append(result)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


class TestPendingOperation:
    """Tests for notification ordering guarantees."""

    def test_complete_only_once(self, recorder):
        operation = PendingOperation(OperationKind.MKDIR, "/x", on_complete=recorder.on_complete)
        first = OperationResult(OperationKind.MKDIR, "/x", True)
        second = OperationResult(OperationKind.MKDIR, "/x", False)

        assert operation.complete(first) is True
        assert operation.complete(second) is False
        assert recorder.completions == [first]

    def test_no_progress_after_completion(self, recorder):
        operation = PendingOperation(
            OperationKind.UPLOAD, "/x",
            on_progress=recorder.on_progress, on_complete=recorder.on_complete,
        )
        operation.report_progress(10)
        operation.complete(OperationResult(OperationKind.UPLOAD, "/x", True))
        operation.report_progress(10)

        assert [p.bytes_transferred for p in recorder.progress] == [10]

    def test_cancel_closes_bound_channel(self):
        operation = PendingOperation(OperationKind.DOWNLOAD, "/x")
        handle = MagicMock()
        operation.bind(handle)

        operation.cancel()

        assert operation.is_cancelled is True
        handle.close.assert_called_once()

    def test_dispatch_routes_notifications(self, recorder):
        dispatched = []

        def dispatch(callback, *args):
            dispatched.append(args[0])
            callback(*args)

        operation = PendingOperation(
            OperationKind.UPLOAD, "/x", on_progress=recorder.on_progress, dispatch=dispatch
        )
        operation.report_progress(5)

        assert len(dispatched) == 1
        assert recorder.progress[0].bytes_transferred == 5

    def test_percent(self):
        assert TransferProgress(OperationKind.DOWNLOAD, "/x", 50, 200).percent == 25.0
        assert TransferProgress(OperationKind.DOWNLOAD, "/x", 50, None).percent is None
        assert TransferProgress(OperationKind.DOWNLOAD, "/x", 50, 0).percent is None


class TestListing:
    """Tests for LIST and NLST."""

    def test_list_single_file(self, session, control_socket):
        control_socket.feed(b"200 Type set to A\r\n" + PASV + b"150 Here comes the listing\r\n226 Done\r\n")
        data_sock = FakeDataSocket(b"-rw-r--r-- 1 user group 1024 Jan 01 00:00 file.txt\r\n")
        engine = make_engine(session)

        with patch_data_connection(data_sock) as mock_connect:
            result = engine.run(PendingOperation(OperationKind.LIST, "/pub"))

        mock_connect.assert_called_once_with(("127.0.0.1", 51214), timeout=5)
        assert result.success is True
        assert len(result.value) == 1
        entry = result.value[0]
        assert entry.name == "file.txt"
        assert entry.type == EntryType.FILE
        assert entry.size == 1024
        assert control_socket.commands == ["TYPE A", "PASV", "LIST /pub"]
        assert data_sock.closed is True
        assert session.state == SessionState.IDLE

    def test_list_without_path(self, session, control_socket):
        control_socket.feed(b"200 Type set to A\r\n" + PASV + b"150 Listing\r\n226 Done\r\n")
        engine = make_engine(session)

        with patch_data_connection(FakeDataSocket(b"")):
            result = engine.run(PendingOperation(OperationKind.LIST))

        assert result.success is True
        assert result.value == []
        assert control_socket.commands[-1] == "LIST"

    def test_list_rejected(self, session, control_socket):
        control_socket.feed(b"200 Type set to A\r\n" + PASV + b"550 No such directory\r\n")
        data_sock = FakeDataSocket()
        engine = make_engine(session)

        with patch_data_connection(data_sock):
            result = engine.run(PendingOperation(OperationKind.LIST, "/missing"))

        assert result.success is False
        assert isinstance(result.error, FTPCommandRejectedError)
        assert result.error.code == 550
        assert data_sock.closed is True
        assert session.state == SessionState.IDLE

    def test_list_failed_after_data(self, session, control_socket):
        control_socket.feed(b"200 Type set to A\r\n" + PASV + b"150 Listing\r\n451 Local error\r\n")
        engine = make_engine(session)

        with patch_data_connection(FakeDataSocket(b"partial")):
            result = engine.run(PendingOperation(OperationKind.LIST))

        assert isinstance(result.error, FTPCommandRejectedError)
        assert result.error.code == 451

    def test_nlst(self, session, control_socket):
        control_socket.feed(b"200 Type set to A\r\n" + PASV + b"150 Listing\r\n226 Done\r\n")
        engine = make_engine(session)

        with patch_data_connection(FakeDataSocket(b"a.txt\r\n.hidden\r\nb.txt\r\n")):
            result = engine.run(PendingOperation(OperationKind.NLST))

        assert result.value == ["a.txt", "b.txt"]
        assert control_socket.commands[-1] == "NLST"

    def test_transfer_type_sent_once_per_change(self, session, control_socket):
        engine = make_engine(session)
        for _ in range(2):
            control_socket.feed(b"200 Type set to A\r\n" if not session.transfer_type else b"")
            control_socket.feed(PASV + b"150 Listing\r\n226 Done\r\n")
            with patch_data_connection(FakeDataSocket(b"")):
                assert engine.run(PendingOperation(OperationKind.LIST)).success

        assert control_socket.commands.count("TYPE A") == 1


class TestMkdir:
    """Tests for MKD."""

    def test_mkdir_returns_created_path(self, session, control_socket):
        control_socket.feed(b'257 "/data/new" directory created\r\n')
        engine = make_engine(session)

        result = engine.run(PendingOperation(OperationKind.MKDIR, "new"))

        assert result.success is True
        assert result.value == "/data/new"
        assert control_socket.commands == ["MKD new"]

    def test_mkdir_without_quoted_path(self, session, control_socket):
        control_socket.feed(b"257 Created\r\n")
        engine = make_engine(session)

        result = engine.run(PendingOperation(OperationKind.MKDIR, "/data/new"))

        assert result.value == "/data/new"

    def test_mkdir_rejected(self, session, control_socket):
        control_socket.feed(b"550 Directory exists\r\n")
        engine = make_engine(session)

        result = engine.run(PendingOperation(OperationKind.MKDIR, "/data"))

        assert result.success is False
        assert result.error.code == 550
        assert session.state == SessionState.IDLE


class TestUpload:
    """Tests for STOR."""

    def test_upload_sends_file_with_progress(self, session, control_socket, sample_file, recorder):
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"150 Ok to send\r\n226 Transfer complete\r\n")
        data_sock = FakeDataSocket()
        engine = make_engine(session, block_size=8192)
        operation = PendingOperation(
            OperationKind.UPLOAD, "/up/payload.bin", local_path=sample_file,
            on_progress=recorder.on_progress,
        )

        with patch_data_connection(data_sock):
            result = engine.run(operation)

        assert result.success is True
        assert bytes(data_sock.received) == sample_file.read_bytes()
        sent = [p.bytes_transferred for p in recorder.progress]
        assert sent == [8192, 16384, 20000]
        assert recorder.progress[-1].bytes_total == 20000
        assert recorder.progress[-1].percent == 100.0
        assert result.bytes_transferred == 20000
        assert control_socket.commands == ["TYPE I", "PASV", "STOR /up/payload.bin"]

    def test_upload_rejected_after_data(self, session, control_socket, sample_file, recorder):
        """Test that a 550 after STOR data surfaces with progress capped at bytes sent."""
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"150 Ok to send\r\n550 Permission denied\r\n")
        data_sock = FakeDataSocket()
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.UPLOAD, "/ro/payload.bin", local_path=sample_file,
            on_progress=recorder.on_progress, on_complete=recorder.on_complete,
        )

        with patch_data_connection(data_sock):
            result = engine.run(operation)
        operation.complete(result)

        assert isinstance(result.error, FTPCommandRejectedError)
        assert result.error.code == 550
        assert "550 Permission denied" in result.error_message
        assert len(recorder.completions) == 1
        assert recorder.progress
        assert all(p.bytes_transferred <= len(data_sock.received) for p in recorder.progress)
        assert data_sock.closed is True
        assert session.state == SessionState.IDLE

    def test_server_fails_upload_mid_stream(self, session, control_socket, sample_file, recorder):
        """Test that a data connection dropped by a failing server reports the server's reply."""
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"150 Ok to send\r\n552 Disk full\r\n")
        data_sock = FakeDataSocket(send_limit=4096)
        engine = make_engine(session, block_size=4096)
        operation = PendingOperation(
            OperationKind.UPLOAD, "/up/payload.bin", local_path=sample_file,
            on_progress=recorder.on_progress,
        )

        with patch_data_connection(data_sock):
            result = engine.run(operation)

        assert isinstance(result.error, FTPCommandRejectedError)
        assert result.error.code == 552
        assert "Disk full" in result.error_message
        assert [p.bytes_transferred for p in recorder.progress] == [4096]
        assert data_sock.closed is True
        assert session.state == SessionState.IDLE
        assert "ABOR" not in control_socket.commands

    def test_broken_data_connection_without_reply(self, session, control_socket, sample_file):
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"150 Ok to send\r\n")
        engine = make_engine(session, block_size=4096)
        operation = PendingOperation(OperationKind.UPLOAD, "/up/payload.bin", local_path=sample_file)

        with patch_data_connection(FakeDataSocket(send_limit=4096)):
            result = engine.run(operation)

        assert isinstance(result.error, FTPTransportError)
        assert "Broken pipe" in result.error_message
        assert session.state == SessionState.CLOSED

    def test_upload_rejected_before_data(self, session, control_socket, sample_file, recorder):
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"553 Bad file name\r\n")
        data_sock = FakeDataSocket()
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.UPLOAD, "/bad", local_path=sample_file, on_progress=recorder.on_progress
        )

        with patch_data_connection(data_sock):
            result = engine.run(operation)

        assert result.error.code == 553
        assert recorder.progress == []
        assert data_sock.received == bytearray()
        assert data_sock.closed is True

    def test_missing_local_file(self, session, control_socket, tmp_path):
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.UPLOAD, "/x", local_path=tmp_path / "missing.bin"
        )

        result = engine.run(operation)

        assert isinstance(result.error, FTPLocalFileError)
        assert control_socket.sent == []

    def test_cancel_during_upload_aborts(self, session, control_socket, sample_file, recorder):
        control_socket.feed(
            b"200 Type set to I\r\n" + PASV + b"150 Ok to send\r\n"
            b"426 Transfer aborted\r\n226 ABOR successful\r\n"
        )
        data_sock = FakeDataSocket()
        engine = make_engine(session, block_size=4096)

        def cancel_after_first_chunk(progress):
            recorder.on_progress(progress)
            engine.cancel()

        operation = PendingOperation(
            OperationKind.UPLOAD, "/up/payload.bin", local_path=sample_file,
            on_progress=cancel_after_first_chunk, on_complete=recorder.on_complete,
        )

        with patch_data_connection(data_sock):
            result = engine.run(operation)
        operation.complete(result)

        assert result.cancelled is True
        assert isinstance(result.error, FTPCancelledError)
        assert len(recorder.progress) == 1
        assert len(recorder.completions) == 1
        assert "ABOR" in control_socket.commands
        assert session.state == SessionState.IDLE


class TestDownload:
    """Tests for RETR."""

    def test_download_queries_size(self, session, control_socket, tmp_path, recorder):
        payload = b"x" * 2048
        control_socket.feed(
            b"200 Type set to I\r\n213 2048\r\n" + PASV + b"150 Opening\r\n226 Done\r\n"
        )
        target = tmp_path / "out.bin"
        engine = make_engine(session, block_size=1024)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/files/out.bin", local_path=target,
            on_progress=recorder.on_progress,
        )

        with patch_data_connection(FakeDataSocket(payload)):
            result = engine.run(operation)

        assert result.success is True
        assert target.read_bytes() == payload
        assert [p.percent for p in recorder.progress] == [50.0, 100.0]
        assert control_socket.commands == ["TYPE I", "SIZE /files/out.bin", "PASV", "RETR /files/out.bin"]

    def test_download_with_expected_size_skips_size(self, session, control_socket, tmp_path, recorder):
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"150 Opening\r\n226 Done\r\n")
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/f", local_path=tmp_path / "f", expected_size=400,
            on_progress=recorder.on_progress,
        )

        with patch_data_connection(FakeDataSocket(b"y" * 100)):
            result = engine.run(operation)

        assert result.success is True
        assert "SIZE /f" not in control_socket.commands
        assert recorder.progress[-1].percent == 25.0

    def test_size_unsupported(self, session, control_socket, tmp_path, recorder):
        control_socket.feed(
            b"200 Type set to I\r\n502 SIZE not implemented\r\n" + PASV + b"150 Opening\r\n226 Done\r\n"
        )
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/f", local_path=tmp_path / "f", on_progress=recorder.on_progress
        )

        with patch_data_connection(FakeDataSocket(b"abc")):
            result = engine.run(operation)

        assert result.success is True
        assert recorder.progress[-1].bytes_total is None
        assert recorder.progress[-1].percent is None

    def test_failed_download_removes_partial_file(self, session, control_socket, tmp_path):
        control_socket.feed(
            b"200 Type set to I\r\n" + PASV + b"150 Opening\r\n451 Read error\r\n"
        )
        target = tmp_path / "partial.bin"
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/f", local_path=target, expected_size=10
        )

        with patch_data_connection(FakeDataSocket(b"abc")):
            result = engine.run(operation)

        assert result.error.code == 451
        assert not target.exists()
        assert list(tmp_path.iterdir()) == []

    def test_rejected_download_keeps_existing_file(self, session, control_socket, tmp_path):
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"550 No such file\r\n")
        target = tmp_path / "keep.txt"
        target.write_text("precious")
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/missing", local_path=target, expected_size=10
        )

        with patch_data_connection(FakeDataSocket()):
            result = engine.run(operation)

        assert result.error.code == 550
        assert target.read_text() == "precious"
        assert list(tmp_path.iterdir()) == [target]

    def test_failed_download_keeps_existing_file(self, session, control_socket, tmp_path):
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"150 Opening\r\n451 Read error\r\n")
        target = tmp_path / "keep.txt"
        target.write_text("precious")
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/f", local_path=target, expected_size=10
        )

        with patch_data_connection(FakeDataSocket(b"abc")):
            result = engine.run(operation)

        assert result.error.code == 451
        assert target.read_text() == "precious"

    def test_download_replaces_existing_file(self, session, control_socket, tmp_path):
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"150 Opening\r\n226 Done\r\n")
        target = tmp_path / "out.bin"
        target.write_text("old contents")
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/out.bin", local_path=target, expected_size=3
        )

        with patch_data_connection(FakeDataSocket(b"new")):
            result = engine.run(operation)

        assert result.success is True
        assert target.read_bytes() == b"new"
        assert list(tmp_path.iterdir()) == [target]

    def test_server_fails_download_mid_stream(self, session, control_socket, tmp_path, recorder):
        control_socket.feed(
            b"200 Type set to I\r\n" + PASV + b"150 Opening\r\n426 Connection closed; transfer aborted\r\n"
        )
        target = tmp_path / "f.bin"
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/f.bin", local_path=target, expected_size=100,
            on_progress=recorder.on_progress,
        )

        with patch_data_connection(FakeDataSocket(b"abc", reset=True)):
            result = engine.run(operation)

        assert isinstance(result.error, FTPCommandRejectedError)
        assert result.error.code == 426
        assert [p.bytes_transferred for p in recorder.progress] == [3]
        assert not target.exists()
        assert session.state == SessionState.IDLE

    def test_cancel_during_download(self, session, control_socket, tmp_path, recorder):
        control_socket.feed(
            b"200 Type set to I\r\n" + PASV + b"150 Opening\r\n"
            b"426 Connection closed; transfer aborted\r\n226 ABOR ok\r\n"
        )
        target = tmp_path / "big.bin"
        engine = make_engine(session, block_size=10)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/big.bin", local_path=target, expected_size=100,
            on_progress=lambda progress: engine.cancel(), on_complete=recorder.on_complete,
        )

        with patch_data_connection(FakeDataSocket(b"z" * 100)):
            result = engine.run(operation)

        assert result.cancelled is True
        assert not target.exists()
        assert session.state == SessionState.IDLE

    def test_control_timeout_closes_session(self, session, control_socket, tmp_path):
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"150 Opening\r\n")
        engine = make_engine(session)
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/f", local_path=tmp_path / "f", expected_size=3
        )

        with patch_data_connection(FakeDataSocket(b"abc")):
            result = engine.run(operation)

        assert isinstance(result.error, FTPTimeoutError)
        assert session.state == SessionState.CLOSED


class TestCancelOutsideDataLoop:
    """Tests for cancels that land while waiting on the control channel."""

    def test_cancel_during_final_reply(self, session, control_socket, recorder):
        control_socket.feed(b"200 Type set to A\r\n" + PASV + b"150 Listing\r\n")
        engine = make_engine(session)

        def cancel_then_reply():
            engine.cancel()
            control_socket.feed(b"226 Done\r\n")

        control_socket.on_drained = cancel_then_reply
        operation = PendingOperation(OperationKind.LIST, "/pub", on_complete=recorder.on_complete)

        with patch_data_connection(FakeDataSocket(b"-rw-r--r-- 1 u g 1 Jan 01 00:00 a.txt\r\n")):
            result = engine.run(operation)
        operation.complete(result)

        assert result.success is False
        assert isinstance(result.error, FTPCancelledError)
        assert recorder.completions == [result]
        assert session.state == SessionState.IDLE

    def test_cancel_while_waiting_for_mkd(self, session, control_socket):
        engine = make_engine(session)

        def cancel_then_reply():
            engine.cancel()
            control_socket.feed(b'257 "/new" created\r\n')

        control_socket.on_drained = cancel_then_reply

        result = engine.run(PendingOperation(OperationKind.MKDIR, "/new"))

        assert result.cancelled is True
        assert session.state == SessionState.IDLE

    def test_cancel_during_download_final_reply_keeps_no_file(self, session, control_socket, tmp_path):
        control_socket.feed(b"200 Type set to I\r\n" + PASV + b"150 Opening\r\n")
        target = tmp_path / "f.bin"
        engine = make_engine(session)

        def cancel_then_reply():
            engine.cancel()
            control_socket.feed(b"226 Done\r\n")

        control_socket.on_drained = cancel_then_reply
        operation = PendingOperation(
            OperationKind.DOWNLOAD, "/f.bin", local_path=target, expected_size=3
        )

        with patch_data_connection(FakeDataSocket(b"abc")):
            result = engine.run(operation)

        assert result.cancelled is True
        assert list(tmp_path.iterdir()) == []


class TestEngineContract:
    """Tests for call-site contract violations."""

    def test_run_requires_logged_in_session(self, endpoint):
        session = ControlSession(endpoint)
        engine = make_engine(session)

        with pytest.raises(FTPNotConnectedError):
            engine.run(PendingOperation(OperationKind.LIST))

    def test_cancel_without_operation_is_noop(self, session):
        make_engine(session).cancel()
