"""
Unit tests for Connection.
"""

import os
import socket
import threading

import pytest

from lineserver.core.connection import Connection, ConnectionState
from lineserver.core.framing import LineOverflowError, OverflowPolicy
from lineserver.handlers import ContextDestroyedError, ContextState, FunctionHandler
from helpers import RecordingHandler


@pytest.fixture
def conn(socket_pair):
    """Connection wrapping the server side of a socket pair."""
    server_side, _ = socket_pair
    return Connection(socket=server_side, address=("10.0.0.5", 51514))


class TestConnectionBasics:
    """Tests for identity, properties and reading."""

    def test_identity_captured(self, conn, socket_pair):
        """Test fd and id are set at construction."""
        assert conn.fd == socket_pair[0].fileno()
        assert len(conn.id) == 8
        assert conn.state == ConnectionState.NEW
        assert conn.client_ip == "10.0.0.5"
        assert conn.client_port == 51514

    def test_socket_is_non_blocking(self, conn):
        """Test the wrapped socket never blocks."""
        assert conn.socket.getblocking() is False

    def test_read_nothing_available(self, conn):
        """Test that an empty socket reads as None, not EOF."""
        assert conn.read(4096) is None

    def test_read_data(self, conn, socket_pair):
        """Test reading counts bytes."""
        socket_pair[1].sendall(b"hello\n")

        assert conn.read(4096) == b"hello\n"
        assert conn.bytes_received == 6

    def test_read_respects_size(self, conn, socket_pair):
        """Test one read returns at most size bytes."""
        socket_pair[1].sendall(b"0123456789")

        assert conn.read(4) == b"0123"

    def test_read_eof(self, conn, socket_pair):
        """Test peer close reads as b''."""
        socket_pair[1].close()

        assert conn.read(4096) == b""

    def test_feed_counts_lines(self, conn):
        """Test framing through the connection."""
        assert list(conn.feed(b"a\nb\nc")) == [b"a", b"b"]
        assert conn.lines_received == 2
        assert conn.framer.buffered == 1

    def test_framer_uses_settings(self, socket_pair):
        """Test max_line_size and policy reach the framer."""
        conn = Connection(
            socket=socket_pair[0],
            address=("127.0.0.1", 1),
            max_line_size=4,
            overflow_policy=OverflowPolicy.CLOSE,
        )

        with pytest.raises(LineOverflowError):
            list(conn.feed(b"abcdef"))


class TestConnectionContext:
    """Tests for the handler context lifecycle."""

    def test_open_context(self, conn):
        """Test creating the context opens the connection."""
        handler = RecordingHandler()
        context = conn.open_context(handler)

        assert conn.context is context
        assert conn.handler is handler
        assert conn.state == ConnectionState.OPEN
        assert context.state == ContextState.CREATED

    def test_open_context_failure_propagates(self, conn):
        """Test a failing create_context leaves no context behind."""
        with pytest.raises(RuntimeError):
            conn.open_context(RecordingHandler(fail_create=True))

        assert conn.context is None
        assert conn.state == ConnectionState.NEW

    def test_open_context_rejects_wrong_type(self, conn):
        """Test that create_context must return a HandlerContext."""
        class BadHandler(RecordingHandler):
            def create_context(self, connection):
                return object()

        with pytest.raises(TypeError):
            conn.open_context(BadHandler())

    def test_dispatch_marks_active(self, conn):
        """Test delivering a line."""
        handler = RecordingHandler()
        conn.open_context(handler)

        conn.dispatch(b"hello")

        assert handler.lines == [b"hello"]
        assert conn.context.state == ContextState.ACTIVE
        assert conn.lines_dispatched == 1

    def test_dispatch_without_context(self, conn):
        """Test delivery needs a context."""
        with pytest.raises(ContextDestroyedError):
            conn.dispatch(b"hello")

    def test_destroy_exactly_once(self, conn):
        """Test destroy_context only runs the hook once."""
        handler = RecordingHandler()
        conn.open_context(handler)

        assert conn.destroy_context() is True
        assert conn.destroy_context() is False
        assert handler.destroy_calls[conn.id] == 1

    def test_no_delivery_after_destroy(self, conn):
        """Test a destroyed context receives nothing."""
        handler = RecordingHandler()
        conn.open_context(handler)
        conn.destroy_context()

        with pytest.raises(ContextDestroyedError):
            conn.dispatch(b"late")
        assert handler.lines == []

    def test_custom_dispatcher(self, socket_pair):
        """Test the dispatch chain replaces direct delivery."""
        seen = []
        conn = Connection(
            socket=socket_pair[0],
            address=("127.0.0.1", 1),
            dispatcher=lambda context, line: seen.append(line.upper()),
        )
        conn.open_context(RecordingHandler())

        conn.dispatch(b"abc")

        assert seen == [b"ABC"]


class TestConnectionSend:
    """Tests for writing."""

    def test_send(self, conn, socket_pair):
        """Test sending counts bytes and reaches the peer."""
        assert conn.send(b"pong\n") == 5
        assert conn.bytes_sent == 5
        assert socket_pair[1].recv(100) == b"pong\n"

    def test_send_from_context(self, conn, socket_pair):
        """Test HandlerContext.send_line goes to the owning socket."""
        conn.open_context(FunctionHandler(lambda ctx, line: ctx.send_line(line[::-1])))

        conn.dispatch(b"abc")

        assert socket_pair[1].recv(100) == b"cba\n"

    def test_send_large_payload(self, conn, socket_pair):
        """Test that send() writes everything even past the socket buffer."""
        payload = b"x" * (4 * 1024 * 1024)
        received = bytearray()

        def drain():
            while len(received) < len(payload):
                chunk = socket_pair[1].recv(65536)
                if not chunk:
                    break
                received.extend(chunk)

        reader = threading.Thread(target=drain)
        reader.start()
        conn.send(payload)
        reader.join(timeout=10.0)

        assert len(received) == len(payload)

    def test_send_times_out_when_peer_stops_reading(self, socket_pair):
        """Test send_timeout bounds the wait."""
        conn = Connection(socket=socket_pair[0], address=("127.0.0.1", 1), send_timeout=0.2)

        with pytest.raises(TimeoutError):
            conn.send(b"x" * (16 * 1024 * 1024))

    def test_send_waits_on_high_descriptor(self):
        """Test waiting for writability works for descriptors past FD_SETSIZE."""
        resource = pytest.importorskip("resource")
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
        target = 1500
        if hard != resource.RLIM_INFINITY and hard <= target:
            pytest.skip("descriptor limit too low")
        if soft != resource.RLIM_INFINITY and soft <= target:
            resource.setrlimit(resource.RLIMIT_NOFILE, (target + 1, hard))

        server_side, client_side = socket.socketpair()
        high = None
        try:
            high = socket.socket(fileno=os.dup2(server_side.fileno(), target))
            server_side.close()
            conn = Connection(socket=high, address=("127.0.0.1", 1), send_timeout=0.2)
            assert conn.fd == target

            with pytest.raises(TimeoutError):
                conn.send(b"x" * (8 * 1024 * 1024))
        finally:
            if high is not None:
                high.close()
            server_side.close()
            client_side.close()
            resource.setrlimit(resource.RLIMIT_NOFILE, (soft, hard))

    def test_send_after_close(self, conn):
        """Test sending on a closed connection."""
        conn.close()

        with pytest.raises(ConnectionError):
            conn.send(b"late")

    def test_destroyed_context_cannot_send(self, conn):
        """Test ContextDestroyedError from send()."""
        conn.open_context(RecordingHandler())
        context = conn.context
        conn.destroy_context()

        with pytest.raises(ContextDestroyedError):
            context.send(b"late")


class TestConnectionClose:
    """Tests for closing."""

    def test_close(self, conn, socket_pair):
        """Test close releases the socket and signals EOF to the peer."""
        list(conn.feed(b"unterminated"))
        conn.close()

        assert conn.state == ConnectionState.CLOSED
        assert conn.framer.buffered == 0
        assert socket_pair[1].recv(100) == b""

    def test_close_idempotent(self, conn):
        """Test calling close twice."""
        conn.close()
        conn.close()

        assert conn.state == ConnectionState.CLOSED

    def test_disconnect_request(self, conn):
        """Test HandlerContext.disconnect flags the connection."""
        conn.open_context(RecordingHandler())
        conn.context.disconnect()

        assert conn.close_requested is True


class TestWorkerHandOff:
    """Tests for the per-connection queue used in pool mode."""

    def test_enqueue_schedules_once(self, conn):
        """Test only the first enqueue asks for a worker."""
        assert conn.enqueue([b"a"]) is True
        assert conn.enqueue([b"b"]) is False

        assert conn.next_pending() == b"a"
        assert conn.next_pending() == b"b"
        assert conn.next_pending() is None
        assert conn.is_idle

    def test_enqueue_nothing(self, conn):
        """Test an empty batch does not schedule."""
        assert conn.enqueue([]) is False

    def test_abort_discards(self, conn):
        """Test abort drops queued lines and refuses new ones."""
        conn.enqueue([b"a", b"b"])

        assert conn.abort() is False  # A worker still owns the queue
        assert conn.next_pending() is None
        assert conn.is_idle
        assert conn.enqueue([b"c"]) is False

    def test_finish_input_drains(self, conn):
        """Test graceful close keeps queued lines."""
        conn.enqueue([b"a", b"b"])

        assert conn.finish_input() is False
        assert conn.next_pending() == b"a"
        assert conn.next_pending() == b"b"
        assert conn.next_pending() is None
        assert conn.enqueue([b"c"]) is False

    def test_finish_input_when_idle(self, conn):
        """Test graceful close with nothing queued."""
        assert conn.finish_input() is True

    def test_fail_releases(self, conn):
        """Test fail() after a handler error."""
        conn.enqueue([b"a", b"b"])
        conn.next_pending()
        conn.fail()

        assert conn.is_idle
        assert conn.next_pending() is None
