"""
Unit tests for the event loop, driven one cycle at a time.
"""

import json
import logging
import socket
import time

import pytest

from lineserver.config import ServerConfig
from lineserver.core.connection import Connection, deliver_line
from lineserver.core.listener import Listener
from lineserver.core.multiplexer import LoopState, Multiplexer
from lineserver.core.registry import ConnectionRegistry
from lineserver.core.thread_pool import ThreadPool
from lineserver.middleware import LoggingMiddleware, MiddlewarePipeline
from helpers import LineClient, RecordingHandler


@pytest.fixture
def listener():
    listener = Listener("127.0.0.1", 0, backlog=16)
    listener.open()
    yield listener
    listener.close()


@pytest.fixture
def make_loop(listener):
    """Factory: make_loop(handler, pool=None, dispatcher=..., registry=None, **config)."""
    loops = []
    clients = []

    def _make(handler=None, pool=None, dispatcher=deliver_line, registry=None, **overrides):
        settings = dict(host="127.0.0.1", port=0, backlog=16)
        settings.update(overrides)
        loop = Multiplexer(
            listener,
            handler or RecordingHandler(echo=True),
            ServerConfig(**settings),
            pool=pool,
            dispatcher=dispatcher,
            registry=registry,
        )
        loops.append(loop)
        return loop

    def _connect() -> LineClient:
        client = LineClient(listener.address)
        clients.append(client)
        return client

    _make.connect = _connect
    yield _make

    for client in clients:
        client.close()
    for loop in loops:
        loop.close()


def pump(loop: Multiplexer, predicate, timeout: float = 5.0) -> bool:
    """Run loop cycles until predicate() holds."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        loop.run_once(0.05)
        if predicate():
            return True
    return predicate()


class TestAccept:
    """Tests for admitting connections."""

    def test_accept_creates_context(self, make_loop):
        """Test an accepted client gets exactly one context."""
        handler = RecordingHandler()
        loop = make_loop(handler)
        make_loop.connect()

        assert pump(loop, lambda: len(loop.registry) == 1)
        assert len(handler.contexts) == 1
        assert loop.stats["accepted"] == 1

    def test_max_connections(self, make_loop):
        """Test clients beyond the limit are closed straight away."""
        handler = RecordingHandler()
        loop = make_loop(handler, max_connections=1)
        make_loop.connect()
        assert pump(loop, lambda: loop.stats["accepted"] == 1)

        extra = make_loop.connect()
        assert pump(loop, lambda: loop.stats["rejected"] == 1)

        assert extra.is_closed_by_peer()
        assert len(loop.registry) == 1
        assert len(handler.contexts) == 1

    def test_context_failure_rejects(self, make_loop):
        """Test a failing create_context closes the client unregistered."""
        handler = RecordingHandler(fail_create=True)
        loop = make_loop(handler)
        client = make_loop.connect()

        assert pump(loop, lambda: loop.stats["rejected"] == 1)
        assert len(loop.registry) == 0
        assert handler.destroyed == 0
        assert client.is_closed_by_peer()

    def test_disconnect_from_create_context(self, make_loop):
        """Test a context that disconnects during creation is removed."""
        class Refuse(RecordingHandler):
            def create_context(self, connection):
                context = super().create_context(connection)
                context.send_line("busy")
                context.disconnect()
                return context

        handler = Refuse()
        loop = make_loop(handler)
        client = make_loop.connect()

        assert pump(loop, lambda: loop.stats["removed"] == 1)
        assert client.read_line() == b"busy"
        assert handler.destroyed == 1

    def test_duplicate_descriptor_keeps_existing(self, make_loop, socket_pair, caplog):
        """Test a descriptor already in the registry is not overwritten."""
        handler = RecordingHandler()
        registry = ConnectionRegistry()
        loop = make_loop(handler, registry=registry)
        existing = Connection(socket=socket_pair[0], address=("10.0.0.9", 1))
        client = make_loop.connect()

        # accept() gets the lowest free descriptor, which is this one
        spare = socket.socket()
        fd = spare.fileno()
        spare.close()
        registry.add(fd, existing)

        assert pump(loop, lambda: handler.destroyed == 1)
        assert registry.get(fd) is existing
        assert len(registry) == 1
        assert loop.stats["accepted"] == 0
        assert client.is_closed_by_peer()
        assert any(
            r.levelno == logging.CRITICAL and f"fd {fd}" in r.getMessage()
            for r in caplog.records
        )


class TestLines:
    """Tests for reading and dispatch on the loop thread."""

    def test_echo(self, make_loop):
        """Test a line goes in and comes back."""
        loop = make_loop()
        client = make_loop.connect()
        client.send(b"hello\n")

        assert pump(loop, lambda: loop.stats["lines"] == 1)
        assert client.read_line() == b"hello"

    def test_partial_line_waits(self, make_loop):
        """Test nothing is delivered until the terminator arrives."""
        handler = RecordingHandler()
        loop = make_loop(handler)
        client = make_loop.connect()

        client.send(b"hel")
        pump(loop, lambda: False, timeout=0.2)
        assert handler.lines == []

        client.send(b"lo\n")
        assert pump(loop, lambda: handler.lines == [b"hello"])

    def test_peer_close_destroys_once(self, make_loop):
        """Test EOF removes the connection and destroys its context once."""
        handler = RecordingHandler()
        loop = make_loop(handler)
        client = make_loop.connect()
        client.send(b"a\nunterminated")
        assert pump(loop, lambda: len(loop.registry) == 1)

        client.close()

        assert pump(loop, lambda: loop.stats["removed"] == 1)
        assert handler.lines == [b"a"]
        assert handler.destroyed == 1
        assert len(loop.registry) == 0

    def test_handler_error_closes_only_that_connection(self, make_loop):
        """Test a raising handler drops its own connection."""
        handler = RecordingHandler(echo=True, fail_on=b"boom")
        loop = make_loop(handler)
        bad = make_loop.connect()
        good = make_loop.connect()
        assert pump(loop, lambda: len(loop.registry) == 2)

        bad.send(b"boom\nnever\n")
        assert pump(loop, lambda: loop.stats["removed"] == 1)

        good.send(b"fine\n")
        assert pump(loop, lambda: b"fine" in handler.lines)
        assert good.read_line() == b"fine"
        assert bad.is_closed_by_peer()
        assert b"never" not in handler.lines

    def test_disconnect_stops_delivery(self, make_loop):
        """Test lines after a disconnect request are not delivered."""
        handler = RecordingHandler(disconnect_on=b"bye")
        loop = make_loop(handler)
        client = make_loop.connect()

        client.send(b"one\nbye\ntwo\n")

        assert pump(loop, lambda: loop.stats["removed"] == 1)
        assert handler.lines == [b"one", b"bye"]
        assert handler.destroyed == 1

    def test_overflow_close(self, make_loop):
        """Test the close policy drops a client sending an overlong line."""
        handler = RecordingHandler()
        loop = make_loop(handler, max_line_size=8, overflow_policy="close")
        client = make_loop.connect()

        client.send(b"ok\n" + b"x" * 20)

        assert pump(loop, lambda: loop.stats["overflow_closes"] == 1)
        assert handler.lines == [b"ok"]
        assert handler.destroyed == 1
        assert client.is_closed_by_peer()


class TestIdleAndShutdown:
    """Tests for idle sweeping, stop and close."""

    def test_idle_timeout(self, make_loop):
        """Test a silent connection is removed."""
        handler = RecordingHandler()
        loop = make_loop(handler, idle_timeout=0.2)
        client = make_loop.connect()

        assert pump(loop, lambda: loop.stats["removed"] == 1)
        assert handler.destroyed == 1
        assert client.is_closed_by_peer()

    def test_stop_before_run(self, make_loop):
        """Test run() returns at once if stop() came first."""
        loop = make_loop()
        loop.stop()

        loop.run()

        assert loop.state == LoopState.STOPPED
        assert loop.is_running is False

    def test_abort_all(self, make_loop):
        """Test every connection is removed on shutdown."""
        handler = RecordingHandler()
        loop = make_loop(handler)
        for _ in range(3):
            make_loop.connect()
        assert pump(loop, lambda: len(loop.registry) == 3)

        loop.abort_all()

        assert len(loop.registry) == 0
        assert handler.destroyed == 3

    def test_close_releases_everything(self, make_loop, listener):
        """Test close() finalizes connections and leaves the listener open."""
        handler = RecordingHandler()
        loop = make_loop(handler)
        make_loop.connect()
        assert pump(loop, lambda: len(loop.registry) == 1)

        loop.close()
        loop.close()

        assert handler.destroyed == 1
        assert listener.is_open
        with pytest.raises(RuntimeError):
            loop.run_once(0)


class TestPoolMode:
    """Tests for handing lines to worker threads."""

    @pytest.fixture
    def pool(self):
        pool = ThreadPool(min_workers=2, max_workers=2, queue_size=10, idle_timeout=0.1)
        pool.start()
        yield pool
        pool.shutdown(wait=False)

    def test_lines_in_order(self, make_loop, pool):
        """Test a worker delivers one connection's lines in order."""
        handler = RecordingHandler(echo=True)
        loop = make_loop(handler, pool=pool, workers=2)
        client = make_loop.connect()

        client.send(b"".join(b"%d\n" % i for i in range(50)))

        assert pump(loop, lambda: len(handler.lines) == 50)
        assert handler.lines == [b"%d" % i for i in range(50)]
        assert client.read_lines(50) == [b"%d" % i for i in range(50)]

    def test_worker_error_removes_connection(self, make_loop, pool):
        """Test a handler error on a worker reaches the loop."""
        handler = RecordingHandler(fail_on=b"boom")
        loop = make_loop(handler, pool=pool, workers=2)
        client = make_loop.connect()

        client.send(b"boom\n")

        assert pump(loop, lambda: loop.stats["removed"] == 1)
        assert handler.destroyed == 1
        assert client.is_closed_by_peer()

    def test_peer_close_waits_for_worker(self, make_loop, pool):
        """Test queued lines are handled before the context is destroyed."""
        handler = RecordingHandler(delay=0.05)
        loop = make_loop(handler, pool=pool, workers=2)
        client = make_loop.connect()

        client.send(b"a\nb\nc\n")
        client.sock.shutdown(socket.SHUT_WR)

        assert pump(loop, lambda: loop.stats["removed"] == 1)
        assert handler.lines == [b"a", b"b", b"c"]
        assert handler.destroyed == 1

    def test_access_log_line_numbers(self, make_loop, caplog):
        """Test each logged line carries its own position, not the batch size."""
        caplog.set_level(logging.INFO, logger="lineserver.access")
        pool = ThreadPool(min_workers=1, max_workers=1, queue_size=10, idle_timeout=0.1)
        pool.start()
        try:
            handler = RecordingHandler()
            dispatcher = MiddlewarePipeline().add(LoggingMiddleware(log_format="json")).wrap(deliver_line)
            loop = make_loop(handler, pool=pool, dispatcher=dispatcher, workers=1)
            client = make_loop.connect()

            client.send(b"a\nb\nc\n")

            assert pump(loop, lambda: len(handler.lines) == 3)
        finally:
            pool.shutdown(wait=True, timeout=2.0)

        records = [json.loads(r.getMessage()) for r in caplog.records if r.name == "lineserver.access"]
        assert [record["line_number"] for record in records] == [1, 2, 3]
