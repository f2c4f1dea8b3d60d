from __future__ import annotations

import asyncio
import socket
import struct

import pytest

from n2k_tcp_server.codec import N2KMessage, encode
from n2k_tcp_server.config import EndpointConfig
from n2k_tcp_server.events import ANALYZER_OUT, JSON_OUT, EventBus
from n2k_tcp_server.exceptions import BindError, UnknownFormatError
from n2k_tcp_server.logging_config import error_handler
from n2k_tcp_server.tcp_server import BroadcastServer

TIMEOUT = 2.0

HEADING = N2KMessage(pgn=127250, src=1, data=[0xFF, 0x10, 0x27, 0x00, 0x00, 0xFF, 0x7F, 0xFD])
RUDDER = N2KMessage(pgn=127245, src=3, data=[0x00, 0xF8, 0xFF, 0x7F, 0x50, 0x00, 0xFF, 0xFF])


async def _start(bus: EventBus, **endpoint) -> BroadcastServer:
    endpoint.setdefault("host", "127.0.0.1")
    endpoint.setdefault("port", 0)
    server = BroadcastServer(EndpointConfig(**endpoint), bus)
    await server.start()
    return server


async def _wait_until(predicate) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), TIMEOUT)


async def _connect(server: BroadcastServer, expected: int):
    reader, writer = await asyncio.open_connection("127.0.0.1", server.bound_port)
    await _wait_until(lambda: server.connection_count == expected)
    return reader, writer


async def _read(reader: asyncio.StreamReader, n: int) -> bytes:
    return await asyncio.wait_for(reader.readexactly(n), TIMEOUT)


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


@pytest.mark.asyncio
async def test_end_to_end_two_clients_then_one() -> None:
    bus = EventBus()
    server = await _start(bus, format="actisense", lineDelimiter="LF")
    try:
        reader_a, writer_a = await _connect(server, 1)
        reader_b, writer_b = await _connect(server, 2)

        bus.emit(JSON_OUT, HEADING)
        first = encode(HEADING, "actisense") + b"\n"
        got_a = await _read(reader_a, len(first))
        got_b = await _read(reader_b, len(first))
        assert got_a == got_b
        assert got_a.endswith(b"\n")
        # Only the timestamp may differ between two encodings
        assert got_a.split(b",", 1)[1] == first.split(b",", 1)[1]

        await _close(writer_a)
        await _wait_until(lambda: server.connection_count == 1)

        assert bus.emit(JSON_OUT, RUDDER) == 1
        second = await asyncio.wait_for(reader_b.readline(), TIMEOUT)
        assert b",127245,3,255,8," in second
        assert second.endswith(b"\n")

        await _close(writer_b)
    finally:
        await server.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "delimiter, terminator",
    [("CRLF", b"\r\n"), ("LF", b"\n"), ("None", b""), ("Tab", b"")],
)
async def test_frame_terminators(delimiter, terminator) -> None:
    bus = EventBus()
    server = await _start(bus, format="digitalYacht", lineDelimiter=delimiter)
    try:
        reader, writer = await _connect(server, 1)
        assert server.broadcast_message(HEADING) == 1
        payload = encode(HEADING, "digitalYacht")
        assert await _read(reader, len(payload) + len(terminator)) == payload + terminator

        await server.stop()
        assert await asyncio.wait_for(reader.read(), TIMEOUT) == b""
        await _close(writer)
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_both_host_events_are_broadcast() -> None:
    bus = EventBus()
    server = await _start(bus, format="ydgw", lineDelimiter="CRLF")
    try:
        reader, writer = await _connect(server, 1)
        bus.emit(ANALYZER_OUT, HEADING)
        bus.emit(JSON_OUT, RUDDER.model_dump())

        assert await asyncio.wait_for(reader.readline(), TIMEOUT) == b"09F11201 FF 10 27 00 00 FF 7F FD\r\n"
        assert await asyncio.wait_for(reader.readline(), TIMEOUT) == b"09F10D03 00 F8 FF 7F 50 00 FF FF\r\n"
        await _close(writer)
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_registry_tracks_open_connections() -> None:
    bus = EventBus()
    server = await _start(bus)
    try:
        clients = []
        for n in range(1, 6):
            clients.append(await _connect(server, n))

        for _, writer in clients[:2]:
            await _close(writer)
        await _wait_until(lambda: server.connection_count == 3)

        assert [entry.id for entry in server.registry.snapshot()] == [2, 3, 4]

        for _, writer in clients[2:]:
            await _close(writer)
        await _wait_until(lambda: server.connection_count == 0)
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_client_input_is_discarded() -> None:
    bus = EventBus()
    server = await _start(bus, lineDelimiter="LF")
    try:
        reader, writer = await _connect(server, 1)
        writer.write(b"$PCDIN,01F119,00000000,0F,2AAF00D1067414FF*59\r\n")
        await writer.drain()

        bus.emit(JSON_OUT, HEADING)
        line = await asyncio.wait_for(reader.readline(), TIMEOUT)
        assert b",127250,1,255,8,ff,10,27,00,00,ff,7f,fd\n" in line
        assert server.connection_count == 1
        await _close(writer)
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_write_failure_is_isolated(monkeypatch) -> None:
    bus = EventBus()
    server = await _start(bus, format="digitalYacht", lineDelimiter="LF")
    try:
        clients = [await _connect(server, n) for n in (1, 2, 3)]
        broken = server.registry.get(1)

        def failing_write(data) -> None:
            raise ConnectionResetError("peer went away")

        monkeypatch.setattr(broken.writer, "write", failing_write)

        assert server.broadcast_message(HEADING) == 2
        frame = encode(HEADING, "digitalYacht") + b"\n"
        for index in (0, 2):
            assert await _read(clients[index][0], len(frame)) == frame

        assert 1 not in server.registry
        assert server.write_errors == 1

        # The dropped socket was closed by the server
        assert await asyncio.wait_for(clients[1][0].read(), TIMEOUT) == b""

        assert server.broadcast_message(RUDDER) == 2
        for _, writer in clients:
            await _close(writer)
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_closing_writer_is_dropped() -> None:
    bus = EventBus()
    server = await _start(bus)
    try:
        reader_a, writer_a = await _connect(server, 1)
        reader_b, writer_b = await _connect(server, 2)

        server.registry.get(0).writer.close()
        assert server.send(b"frame\n") == 1
        assert server.connection_count == 1
        assert await _read(reader_b, 6) == b"frame\n"

        await _close(writer_a)
        await _close(writer_b)
        await _wait_until(lambda: server.connection_count == 0)
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_bad_message_does_not_stop_broadcasts() -> None:
    bus = EventBus()
    server = await _start(bus, format="ydgw", lineDelimiter="LF")
    try:
        reader, writer = await _connect(server, 1)

        assert server.broadcast_message({"pgn": 127250}) == 0
        assert server.broadcast_message(N2KMessage(pgn=126996, data=bytes(300))) == 0
        assert server.encode_errors == 2

        bus.emit(JSON_OUT, HEADING)
        assert await asyncio.wait_for(reader.readline(), TIMEOUT) == b"09F11201 FF 10 27 00 00 FF 7F FD\n"
        await _close(writer)
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_broadcast_without_clients() -> None:
    bus = EventBus()
    server = await _start(bus)
    try:
        assert bus.emit(JSON_OUT, HEADING) == 1
        assert server.messages_received == 1
        assert server.frames_sent == 0
    finally:
        await server.stop()


def test_unknown_format_is_rejected_before_binding() -> None:
    bus = EventBus()
    with pytest.raises(UnknownFormatError):
        BroadcastServer(EndpointConfig(format="seatalk", port=0), bus)
    assert bus.listener_count(JSON_OUT) == 0


@pytest.mark.asyncio
async def test_bind_failure_raises_bind_error() -> None:
    bus = EventBus()
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]

        server = BroadcastServer(EndpointConfig(host="127.0.0.1", port=port), bus)
        with pytest.raises(BindError) as excinfo:
            await server.start()

        assert excinfo.value.port == port
        assert not server.is_running()
        assert bus.listener_count(JSON_OUT) == 0
        assert bus.listener_count(ANALYZER_OUT) == 0
    finally:
        blocker.close()


@pytest.mark.asyncio
async def test_stop_releases_everything_and_is_idempotent() -> None:
    bus = EventBus()
    server = await _start(bus)
    port = server.bound_port
    reader, writer = await _connect(server, 1)

    await server.stop()
    await server.stop()

    assert not server.is_running()
    assert server.connection_count == 0
    assert bus.listener_count(JSON_OUT) == 0
    assert bus.listener_count(ANALYZER_OUT) == 0
    assert await asyncio.wait_for(reader.read(), TIMEOUT) == b""
    await _close(writer)

    with pytest.raises(OSError):
        await asyncio.open_connection("127.0.0.1", port)


@pytest.mark.asyncio
async def test_stop_before_start() -> None:
    server = BroadcastServer(EndpointConfig(port=0), EventBus())
    await server.stop()
    assert not server.is_running()


@pytest.mark.asyncio
async def test_stats() -> None:
    bus = EventBus()
    server = await _start(bus, format="ydgw")
    try:
        reader, writer = await _connect(server, 1)
        bus.emit(JSON_OUT, HEADING)
        await asyncio.wait_for(reader.readline(), TIMEOUT)

        stats = server.get_stats()
        assert stats["format"] == "ydgw"
        assert stats["port"] == server.bound_port
        assert stats["running"] is True
        assert stats["connections"] == 1
        assert stats["messages_received"] == 1
        assert stats["frames_sent"] == 1
        await _close(writer)
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_reset_connection_is_removed_and_counted() -> None:
    bus = EventBus()
    server = await _start(bus)
    try:
        before = error_handler.get_error_stats().get("connection", 0)
        client = socket.create_connection(("127.0.0.1", server.bound_port), timeout=TIMEOUT)
        await _wait_until(lambda: server.connection_count == 1)

        # Zero linger turns close() into a RST
        client.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        client.close()

        await _wait_until(lambda: server.connection_count == 0)
        assert error_handler.get_error_stats().get("connection", 0) == before + 1
        assert server.send(b"frame\n") == 0
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_bound_port_survives_stop() -> None:
    server = await _start(EventBus())
    port = server.bound_port
    assert port != 0

    await server.stop()
    assert server.bound_port == port
    assert server.get_stats()["port"] == port


@pytest.mark.asyncio
async def test_stuck_client_is_dropped_at_buffer_limit() -> None:
    bus = EventBus()
    server = await _start(bus, write_buffer_limit=4096)
    try:
        reader, writer = await _connect(server, 1)
        chunk = b"x" * 65536

        # The client never reads, so the kernel buffers fill and the rest queues in the transport
        for _ in range(1000):
            if server.send(chunk) == 0:
                break

        assert server.connection_count == 0
        assert server.write_errors == 1
        assert server.send(chunk) == 0

        reader_b, writer_b = await _connect(server, 1)
        assert server.send(b"frame\n") == 1
        assert await _read(reader_b, 6) == b"frame\n"

        await _close(writer)
        await _close(writer_b)
    finally:
        await asyncio.wait_for(server.stop(), TIMEOUT)


@pytest.mark.asyncio
async def test_stop_does_not_wait_for_unread_data() -> None:
    bus = EventBus()
    server = await _start(bus, write_buffer_limit=0)
    reader, writer = await _connect(server, 1)
    for _ in range(200):
        server.send(b"x" * 65536)
    assert server.connection_count == 1

    await asyncio.wait_for(server.stop(), TIMEOUT)
    assert server.connection_count == 0
    writer.transport.abort()
