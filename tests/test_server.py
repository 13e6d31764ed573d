"""
End-to-end tests: real sockets, real plugin module, sequential accept loop
"""
import asyncio
import json
import textwrap

import pytest

from wls.core import server_core
from wls.core.config import ServerConfig
from wls.core.plugin_loader import load_capability
from wls.core.server_core import LanguageServer, main
from wls.core.server_utils import ServerStartupError, create_listening_socket

PLUGIN_SOURCE = """
    def ExtractLanguage(html):
        if "application/ld+json" in html:
            return "json-ld"
        return None
"""


@pytest.fixture
def plugin_path(tmp_path):
    path = tmp_path / "structured.py"
    path.write_text(textwrap.dedent(PLUGIN_SOURCE), encoding="utf-8")
    return path


@pytest.fixture
def config():
    return ServerConfig(host="127.0.0.1", port=0, valid=True)


async def start(server):
    task = asyncio.create_task(server.serve(install_signal_handlers=False))
    await asyncio.wait_for(server.started.wait(), timeout=5)
    return task


async def exchange(port, payload, half_close=False):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(payload)
    await writer.drain()
    if half_close:
        writer.write_eof()
    data = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    await writer.wait_closed()
    return data


def parse(response):
    head, body = response.split(b"\r\n\r\n", 1)
    return head.split(b"\r\n")[0].decode(), body


def post_extract(body):
    return (
        b"POST /extract HTTP/1.1\r\nHost: localhost\r\nContent-Length: "
        + str(len(body)).encode()
        + b"\r\n\r\n"
        + body
    )


@pytest.mark.asyncio
async def test_serves_health_and_extract(config, plugin_path):
    capability = load_capability(plugin_path)
    server = LanguageServer(config, capability)
    task = await start(server)
    port = server.bound_address[1]
    try:
        status, body = parse(await exchange(port, b"GET /health HTTP/1.1\r\n\r\n"))
        assert status == "HTTP/1.1 200 OK"
        assert body == b'{"status":"healthy"}'

        html = b'<html><head><script type="application/ld+json">...</script></head></html>'
        status, body = parse(await exchange(port, post_extract(html)))
        assert status == "HTTP/1.1 200 OK"
        assert json.loads(body) == {"language": "json-ld"}

        status, body = parse(await exchange(port, post_extract(b"<p>hello</p>")))
        assert json.loads(body) == {"language": "unknown"}

        status, body = parse(await exchange(port, b"GET /nope HTTP/1.1\r\n\r\n"))
        assert status == "HTTP/1.1 404 Bad Request"
    finally:
        server.shutdown()
        await asyncio.wait_for(task, timeout=5)

    assert capability.closed
    assert server.connections_handled == 4


@pytest.mark.asyncio
async def test_body_sent_in_pieces(config, plugin_path):
    server = LanguageServer(config, load_capability(plugin_path))
    task = await start(server)
    port = server.bound_address[1]
    try:
        html = b'<script type="application/ld+json">' + b"x" * 50000 + b"</script>"
        request = post_extract(html)
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        for i in range(0, len(request), 4096):
            writer.write(request[i:i + 4096])
            await writer.drain()
            await asyncio.sleep(0)
        data = await asyncio.wait_for(reader.read(), timeout=5)
        writer.close()
        await writer.wait_closed()
        status, body = parse(data)
        assert status == "HTTP/1.1 200 OK"
        assert body == b'{"language":"json-ld"}'
    finally:
        server.shutdown()
        await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_truncated_body_is_rejected(config, plugin_path):
    server = LanguageServer(config, load_capability(plugin_path))
    task = await start(server)
    port = server.bound_address[1]
    try:
        request = post_extract(b"<html>cut short</html>")[:-6]
        status, body = parse(await exchange(port, request, half_close=True))
        assert status == "HTTP/1.1 400 Bad Request"
        assert body == b'{"error":"Incomplete request body"}'

        # Closing before the headers end gets no response at all
        assert await exchange(port, b"GET /health HTTP/1.1\r\n", half_close=True) == b""

        # The server is still serving
        status, _ = parse(await exchange(port, b"GET /health HTTP/1.1\r\n\r\n"))
        assert status == "HTTP/1.1 200 OK"
    finally:
        server.shutdown()
        await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_rejected_request_response_survives_unread_body(config, plugin_path):
    server = LanguageServer(config, load_capability(plugin_path))
    task = await start(server)
    port = server.bound_address[1]
    try:
        request = (
            b"POST /extract HTTP/1.1\r\nContent-Length: 12abc\r\n\r\n" + b"x" * 200000
        )
        status, body = parse(await exchange(port, request))
        assert status == "HTTP/1.1 400 Bad Request"
        assert body == b'{"error":"Invalid Content-Length"}'

        status, _ = parse(await exchange(port, b"GET /health HTTP/1.1\r\n\r\n"))
        assert status == "HTTP/1.1 200 OK"
    finally:
        server.shutdown()
        await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_oversized_body_response_survives_unread_body(plugin_path):
    config = ServerConfig(host="127.0.0.1", port=0, valid=True, max_body_size=1000)
    server = LanguageServer(config, load_capability(plugin_path))
    task = await start(server)
    port = server.bound_address[1]
    try:
        status, body = parse(await exchange(port, post_extract(b"x" * 200000), half_close=True))
        assert status == "HTTP/1.1 413 Bad Request"
        assert body == b'{"error":"Request too large"}'
    finally:
        server.shutdown()
        await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_connections_are_handled_one_at_a_time(config, plugin_path):
    server = LanguageServer(config, load_capability(plugin_path))
    task = await start(server)
    port = server.bound_address[1]
    try:
        # First client sends half a request and stalls
        slow_reader, slow_writer = await asyncio.open_connection("127.0.0.1", port)
        slow_writer.write(b"GET /health HTTP/1.1\r\n")
        await slow_writer.drain()

        fast = asyncio.create_task(exchange(port, b"GET /health HTTP/1.1\r\n\r\n"))
        await asyncio.sleep(0.2)
        assert not fast.done()

        slow_writer.write(b"\r\n")
        await slow_writer.drain()
        status, _ = parse(await asyncio.wait_for(slow_reader.read(), timeout=5))
        assert status == "HTTP/1.1 200 OK"
        slow_writer.close()
        await slow_writer.wait_closed()

        status, _ = parse(await asyncio.wait_for(fast, timeout=5))
        assert status == "HTTP/1.1 200 OK"
    finally:
        server.shutdown()
        await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_bind_failure_releases_capability(plugin_path):
    occupied = create_listening_socket("127.0.0.1", 0, 1)
    try:
        port = occupied.getsockname()[1]
        capability = load_capability(plugin_path)
        server = LanguageServer(ServerConfig(host="127.0.0.1", port=port, valid=True), capability)
        with pytest.raises(ServerStartupError):
            await server.serve(install_signal_handlers=False)
        assert capability.closed
    finally:
        occupied.close()


def test_event_loop_setup_failure_releases_capability(plugin_path, monkeypatch):
    def broken_setup():
        raise ServerStartupError("Failed to initialize event loop")

    monkeypatch.setattr(server_core, "setup_uvloop", broken_setup)
    capability = load_capability(plugin_path)
    server = LanguageServer(ServerConfig(host="127.0.0.1", port=0, valid=True), capability)
    with pytest.raises(ServerStartupError):
        server.run()
    assert capability.closed


def test_invalid_server_configuration(plugin_path):
    capability = load_capability(plugin_path)
    try:
        with pytest.raises(ValueError, match="Port number must be between 0 and 65535"):
            LanguageServer(ServerConfig(port=70000, valid=True), capability)
        with pytest.raises(ValueError, match="Backlog must be at least 1"):
            LanguageServer(ServerConfig(backlog=0, valid=True), capability)
    finally:
        capability.close()


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("WLS_HOST", "WLS_PORT", "WLS_PLUGIN_PATH"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(server_core, "configure_logging", lambda **kwargs: None)


def test_main_without_configuration(clean_env, capsys):
    assert main([]) == 1
    assert "ERROR: Configuration not found." in capsys.readouterr().err


def test_main_with_bad_port(clean_env, monkeypatch, capsys):
    monkeypatch.setenv("WLS_HOST", "localhost")
    monkeypatch.setenv("WLS_PORT", "not-a-port")
    assert main([]) == 1
    assert "ERROR:" in capsys.readouterr().err


def test_main_with_missing_plugin(clean_env, tmp_path):
    (tmp_path / "config.json").write_text(
        '{"host":"localhost","port":5000,"pluginPath":"%s"}' % (tmp_path / "missing.py"),
        encoding="utf-8",
    )
    assert main([]) == 1


def test_main_with_plugin_missing_symbol(clean_env, tmp_path):
    plugin = tmp_path / "empty.py"
    plugin.write_text("x = 1\n", encoding="utf-8")
    config = tmp_path / "other.json"
    config.write_text('{"port":5000,"pluginPath":"%s"}' % plugin, encoding="utf-8")
    assert main(["--config", str(config)]) == 1


def test_main_passes_log_file(clean_env, monkeypatch, tmp_path):
    calls = []
    monkeypatch.setattr(server_core, "configure_logging", lambda **kwargs: calls.append(kwargs))
    (tmp_path / "config.json").write_text('{"pluginPath":"missing.py"}', encoding="utf-8")
    assert main(["--log-file", str(tmp_path / "wls.log")]) == 1
    assert calls[0]["log_file"] == str(tmp_path / "wls.log")
