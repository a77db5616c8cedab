import socket
import threading

import pytest

from webfs.config import Config
from webfs.options import AccessLog
from webfs.server import Server, main

CONTENT = b"hello, static world\n"
PAGE = b"<p>index page</p>\n"


@pytest.fixture
def docroot(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    (root / "hello.txt").write_bytes(CONTENT)
    (root / "page.html").write_bytes(PAGE)
    (root / "index.html").write_bytes(PAGE)
    (root / "sub").mkdir()
    (root / "sub" / "inner.txt").write_bytes(CONTENT)
    return root


def _config(tmp_path, docroot, **overrides):
    values = dict(
        doc_root=str(docroot),
        listen_ip="127.0.0.1",
        listen_port="0",
        use_ipv6=False,
        mimetypes=str(tmp_path / "no-such-mime.types"),
        server_host="localhost",
        indexhtml="index.html",
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def start(tmp_path, docroot):
    running = []

    def _start(access_log=None, **overrides):
        server = Server(_config(tmp_path, docroot, **overrides))
        server.bind()
        server.access_log = access_log
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        running.append((server, thread))
        return server

    yield _start
    for server, thread in running:
        server.stop()
        thread.join(5)


def fetch(server, raw):
    with socket.create_connection(("127.0.0.1", server.config.tcp_port), timeout=5) as conn:
        conn.sendall(raw)
        chunks = []
        while True:
            data = conn.recv(65536)
            if not data:
                break
            chunks.append(data)
    return b"".join(chunks)


def split(data):
    head, _, body = data.partition(b"\r\n\r\n")
    lines = head.decode().split("\r\n")
    headers = {}
    for line in lines[1:]:
        name, _, value = line.partition(": ")
        headers[name] = value
    return lines[0], headers, body


def test_bind_reports_real_port(tmp_path, docroot):
    server = Server(_config(tmp_path, docroot))
    host, port = server.bind()
    try:
        assert host == "127.0.0.1"
        assert port == server.listener.getsockname()[1]
        assert server.config.tcp_port == port
        assert port > 0
    finally:
        server.stop()
        server.serve_forever()
    assert server.listener is None


def test_serve_forever_requires_bind(tmp_path, docroot):
    server = Server(_config(tmp_path, docroot))
    with pytest.raises(RuntimeError):
        server.serve_forever()


def test_stop_ends_serving_thread(start):
    server = start()
    thread = threading.Thread(target=lambda: None)
    server.stop()
    for _ in range(50):
        if server.listener is None:
            break
        thread.run()
        threading.Event().wait(0.05)
    assert server.listener is None


def test_get_regular_file(start):
    server = start()
    status, headers, body = split(fetch(server, b"GET /hello.txt HTTP/1.0\r\n\r\n"))
    assert status == "HTTP/1.1 200 OK"
    assert body == CONTENT
    assert headers["Content-Type"] == "text/plain"
    assert headers["Content-Length"] == str(len(CONTENT))
    assert headers["Connection"] == "Close"
    assert headers["Server"] == server.config.server_name


def test_mime_type_from_fallback_table(start):
    server = start()
    status, headers, body = split(fetch(server, b"GET /page.html HTTP/1.0\r\n\r\n"))
    assert status == "HTTP/1.1 200 OK"
    assert headers["Content-Type"] == "text/html"
    assert body == PAGE


def test_missing_file_is_404(start):
    server = start()
    status, _, body = split(fetch(server, b"GET /nothing-here HTTP/1.0\r\n\r\n"))
    assert status == "HTTP/1.1 404 Not Found"
    assert body == b"File or directory not found\n"


def test_garbage_is_400(start):
    server = start()
    status, _, body = split(fetch(server, b"BOGUS stuff\r\n\r\n"))
    assert status == "HTTP/1.1 400 Bad Request"
    assert body == b"*PLONK*\n"


def test_directory_index_file(start):
    server = start()
    status, headers, body = split(fetch(server, b"GET / HTTP/1.0\r\n\r\n"))
    assert status == "HTTP/1.1 200 OK"
    assert body == PAGE


def test_directory_without_slash_redirects(start):
    server = start()
    status, headers, body = split(fetch(server, b"GET /sub HTTP/1.0\r\n\r\n"))
    assert status == "HTTP/1.1 302 Redirect"
    assert headers["Location"].startswith("http://")
    assert headers["Location"].endswith(f":{server.config.tcp_port}/sub/")
    assert body == b"/sub/"


def test_head_sends_no_body(start):
    server = start()
    data = fetch(server, b"HEAD /hello.txt HTTP/1.0\r\n\r\n")
    status, headers, body = split(data)
    assert status == "HTTP/1.1 200 OK"
    assert headers["Content-Length"] == str(len(CONTENT))
    assert body == b""


def test_single_byte_range(start):
    server = start()
    raw = b"GET /hello.txt HTTP/1.0\r\nRange: bytes=0-3\r\n\r\n"
    status, headers, body = split(fetch(server, raw))
    assert status == "HTTP/1.1 206 Partial Content"
    assert body == CONTENT[:4]
    assert headers["Content-Range"] == f"bytes 0-3/{len(CONTENT)}"


def test_pipelined_keepalive_requests(start):
    server = start()
    raw = (
        b"GET /hello.txt HTTP/1.1\r\nHost: localhost\r\n\r\n"
        b"GET /page.html HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n"
    )
    data = fetch(server, raw)
    assert data.count(b"HTTP/1.1 200 OK\r\n") == 2
    first, _, rest = data.partition(b"HTTP/1.1 200 OK\r\n")[2].partition(b"HTTP/1.1 200 OK\r\n")
    assert b"Connection: Keep-Alive" in first
    assert first.endswith(CONTENT)
    assert b"Connection: Close" in rest
    assert rest.endswith(PAGE)


def test_access_log_records_request(start, tmp_path):
    log_path = tmp_path / "access.log"
    access_log = AccessLog(str(log_path), flush=True)
    server = start(access_log=access_log)
    fetch(server, b"GET /hello.txt HTTP/1.0\r\n\r\n")
    server.stop()
    for _ in range(100):
        if server.listener is None:
            break
        threading.Event().wait(0.05)
    access_log.close()
    text = log_path.read_text()
    assert text.startswith("127.0.0.1 - - [")
    assert f'"GET /hello.txt HTTP/1.0" 200 ' in text


def test_main_rejects_unknown_option():
    with pytest.raises(SystemExit) as info:
        main(["-Z"])
    assert info.value.code == 1