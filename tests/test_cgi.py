import os
import select
import socket
import time

import pytest

from webfs.cgi import build_environment, parse_cgi_header, read_cgi_header, start_cgi
from webfs.config import MAX_HEADER, Config, Request, State


@pytest.fixture
def config():
    return Config(
        doc_root="/srv/www",
        cgipath="/cgi-bin/",
        server_host="example.com",
        server_name="webfs/test",
    )


def _request(path="/cgi-bin/run.sh/extra/info", header=()):
    return Request(
        type="GET",
        uri=path + "?x=1",
        path=path,
        query="x=1",
        peerhost="192.0.2.1",
        peerserv="4242",
        header=list(header),
    )


def _pipe_request(data, close=True):
    read_fd, write_fd = os.pipe()
    os.write(write_fd, data)
    if close:
        os.close(write_fd)
        write_fd = None
    return Request(cgipipe=os.fdopen(read_fd, "rb", buffering=0)), write_fd


def test_environment_fixed_values(config):
    env = build_environment(
        _request(), config, "127.0.0.1", "8000", {"PATH": "/usr/bin", "HOME": "/root", "EDITOR": "vi"}
    )
    assert env["PATH"] == "/usr/bin"
    assert env["HOME"] == "/root"
    assert "EDITOR" not in env
    assert env["GATEWAY_INTERFACE"] == "CGI/1.1"
    assert env["SERVER_ADMIN"] == "root@localhost"
    assert env["SERVER_PROTOCOL"] == "HTTP/1.1"
    assert env["SERVER_SOFTWARE"] == "webfs/test"
    assert env["SERVER_NAME"] == "example.com"
    assert env["DOCUMENT_ROOT"] == "/srv/www"
    assert env["QUERY_STRING"] == "x=1"
    assert env["REMOTE_ADDR"] == "192.0.2.1"
    assert env["REMOTE_PORT"] == "4242"
    assert env["SERVER_ADDR"] == "127.0.0.1"
    assert env["SERVER_PORT"] == "8000"
    assert env["REQUEST_METHOD"] == "GET"


def test_environment_path_info(config):
    env = build_environment(_request(), config, "", "", {})
    assert env["PATH_INFO"] == "/extra/info"
    assert env["SCRIPT_NAME"] == "/cgi-bin/run.sh"
    assert env["SCRIPT_FILENAME"] == "/srv/www/cgi-bin/run.sh"


def test_environment_without_path_info(config):
    env = build_environment(_request("/cgi-bin/run.sh"), config, "", "", {})
    assert env["PATH_INFO"] == ""
    assert env["SCRIPT_NAME"] == "/cgi-bin/run.sh"


def test_environment_headers(config):
    req = _request(
        header=[
            "Host: example.com",
            "X-Forwarded-For: 192.0.2.7",
            "not a header line",
            "X-Forwarded-For: 192.0.2.8",
        ]
    )
    env = build_environment(req, config, "", "", {})
    assert env["HTTP_HOST"] == "example.com"
    assert env["HTTP_X_FORWARDED_FOR"] == "192.0.2.7"
    assert {name for name in env if name.startswith("HTTP_")} == {"HTTP_HOST", "HTTP_X_FORWARDED_FOR"}


def test_parse_header_crlf():
    data = b"Status: 404 Not Found\r\nContent-Type: text/html\r\nServer: other\r\nDate: x\r\n\r\nbody"
    status, lines, offset = parse_cgi_header(data)
    assert status == "404 Not Found"
    assert lines == ["Content-Type: text/html"]
    assert data[offset:] == b"body"


def test_parse_header_lf():
    data = b"Content-Type: text/plain\nConnection: keep\n\nhello"
    status, lines, offset = parse_cgi_header(data)
    assert status is None
    assert lines == ["Content-Type: text/plain"]
    assert data[offset:] == b"hello"


def test_parse_unterminated_header():
    with pytest.raises(ValueError):
        parse_cgi_header(b"Content-Type: text/plain\n")


def test_read_complete_header(config):
    req, _ = _pipe_request(b"A: 1\nB: 2\n\nhello")
    with req.cgipipe:
        read_cgi_header(req, config, 0)
    assert req.state is State.WRITE_HEADER
    assert req.status == 200
    assert req.hres.startswith(b"HTTP/1.1 200 OK\r\n")
    assert req.hres.index(b"B: 2\r\n") < req.hres.index(b"A: 1\r\n")
    assert bytes(req.cgibuf[req.cgipos:]) == b"hello"


def test_read_status_header(config):
    req, _ = _pipe_request(b"Status: 404 Not Found\n\n")
    with req.cgipipe:
        read_cgi_header(req, config, 0)
    assert req.status == 404
    assert req.keep_alive is False


def test_read_incomplete_header_waits(config):
    req, write_fd = _pipe_request(b"Content-Type: text/plain\n", close=False)
    try:
        os.set_blocking(req.cgipipe.fileno(), False)
        read_cgi_header(req, config, 0)
        assert req.state is State.READ_HEADER
        assert bytes(req.cgibuf) == b"Content-Type: text/plain\n"
        read_cgi_header(req, config, 0)
        assert bytes(req.cgibuf) == b"Content-Type: text/plain\n"
    finally:
        os.close(write_fd)
        req.cgipipe.close()


def test_read_eof_is_server_error(config):
    req, _ = _pipe_request(b"")
    with req.cgipipe:
        read_cgi_header(req, config, 0)
    assert req.status == 500
    assert req.state is State.WRITE_HEADER


def test_read_oversized_header(config):
    req, _ = _pipe_request(b"a" * MAX_HEADER)
    with req.cgipipe:
        read_cgi_header(req, config, 0)
    assert req.status == 400


def _run(req, config):
    deadline = time.monotonic() + 10
    while req.state is State.CGI_HEADER and time.monotonic() < deadline:
        select.select([req.cgipipe], [], [], 1)
        read_cgi_header(req, config, 0)


@pytest.fixture
def listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    yield sock
    sock.close()


def test_start_script(tmp_path, listener):
    script = tmp_path / "cgi-bin" / "hello.sh"
    script.parent.mkdir()
    script.write_text("#!/bin/sh\nprintf 'Content-Type: text/plain\\n\\n%s %s' \"$QUERY_STRING\" \"$SERVER_ADDR\"\n")
    script.chmod(0o755)
    config = Config(doc_root=str(tmp_path), cgipath="/cgi-bin/")
    req = Request(sock=listener, type="GET", path="/cgi-bin/hello.sh", uri="/cgi-bin/hello.sh?abc", query="abc")
    start_cgi(req, config, 0)
    try:
        assert req.state is State.CGI_HEADER
        _run(req, config)
        assert req.state is State.WRITE_HEADER
        assert b"Content-Type: text/plain\r\n" in req.hres
        assert bytes(req.cgibuf[req.cgipos:]) == b"abc 127.0.0.1"
    finally:
        req.cgi_process.wait()
        req.cgipipe.close()


def test_start_missing_script(tmp_path, listener):
    config = Config(doc_root=str(tmp_path), cgipath="/cgi-bin/")
    req = Request(sock=listener, type="GET", path="/cgi-bin/missing.sh")
    start_cgi(req, config, 0)
    try:
        assert req.state is State.CGI_HEADER
        _run(req, config)
        assert req.status == 200
        body = bytes(req.cgibuf[req.cgipos:])
        assert body.startswith(b"execve " + os.fsencode(str(tmp_path / "cgi-bin" / "missing.sh")))
    finally:
        req.cgipipe.close()