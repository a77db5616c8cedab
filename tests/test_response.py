import os
import socket

import pytest

from webfs.config import Config, Request, State, rfc1123
from webfs.response import (
    make_cgi_header,
    make_error,
    make_header,
    make_redirect,
    status_body,
    status_head,
    write_request,
)

NOW = 1_000_000_000
CONTENT = b"0123456789abcdef"


@pytest.fixture
def config():
    return Config(server_name="webfs/test", tcp_port=8000)


@pytest.fixture
def pair():
    server, client = socket.socketpair()
    yield server, client
    server.close()
    client.close()


@pytest.fixture
def data_file(tmp_path):
    path = tmp_path / "data.bin"
    path.write_bytes(CONTENT)
    with open(path, "rb") as handle:
        yield handle


def _drain(server, client):
    server.shutdown(socket.SHUT_WR)
    client.settimeout(5)
    chunks = []
    while chunk := client.recv(65536):
        chunks.append(chunk)
    return b"".join(chunks)


def _file_request(sock, handle, **fields):
    return Request(sock=sock, bfd=handle, bst=os.fstat(handle.fileno()), mime="text/plain", **fields)


def test_status_table():
    assert status_head(404) == "404 Not Found"
    assert status_body(400) == b"*PLONK*\n"
    assert status_body(200) is None


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        status_head(999)


def test_error_header(config):
    req = Request(keep_alive=True)
    make_error(req, config, 404, False, NOW)
    assert req.hres.startswith(b"HTTP/1.1 404 Not Found\r\nServer: webfs/test\r\n")
    assert b"Connection: Close\r\n" in req.hres
    assert b"Content-Type: text/plain\r\n" in req.hres
    assert f"Content-Length: {len(req.body)}\r\n".encode() in req.hres
    assert req.hres.endswith(f"Date: {rfc1123(NOW)}\r\n\r\n".encode())
    assert req.body == b"File or directory not found\n"
    assert req.status == 404
    assert req.state is State.WRITE_HEADER
    assert req.keep_alive is False


def test_error_keeps_alive_when_asked(config):
    req = Request(keep_alive=True)
    make_error(req, config, 403, True, NOW)
    assert b"Connection: Keep-Alive\r\n" in req.hres
    assert req.keep_alive is True


def test_auth_error_asks_for_credentials(config):
    req = Request()
    make_error(req, config, 401, True, NOW)
    assert b'WWW-Authenticate: Basic realm="webfs"\r\n' in req.hres


def test_cors_header(config):
    req = Request(cors="*")
    make_error(req, config, 500, False, NOW)
    assert b"Access-Control-Allow-Origin: *\r\n" in req.hres


def test_redirect(config):
    req = Request(path="/dir/", hostname="example.com")
    make_redirect(req, config, NOW)
    assert req.status == 302
    assert req.hres.startswith(b"HTTP/1.1 302 Redirect\r\n")
    assert b"Location: http://example.com:8000/dir/\r\n" in req.hres
    assert req.body == b"/dir/"


def test_header_with_body(config):
    req = Request(body=b"<html/>", mime="text/html")
    make_header(req, config, 200, NOW)
    assert req.hres.startswith(b"HTTP/1.1 200 OK\r\n")
    assert b"Content-Type: text/html\r\nContent-Length: 7\r\n" in req.hres
    assert b"Last-Modified" not in req.hres


def test_header_single_range(config, data_file):
    req = _file_request(None, data_file, ranges=[(2, 6)])
    make_header(req, config, 206, NOW)
    expected = f"Content-Range: bytes 2-{6 - 1}/{len(CONTENT)}\r\nContent-Length: {6 - 2}\r\n"
    assert expected.encode() in req.hres


def test_header_expires(config, data_file):
    config.lifespan = 60
    req = _file_request(None, data_file)
    req.mtime = rfc1123(req.bst.st_mtime)
    make_header(req, config, 200, NOW)
    assert f"Last-Modified: {req.mtime}\r\n".encode() in req.hres
    assert f"Expires: {rfc1123(int(req.bst.st_mtime) + 60)}\r\n".encode() in req.hres


def test_cgi_header(config):
    req = Request(keep_alive=True, cors="*")
    make_cgi_header(req, config, "404 Not Found", ["Content-Type: text/html"], NOW)
    assert req.status == 404
    assert req.keep_alive is False
    assert req.hres.startswith(b"HTTP/1.1 404 Not Found\r\n")
    assert b"Connection: Close\r\nAccept-Ranges: bytes\r\nContent-Type: text/html\r\n" in req.hres
    assert req.hres.endswith(b"Access-Control-Allow-Origin: *\r\n")


def test_cgi_header_without_number(config):
    req = Request()
    make_cgi_header(req, config, "fine", [], NOW)
    assert req.status == 0


def test_write_error_body(config, pair):
    server, client = pair
    req = Request(sock=server)
    make_error(req, config, 404, False, NOW)
    write_request(req)
    assert req.state is State.FINISHED
    received = _drain(server, client)
    assert received == req.hres + req.body
    assert req.bc == len(received)


def test_write_head_only(config, pair):
    server, client = pair
    req = Request(sock=server, body=b"ignored", mime="text/plain", head_only=True)
    make_header(req, config, 200, NOW)
    write_request(req)
    assert req.state is State.FINISHED
    assert _drain(server, client) == req.hres


def test_write_whole_file(config, pair, data_file):
    server, client = pair
    req = _file_request(server, data_file)
    make_header(req, config, 200, NOW)
    write_request(req)
    assert req.state is State.FINISHED
    assert _drain(server, client) == req.hres + CONTENT


def test_write_single_range(config, pair, data_file):
    server, client = pair
    req = _file_request(server, data_file, ranges=[(2, 6)])
    make_header(req, config, 206, NOW)
    write_request(req)
    assert req.state is State.FINISHED
    assert _drain(server, client) == req.hres + CONTENT[2:6]


def test_write_multiple_ranges(config, pair, data_file):
    server, client = pair
    req = _file_request(server, data_file, ranges=[(0, 2), (4, 8)])
    make_header(req, config, 206, NOW)
    assert len(req.range_headers) == 3
    write_request(req)
    assert req.state is State.FINISHED
    received = _drain(server, client)
    heads = req.range_headers
    body = heads[0] + CONTENT[0:2] + heads[1] + CONTENT[4:8] + heads[2]
    assert received == req.hres + body
    assert f"Content-Length: {len(body)}\r\n".encode() in req.hres
    assert f"boundary=XXX_CUT_HERE_{NOW}_XXX".encode() in req.hres


def test_write_to_closed_peer(config, pair):
    server, client = pair
    client.close()
    req = Request(sock=server)
    make_error(req, config, 400, False, NOW)
    write_request(req)
    assert req.state is State.CLOSE


def test_write_cgi_body(config, pair):
    server, client = pair
    read_fd, write_fd = os.pipe()
    os.write(write_fd, b"payload")
    os.close(write_fd)
    with os.fdopen(read_fd, "rb", buffering=0) as pipe:
        req = Request(
            sock=server,
            cgi_process=object(),
            cgipipe=pipe,
            cgibuf=bytearray(b"xxrest"),
            cgipos=2,
        )
        make_cgi_header(req, config, "200 OK", [], NOW)
        write_request(req)
        assert req.state is State.FINISHED
        assert _drain(server, client) == req.hres + b"rest" + b"payload"