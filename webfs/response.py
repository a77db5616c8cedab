"""HTTP response headers and the non-blocking writer that sends them out."""

from __future__ import annotations

import contextlib
import logging
import os
import re
import socket
import ssl
import sys
from collections.abc import Callable, Iterable
from typing import Any

from webfs.config import MAX_HEADER, Config, Request, State, rfc1123
from webfs.listing import quote

log = logging.getLogger(__name__)

_STATUS: dict[int, tuple[str, bytes | None]] = {
    200: ("200 OK", None),
    206: ("206 Partial Content", None),
    304: ("304 Not Modified", None),
    400: ("400 Bad Request", b"*PLONK*\n"),
    401: ("401 Authentication required", b"Authentication required\n"),
    403: ("403 Forbidden", b"Access denied\n"),
    404: ("404 Not Found", b"File or directory not found\n"),
    408: ("408 Request Timeout", b"Request Timeout\n"),
    412: ("412 Precondition failed.", b"Precondition failed\n"),
    500: ("500 Internal Server Error", b"Sorry folks\n"),
    501: ("501 Not Implemented", b"Sorry folks\n"),
}

_AGAIN = (BlockingIOError, ssl.SSLWantReadError, ssl.SSLWantWriteError)
_USE_SENDFILE = sys.platform.startswith("linux") and hasattr(os, "sendfile")
_COPY_BLOCK = 16384
_SSL_BLOCK = 4096
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def status_head(status: int) -> str:
    """Status line text for a known HTTP status code."""
    try:
        return _STATUS[status][0]
    except KeyError:
        raise ValueError(f"unknown HTTP status {status}") from None


def status_body(status: int) -> bytes | None:
    """Plain text body sent with an error status, or None for success codes."""
    try:
        return _STATUS[status][1]
    except KeyError:
        raise ValueError(f"unknown HTTP status {status}") from None


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _trace(config: Config, message: str) -> None:
    if config.debug:
        print(message, file=sys.stderr)


def _start(config: Config, head: str, keep_alive: bool) -> str:
    return (
        f"HTTP/1.1 {head}\r\n"
        f"Server: {config.server_name}\r\n"
        f"Connection: {'Keep-Alive' if keep_alive else 'Close'}\r\n"
        "Accept-Ranges: bytes\r\n"
    )


def _cors(req: Request, config: Config) -> str:
    if req.cors is None:
        return ""
    _trace(config, f"CORS added: CORS={req.cors}")
    return f"Access-Control-Allow-Origin: {req.cors}\r\n"


def _date(now: float) -> str:
    return f"Date: {rfc1123(now)}\r\n\r\n"


def make_error(req: Request, config: Config, status: int, keep_alive: bool, now: float) -> None:
    """Prepare an error response with a short plain text body."""
    head = status_head(status)
    body = status_body(status) or b""
    req.status = status
    req.body = body
    if not keep_alive:
        req.keep_alive = False
    parts = [
        _start(config, head, req.keep_alive),
        "Content-Type: text/plain\r\n",
        f"Content-Length: {len(body)}\r\n",
    ]
    if status == 401:
        parts.append('WWW-Authenticate: Basic realm="webfs"\r\n')
    parts.append(_cors(req, config))
    parts.append(_date(now))
    req.hres = _encode("".join(parts))
    req.state = State.WRITE_HEADER
    connection = "Keep-Alive" if req.keep_alive else "Close"
    _trace(config, f"error: {status}, connection={connection}")


def make_redirect(req: Request, config: Config, now: float) -> None:
    """Prepare a redirect to the request path, used for directories without a slash."""
    body = _encode(req.path)
    req.status = 302
    req.body = body
    text = "".join(
        [
            _start(config, "302 Redirect", req.keep_alive),
            f"Location: http://{req.hostname}:{config.tcp_port}{quote(req.path, 9999)}\r\n",
            "Content-Type: text/plain\r\n",
            f"Content-Length: {len(body)}\r\n",
            _cors(req, config),
            _date(now),
        ]
    )
    req.hres = _encode(text)
    req.state = State.WRITE_HEADER
    connection = "Keep-Alive" if req.keep_alive else "Close"
    _trace(config, f"302 redirect: {req.path}, connection={connection}")


def make_header(req: Request, config: Config, status: int, now: float) -> None:
    """Prepare the header for a file, listing or byte range response."""
    req.status = status
    parts = [_start(config, status_head(status), req.keep_alive)]
    if not req.ranges:
        length = len(req.body) if req.body is not None else req.bst.st_size
        parts.append(f"Content-Type: {req.mime}\r\nContent-Length: {length}\r\n")
    elif len(req.ranges) == 1:
        start, end = req.ranges[0]
        parts.append(
            f"Content-Type: {req.mime}\r\n"
            f"Content-Range: bytes {start}-{end - 1}/{req.bst.st_size}\r\n"
            f"Content-Length: {end - start}\r\n"
        )
    else:
        boundary = f"XXX_CUT_HERE_{int(now)}_XXX"
        size = req.bst.st_size
        heads = [
            _encode(
                f"\r\n--{boundary}\r\n"
                f"Content-type: {req.mime}\r\n"
                f"Content-range: bytes {start}-{end - 1}/{size}\r\n"
                "\r\n"
            )
            for start, end in req.ranges
        ]
        heads.append(_encode(f"\r\n--{boundary}--\r\n"))
        req.range_headers = heads
        length = sum(map(len, heads)) + sum(end - start for start, end in req.ranges)
        parts.append(
            f"Content-Type: multipart/byteranges; boundary={boundary}\r\n"
            f"Content-Length: {length}\r\n"
        )
    if req.mtime:
        parts.append(f"Last-Modified: {req.mtime}\r\n")
        if config.lifespan != -1:
            expires = int(req.bst.st_mtime) + config.lifespan
            parts.append(f"Expires: {rfc1123(expires)}\r\n")
    parts.append(_cors(req, config))
    parts.append(_date(now))
    req.hres = _encode("".join(parts))
    req.state = State.WRITE_HEADER
    connection = "Keep-Alive" if req.keep_alive else "Close"
    _trace(config, f"{status}, connection={connection}")


def _leading_int(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def make_cgi_header(
    req: Request, config: Config, status: str, header_lines: Iterable[str], now: float
) -> None:
    """Prepare the header of a CGI response from the script's own header lines."""
    req.status = _leading_int(status)
    req.keep_alive = False
    parts = [_start(config, status, False)]
    parts.extend(f"{line}\r\n" for line in header_lines)
    parts.append(_date(now))
    parts.append(_cors(req, config))
    req.hres = _encode("".join(parts))
    req.state = State.WRITE_HEADER


def _attempt(req: Request, action: Callable[[], Any], what: str, failed: Any = 0) -> Any:
    """Run one I/O step: None means try again later, ``failed`` means give up."""
    while True:
        try:
            return action()
        except _AGAIN:
            return None
        except InterruptedError:
            continue
        except OSError as exc:
            log.info("%s: %s (peer=%s)", what, exc, req.peerhost)
            return failed


def _cork(req: Request) -> None:
    option = getattr(socket, "TCP_CORK", None)
    if option is None or req.tcp_cork or req.head_only:
        return
    req.tcp_cork = True
    with contextlib.suppress(OSError):
        req.sock.setsockopt(socket.IPPROTO_TCP, option, 1)


def _copy_file(sock: Any, handle: Any, offset: int, count: int) -> int:
    handle.seek(offset)
    total = 0
    while count > 0:
        try:
            block = handle.read(min(count, _COPY_BLOCK))
        except OSError:
            if total:
                return total
            raise
        if not block:
            break
        try:
            sent = sock.send(block)
        except OSError:
            if total:
                return total
            raise
        total += sent
        if sent < len(block):
            break
        count -= len(block)
    return total


def _send_file(req: Request, offset: int, count: int) -> int:
    if isinstance(req.sock, ssl.SSLSocket):
        req.bfd.seek(offset)
        block = req.bfd.read(min(count, _SSL_BLOCK))
        if not block:
            req.state = State.CLOSE
            return 0
        return req.sock.send(block)
    if _USE_SENDFILE:
        return os.sendfile(req.sock.fileno(), req.bfd.fileno(), offset, count)
    return _copy_file(req.sock, req.bfd, offset, count)


def _after_header(req: Request) -> bool:
    """Choose what follows the header; False when the response is complete."""
    req.written = 0
    if req.head_only:
        req.state = State.FINISHED
        return False
    if req.cgi_process is not None:
        req.state = State.CGI_BODY_OUT if req.cgipos != len(req.cgibuf) else State.CGI_BODY_IN
    elif req.body is not None:
        req.state = State.WRITE_BODY
    elif len(req.ranges) == 1:
        req.state = State.WRITE_RANGES
        req.rh = -1
        req.rb = 0
        req.written = req.ranges[0][0]
    elif req.ranges:
        req.state = State.WRITE_RANGES
        req.rh = 0
        req.rb = -1
    else:
        req.state = State.WRITE_FILE
    return True


def write_request(req: Request) -> None:
    """Send as much of the response as the socket takes without blocking."""
    while True:
        state = req.state
        if state is State.WRITE_HEADER:
            _cork(req)
            sent = _attempt(req, lambda: req.sock.send(req.hres[req.written:]), "write")
            if sent is None:
                return
            if not sent:
                req.state = State.CLOSE
                return
            req.written += sent
            req.bc += sent
            if req.written != len(req.hres):
                return
            if not _after_header(req):
                return
        elif state is State.WRITE_BODY:
            sent = _attempt(req, lambda: req.sock.send(req.body[req.written:]), "write")
            if sent is None:
                return
            if not sent:
                req.state = State.CLOSE
                return
            req.written += sent
            req.bc += sent
            if req.written != len(req.body):
                return
            req.state = State.FINISHED
            return
        elif state is State.WRITE_FILE:
            size = req.bst.st_size
            sent = _attempt(req, lambda: _send_file(req, req.written, size - req.written), "sendfile")
            if sent is None:
                return
            if not sent:
                req.state = State.CLOSE
                return
            req.written += sent
            req.bc += sent
            if req.written != size:
                return
            req.state = State.FINISHED
            return
        elif state is State.WRITE_RANGES:
            if req.rh != -1:
                head = req.range_headers[req.rh]
                sent = _attempt(req, lambda: req.sock.send(head[req.written:]), "write")
                if sent is None:
                    return
                if not sent:
                    req.state = State.CLOSE
                    return
                req.written += sent
                req.bc += sent
                if req.written != len(head):
                    return
                if req.rh == len(req.ranges):
                    req.state = State.FINISHED
                    return
                req.rb = req.rh
                req.rh = -1
                req.written = req.ranges[req.rb][0]
            if req.rb != -1:
                end = req.ranges[req.rb][1]
                sent = _attempt(req, lambda: _send_file(req, req.written, end - req.written), "sendfile")
                if sent is None:
                    return
                if not sent:
                    req.state = State.CLOSE
                    return
                req.written += sent
                req.bc += sent
                if req.written != end:
                    return
                req.rh = req.rb + 1
                req.rb = -1
                req.written = 0
                if len(req.ranges) == 1:
                    req.state = State.FINISHED
                    return
        elif state is State.CGI_BODY_IN:
            data = _attempt(
                req, lambda: os.read(req.cgipipe.fileno(), MAX_HEADER), "cgi read", failed=b""
            )
            if data is None:
                return
            if not data:
                req.state = State.FINISHED
                return
            req.cgibuf = bytearray(data)
            req.cgipos = 0
            req.state = State.CGI_BODY_OUT
        elif state is State.CGI_BODY_OUT:
            sent = _attempt(req, lambda: req.sock.send(req.cgibuf[req.cgipos:]), "write")
            if sent is None:
                return
            if not sent:
                req.state = State.CLOSE
                return
            req.cgipos += sent
            req.bc += sent
            if req.cgipos != len(req.cgibuf):
                return
            req.state = State.CGI_BODY_IN
        else:
            return