"""Reading and interpreting HTTP requests."""

from __future__ import annotations

import errno
import logging
import os
import re
import ssl
import stat
import sys

try:
    import pwd
except ImportError:  # pragma: no cover - non-POSIX systems
    pwd = None

from webfs.cgi import start_cgi
from webfs.config import MAX_HEADER, MAX_HOST, MAX_PATH, Config, Request, State, rfc1123
from webfs.listing import DirCache
from webfs.mime import MimeTypes
from webfs.response import make_error, make_header, make_redirect

log = logging.getLogger(__name__)

_METHODS = (b"GET ", b"PUT ", b"HEAD ", b"POST ")
_AGAIN = (BlockingIOError, ssl.SSLWantReadError, ssl.SSLWantWriteError)
_HEX = frozenset(b"0123456789abcdefABCDEF")
_BASE64 = {
    char: value
    for value, char in enumerate(
        b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
    )
}
_DIGITS = re.compile(r"[0-9]*")
_SPACE = r"[ \t\r\n\v\f]*"
_REQUEST_LINE = re.compile(
    rf"([A-Z]{{1,16}}){_SPACE}([^ \t\r\n]{{1,2048}}){_SPACE}"
    rf"HTTP/{_SPACE}([+-]?\d+)\.{_SPACE}([+-]?\d+)"
)
_URL_WITH_PORT = re.compile(
    rf"([a-zA-Z]{{1,16}})://([a-zA-Z0-9.-]{{1,64}}):{_SPACE}[+-]?\d+([^ \t\r\n]{{1,2048}})"
)
_URL = re.compile(r"([a-zA-Z]{1,16})://([a-zA-Z0-9.-]{1,64})([^ \t\r\n]{1,2048})")
_HOST = re.compile(r"[a-zA-Z0-9.-]{1,64}")
_AUTH_LIMIT = 63
_FILENAME_LIMIT = MAX_PATH - 1


class RangeError(ValueError):
    """A Range header that cannot be parsed or does not fit the file."""


def _trace(config: Config, message: str) -> None:
    if config.debug:
        print(message, file=sys.stderr)


def _unhex(char: int) -> int:
    if char < 0x40:
        return char - 0x30
    return (char & 0x0F) + 9


def _text(data: bytes | bytearray) -> str:
    return bytes(data).split(b"\0", 1)[0].decode("utf-8", "surrogateescape")


def unquote(uri: str) -> tuple[str, str]:
    """Decode %xx escapes and split a request URI into path and query string."""
    data = uri.encode("utf-8", "surrogateescape")
    path = bytearray()
    query = bytearray()
    target = path
    in_query = False
    pos = 0
    while pos < len(data):
        char = data[pos]
        if not in_query and char == ord("?"):
            in_query = True
            target = query
            pos += 1
            continue
        if in_query and char == ord("+"):
            target.append(ord(" "))
        elif (
            char == ord("%")
            and pos + 2 < len(data) + 0
            and data[pos + 1] in _HEX
            and data[pos + 2] in _HEX
        ):
            target.append(((_unhex(data[pos + 1]) << 4) | _unhex(data[pos + 2])) & 0xFF)
            pos += 2
        else:
            target.append(char)
        pos += 1
    return _text(path), _text(query)


def fixpath(path: str) -> str:
    """Collapse doubled slashes and "/./" elements of a path."""
    out: list[str] = []
    pos = 0
    while pos < len(path):
        if path.startswith("//", pos):
            pos += 1
            continue
        if path.startswith("/./", pos):
            pos += 2
            continue
        out.append(path[pos])
        pos += 1
    return "".join(out)


def decode_base64(text: str, maxlen: int = _AUTH_LIMIT) -> str:
    """Decode base64 text up to the first invalid character, at most maxlen bytes."""
    out = bytearray()
    acc = 0
    bits = 0
    for char in text.encode("utf-8", "surrogateescape"):
        if len(out) >= maxlen:
            break
        value = _BASE64.get(char)
        if value is None:
            break
        acc = (acc << 6) | value
        bits += 6
        if bits >= 8:
            bits -= 8
            out.append((acc >> bits) & 0xFF)
        acc &= (1 << bits) - 1
    return _text(out)


def parse_ranges(header: str, size: int) -> list[tuple[int, int]]:
    """Parse the value of a "Range: bytes=" header into (start, end) pairs."""
    line = header.split("\n", 1)[0]
    ranges: list[tuple[int, int]] = []
    pos = 0
    for _ in range(line.count(",") + 1):
        if line.startswith("-", pos):
            digits = _DIGITS.match(line, pos + 1)
            if not digits.group():
                raise RangeError(f"bad byte range {header!r}")
            start = size - int(digits.group())
            end = size
            pos = digits.end()
        else:
            digits = _DIGITS.match(line, pos)
            if not digits.group():
                raise RangeError(f"bad byte range {header!r}")
            start = int(digits.group())
            pos = digits.end()
            if not line.startswith("-", pos):
                raise RangeError(f"bad byte range {header!r}")
            digits = _DIGITS.match(line, pos + 1)
            end = int(digits.group()) + 1 if digits.group() else size
            pos = digits.end()
        pos += 1
        if start > end or end > size:
            raise RangeError(f"byte range {start}-{end} does not fit {size} bytes")
        ranges.append((start, end))
    return ranges


def normalize_hostname(hostname: str) -> str:
    """Lower-case a host name, rejecting characters and dots that are not allowed."""
    chars: list[str] = []
    for char in hostname:
        if "A" <= char <= "Z":
            char = char.lower()
        elif char == ".":
            if not chars:
                raise ValueError("host name starts with a dot")
            if chars[-1] == ".":
                raise ValueError("host name has two dots in sequence")
        elif not ("a" <= char <= "z" or "0" <= char <= "9" or char == "-"):
            raise ValueError(f"invalid character {char!r} in host name")
        chars.append(char)
    return "".join(chars)


def read_request(req: Request, pipelined: bool = False) -> None:
    """Read request data from the socket until the header is complete.

    Raises ValueError when the data cannot be an acceptable HTTP request.
    """
    data: bytes | None
    while True:
        try:
            data = req.sock.recv(MAX_HEADER - len(req.hreq))
        except _AGAIN:
            if not pipelined:
                return
            data = None
        except InterruptedError:
            continue
        except OSError as exc:
            log.info("read: %s (peer=%s)", exc, req.peerhost)
            req.state = State.CLOSE
            return
        break
    if data is not None:
        if not data:
            req.state = State.CLOSE
            return
        req.hreq += data

    if len(req.hreq) < 5:
        return
    if not req.hreq.startswith(_METHODS):
        raise ValueError("not an HTTP request")

    end = req.hreq.find(b"\r\n\r\n")
    if end >= 0:
        req.lreq = end + 4
    else:
        end = req.hreq.find(b"\n\n")
        if end >= 0:
            req.lreq = end + 2
    if end >= 0:
        req.state = State.PARSE_HEADER
        return
    if len(req.hreq) >= MAX_HEADER:
        raise ValueError("request header too large")


def _has_prefix(line: str, prefix: str) -> bool:
    return line[: len(prefix)].lower() == prefix


def _apply_header(req: Request, config: Config, line: str) -> None:
    if _has_prefix(line, "connection: "):
        req.keep_alive = _has_prefix(line[12:], "keep-alive")
    elif _has_prefix(line, "host: "):
        match = _HOST.match(line, 6)
        if match is not None:
            req.hostname = match.group()
    elif _has_prefix(line, "if-modified-since: "):
        req.if_modified = line[19:]
    elif _has_prefix(line, "if-unmodified-since: "):
        req.if_unmodified = line[21:]
    elif _has_prefix(line, "if-range: "):
        req.if_range = line[10:]
    elif _has_prefix(line, "authorization: basic "):
        req.auth = decode_base64(line[21:], _AUTH_LIMIT)
        _trace(config, f"auth: {req.auth}")
    elif _has_prefix(line, "range: bytes="):
        req.range_hdr = line[13:]


def _error_status(exc: OSError) -> int:
    return 403 if exc.errno == errno.EACCES else 404


def _send_listing(
    req: Request, config: Config, dircache: DirCache, filename: str, now: float
) -> None:
    if config.no_listing:
        make_error(req, config, 403, True, now)
        return
    try:
        info = os.stat(filename)
    except OSError as exc:
        make_error(req, config, _error_status(exc), True, now)
        return
    req.bst = info
    req.mtime = rfc1123(int(info.st_mtime))
    req.mime = "text/html"
    req.body = dircache.get(
        filename,
        req.mtime,
        now,
        req.hostname,
        config.tcp_port,
        req.path,
        config.server_name,
        config.do_chroot,
    )
    if req.body is None:
        make_error(req, config, 403, True, now)
    elif req.if_modified is not None and req.if_modified == req.mtime:
        make_header(req, config, 304, now)
        req.head_only = True
    else:
        make_header(req, config, 200, now)


def _serve_file(
    req: Request, config: Config, mimetypes: MimeTypes, filename: str, fd: int, now: float
) -> None:
    info = os.fstat(fd)
    req.bst = info
    if req.range_hdr is not None:
        try:
            req.ranges = parse_ranges(req.range_hdr, info.st_size)
        except RangeError:
            os.close(fd)
            req.ranges = []
            _trace(config, "range error")
            make_error(req, config, 400, True, now)
            return

    if not stat.S_ISREG(info.st_mode):
        os.close(fd)
        if stat.S_ISDIR(info.st_mode):
            req.path += "/"
            make_redirect(req, config, now)
        else:
            make_error(req, config, 403, True, now)
        return

    req.bfd = os.fdopen(fd, "rb")
    req.mime = mimetypes.get(filename)
    req.mtime = rfc1123(int(info.st_mtime))
    if req.if_range is not None and req.if_range != req.mtime:
        req.ranges = []
    if req.if_unmodified is not None and req.if_unmodified != req.mtime:
        make_error(req, config, 412, True, now)
    elif req.if_modified is not None and req.if_modified == req.mtime:
        make_header(req, config, 304, now)
        req.head_only = True
    elif req.ranges:
        make_header(req, config, 206, now)
    else:
        make_header(req, config, 200, now)


def _user_filename(req: Request, config: Config) -> str | None:
    slash = req.path.find("/", 2)
    if slash < 0 or pwd is None:
        return None
    try:
        entry = pwd.getpwnam(req.path[2:slash])
    except KeyError:
        return None
    return f"{entry.pw_dir}/{config.userdir}/{req.path[slash + 1:]}"


def parse_request(
    req: Request, config: Config, dircache: DirCache, mimetypes: MimeTypes, now: float
) -> None:
    """Interpret a complete request header and prepare the matching response."""
    text = bytes(req.hreq[: req.lreq]).decode("utf-8", "surrogateescape")
    if config.debug > 2:
        print(text, file=sys.stderr)

    match = _REQUEST_LINE.match(text)
    if match is None:
        make_error(req, config, 400, False, now)
        return
    req.type, target = match.group(1), match.group(2)
    req.major, req.minor = int(match.group(3)), int(match.group(4))
    if target.startswith("/"):
        req.uri = target
    else:
        found = _URL_WITH_PORT.match(target) or _URL.match(target)
        if found is None:
            make_error(req, config, 400, False, now)
            return
        proto, req.hostname, req.uri = found.groups()
        if proto.lower() != "http":
            make_error(req, config, 400, False, now)
            return

    req.path, req.query = unquote(req.uri)
    req.path = fixpath(req.path)
    _trace(config, f'{req.type} "{req.path}" HTTP/{req.major}.{req.minor}')

    if req.type not in ("GET", "HEAD"):
        make_error(req, config, 501, False, now)
        return
    if req.type == "HEAD":
        req.head_only = True

    req.keep_alive = bool(req.minor)
    for raw in text.split("\n")[1:]:
        line = raw[:-1] if raw.endswith("\r") else raw
        if not line:
            continue
        req.header.append(line)
        _apply_header(req, config, line)
    if req.if_modified is not None:
        _trace(config, f'if-modified-since: "{req.if_modified}"')
    if req.if_unmodified is not None:
        _trace(config, f'if-unmodified-since: "{req.if_unmodified}"')
    if req.if_range is not None:
        _trace(config, f'if-range: "{req.if_range}"')

    if config.virtualhosts:
        if not req.hostname:
            if req.minor > 0:
                make_error(req, config, 400, False, now)
                return
            req.hostname = config.server_host[:MAX_HOST]
    elif not req.hostname or config.canonicalhost:
        req.hostname = config.server_host[:MAX_HOST]

    if not req.path.startswith("/"):
        make_error(req, config, 400, False, now)
        return
    if "/../" in req.path:
        make_error(req, config, 403, True, now)
        return
    try:
        req.hostname = normalize_hostname(req.hostname)
    except ValueError:
        make_error(req, config, 400, False, now)
        return

    if config.userpass is not None and config.userpass != req.auth:
        make_error(req, config, 401, True, now)
        return

    if config.cgipath is not None and req.path.startswith(config.cgipath):
        start_cgi(req, config, now)
        return

    if config.userdir and req.path[1:2] == "~":
        expanded = _user_filename(req, config)
        if expanded is None:
            make_error(req, config, 404, True, now)
            return
        filename = expanded
    else:
        root = "" if config.do_chroot else config.doc_root
        host = f"/{req.hostname}" if config.virtualhosts else ""
        filename = f"{root}{host}{req.path}"
    filename = filename[:_FILENAME_LIMIT]

    if filename.endswith("/"):
        if config.indexhtml:
            candidate = (filename + config.indexhtml)[:_FILENAME_LIMIT]
            try:
                fd = os.open(candidate, os.O_RDONLY)
            except FileNotFoundError:
                pass
            except OSError:
                make_error(req, config, 403, True, now)
                return
            else:
                _serve_file(req, config, mimetypes, candidate, fd, now)
                return
        _send_listing(req, config, dircache, filename, now)
        return

    try:
        fd = os.open(filename, os.O_RDONLY)
    except OSError as exc:
        make_error(req, config, _error_status(exc), True, now)
        return
    _serve_file(req, config, mimetypes, filename, fd, now)