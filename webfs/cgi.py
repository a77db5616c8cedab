"""Starting CGI scripts and turning their output into a response."""

from __future__ import annotations

import errno
import os
import re
import socket
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from webfs.config import MAX_HEADER, Config, Request, State
from webfs.response import make_cgi_header, make_error

_PASSED_THROUGH = ("PATH", "HOME")
_HEADER_NAME = re.compile(r"([-A-Za-z]{1,120}):\s*")
_FILTERED = ("server:", "connection:", "accept-ranges:", "date:")
_FILENAME_LIMIT = 1022


def _trace(config: Config, message: str) -> None:
    if config.debug:
        print(message, file=sys.stderr)


def build_environment(
    req: Request,
    config: Config,
    server_addr: str,
    server_port: str,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for a CGI script serving the given request."""
    base = os.environ if base_env is None else base_env
    env = {name: base[name] for name in _PASSED_THROUGH if name in base}
    env.update(
        {
            "DOCUMENT_ROOT": config.doc_root,
            "GATEWAY_INTERFACE": "CGI/1.1",
            "QUERY_STRING": req.query,
            "REQUEST_URI": req.uri,
            "REMOTE_ADDR": req.peerhost,
            "REMOTE_PORT": req.peerserv,
            "REQUEST_METHOD": req.type,
            "SERVER_ADMIN": "root@localhost",
            "SERVER_NAME": config.server_host,
            "SERVER_PROTOCOL": "HTTP/1.1",
            "SERVER_SOFTWARE": config.server_name,
            "SERVER_ADDR": server_addr,
            "SERVER_PORT": server_port,
        }
    )
    # Header lines are held in arrival order; the earliest of duplicates wins.
    for line in reversed(req.header):
        match = _HEADER_NAME.match(line)
        if match is None:
            continue
        name = "HTTP_" + match.group(1).upper().replace("-", "_")
        env[name] = line[match.end():]

    prefix = len(config.cgipath or "")
    slash = req.path.find("/", prefix)
    if slash >= 0:
        env["PATH_INFO"] = req.path[slash:]
        script = req.path[:slash]
    else:
        env["PATH_INFO"] = ""
        script = req.path
    env["SCRIPT_NAME"] = script
    env["SCRIPT_FILENAME"] = f"{config.doc_root}{script}"[:_FILENAME_LIMIT]
    for name, value in env.items():
        _trace(config, f"cgi: env {name}={value}")
    return env


@dataclass
class _FailedProcess:
    """Stands in for a script that could not be started."""

    returncode: int = 1
    terminated: bool = False

    def terminate(self) -> None:
        """Record the request to stop; the script already exited."""
        self.terminated = True

    def poll(self) -> int:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        return self.returncode


def _local_address(sock: Any) -> tuple[str, str]:
    try:
        host, port = socket.getnameinfo(
            sock.getsockname(), socket.NI_NUMERICHOST | socket.NI_NUMERICSERV
        )
    except (OSError, TypeError, ValueError, AttributeError):
        return "", ""
    return host, port


def _failed_exec(filename: str, exc: OSError) -> tuple[_FailedProcess, Any]:
    read_fd, write_fd = os.pipe()
    message = f"Content-Type: text/plain\n\nexecve {filename}: {exc.strerror}\n"
    with os.fdopen(write_fd, "wb") as writer:
        writer.write(message.encode("utf-8", "surrogateescape"))
    return _FailedProcess(), os.fdopen(read_fd, "rb", buffering=0)


def start_cgi(req: Request, config: Config, now: float) -> None:
    """Start the CGI script for the request, its output feeding the connection."""
    _trace(config, "is cgi request")
    addr, port = _local_address(req.sock)
    env = build_environment(req, config, addr, port)
    filename = env["SCRIPT_FILENAME"]
    quiet = subprocess.DEVNULL if config.have_tty else None
    try:
        process: Any = subprocess.Popen(
            [filename],
            env=env,
            stdin=quiet,
            stdout=subprocess.PIPE,
            stderr=quiet,
            close_fds=True,
        )
        pipe = process.stdout
    except OSError as exc:
        if exc.errno in (errno.EAGAIN, errno.ENOMEM):
            make_error(req, config, 500, False, now)
            return
        try:
            process, pipe = _failed_exec(filename, exc)
        except OSError:
            make_error(req, config, 500, False, now)
            return
    os.set_blocking(pipe.fileno(), False)
    req.cgi_process = process
    req.cgipipe = pipe
    req.state = State.CGI_HEADER


def parse_cgi_header(data: bytes) -> tuple[str | None, list[str], int]:
    """Split a script's header into its status, the lines to pass on and the body offset."""
    status = None
    lines: list[str] = []
    pos = 0
    while True:
        end = data.find(b"\n", pos)
        if end < 0:
            raise ValueError("CGI header is not terminated by an empty line")
        line = data[pos:end]
        pos = end + 1
        if line.endswith(b"\r"):
            line = line[:-1]
        if not line:
            break
        text = line.decode("utf-8", "surrogateescape")
        lowered = text.lower()
        if lowered.startswith("status: "):
            status = text[8:]
            continue
        if lowered.startswith(_FILTERED):
            continue
        lines.append(text)
    return status, lines, pos


def read_cgi_header(req: Request, config: Config, now: float) -> None:
    """Read script output until its header is complete, then prepare the response."""
    try:
        data = os.read(req.cgipipe.fileno(), MAX_HEADER - len(req.cgibuf))
    except BlockingIOError:
        return
    except OSError:
        data = b""
    if not data:
        make_error(req, config, 500, False, now)
        return
    req.cgibuf += data

    if b"\r\n\r\n" in req.cgibuf or b"\n\n" in req.cgibuf:
        status, lines, offset = parse_cgi_header(bytes(req.cgibuf))
        for line in lines:
            _trace(config, f"cgi: hdr {line}")
        make_cgi_header(req, config, status or "200 OK", reversed(lines), now)
        req.cgipos = offset
        _trace(config, f"cgi: pos={req.cgipos} len={len(req.cgibuf)}")
        return

    if len(req.cgibuf) >= MAX_HEADER:
        make_error(req, config, 400, False, now)