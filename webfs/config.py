"""Server configuration, connection states and per-connection request data."""

from __future__ import annotations

import email.utils
import enum
import os
import sys
from dataclasses import dataclass, field
from typing import Any, BinaryIO

MAX_HEADER = 4096
MAX_PATH = 2048
MAX_HOST = 64
MAX_MISC = 16
BR_HEADER = 512

SERVER_VERSION = "42"
SERVER_NAME = f"webfs/{SERVER_VERSION}"

if sys.platform == "darwin":
    DEFAULT_MIME_FILE = "/usr/share/cups/mime/mime.types"
else:
    DEFAULT_MIME_FILE = "/etc/mime.types"


class State(enum.IntEnum):
    """What a connection is currently busy with."""

    READ_HEADER = 1
    PARSE_HEADER = 2
    WRITE_HEADER = 3
    WRITE_BODY = 4
    WRITE_FILE = 5
    WRITE_RANGES = 6
    FINISHED = 7
    KEEPALIVE = 8
    CLOSE = 9
    CGI_HEADER = 10
    CGI_BODY_IN = 11
    CGI_BODY_OUT = 12


def rfc1123(timestamp: float) -> str:
    """Format a Unix timestamp as an RFC 1123 date in GMT."""
    return email.utils.formatdate(timestamp, usegmt=True)


@dataclass
class Config:
    """Everything the server is told on the command line."""

    server_name: str = SERVER_NAME
    debug: int = 0
    dontdetach: bool = False
    timeout: int = 60
    keepalive_time: int = 5
    tcp_port: int = 0
    max_dircache: int = 128
    cors: str | None = None
    doc_root: str = "."
    indexhtml: str | None = None
    cgipath: str | None = None
    listen_ip: str | None = None
    listen_port: str = "8000"
    virtualhosts: bool = False
    canonicalhost: bool = False
    server_host: str = ""
    user: str = ""
    group: str = ""
    mimetypes: str = DEFAULT_MIME_FILE
    pidfile: str | None = None
    logfile: str | None = None
    userpass: str | None = None
    userdir: str | None = None
    flushlog: bool = False
    do_chroot: bool = False
    usesyslog: int = 0
    have_tty: bool = True
    max_conn: int = 32
    lifespan: int = -1
    no_listing: bool = False
    use_ipv4: bool = True
    use_ipv6: bool = True
    with_ssl: bool = False
    certificate: str = "server.pem"
    password: str | None = None


@dataclass
class Request:
    """State of one client connection and the request it is serving."""

    sock: Any = None
    state: State = State.READ_HEADER
    ping: float = 0.0
    keep_alive: bool = False
    tcp_cork: bool = False
    peerhost: str = ""
    peerserv: str = ""

    # request
    hreq: bytearray = field(default_factory=bytearray)
    lreq: int = 0
    type: str = ""
    hostname: str = ""
    uri: str = ""
    path: str = ""
    query: str = ""
    major: int = 0
    minor: int = 0
    auth: str = ""
    header: list[str] = field(default_factory=list)
    if_modified: str | None = None
    if_unmodified: str | None = None
    if_range: str | None = None
    range_hdr: str | None = None
    ranges: list[tuple[int, int]] = field(default_factory=list)
    range_headers: list[bytes] = field(default_factory=list)
    cors: str | None = None

    # response
    status: int = 0
    bc: int = 0
    hres: bytes = b""
    mime: str = ""
    body: bytes | None = None
    bfd: BinaryIO | None = None
    bst: os.stat_result | None = None
    mtime: str = ""
    written: int = 0
    head_only: bool = False
    rh: int = 0
    rb: int = 0

    # CGI
    cgi_process: Any = None
    cgipipe: BinaryIO | None = None
    cgibuf: bytearray = field(default_factory=bytearray)
    cgipos: int = 0

    def reset(self) -> None:
        """Forget the finished request so the connection can serve the next one."""
        self.auth = ""
        self.if_modified = None
        self.if_unmodified = None
        self.if_range = None
        self.range_hdr = None
        self.ranges = []
        self.range_headers = []
        self.header = []
        self.mtime = ""
        if self.bfd is not None:
            self.bfd.close()
            self.bfd = None
        if self.cgipipe is not None:
            self.cgipipe.close()
            self.cgipipe = None
        if self.cgi_process is not None:
            self.cgi_process.terminate()
            self.cgi_process = None
        self.body = None
        self.written = 0
        self.head_only = False
        self.rh = 0
        self.rb = 0
        self.hostname = ""
        self.path = ""
        self.query = ""