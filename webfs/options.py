"""Command line options, usage text, the access log and error reporting."""

from __future__ import annotations

import argparse
import logging
import os
import re
import socket
import sys
import threading
import time
from collections.abc import Sequence
from typing import Any, TextIO

try:
    import grp
    import pwd
except ImportError:  # pragma: no cover - non-POSIX systems
    grp = None
    pwd = None

try:
    import syslog
except ImportError:  # pragma: no cover - non-POSIX systems
    syslog = None

from webfs.config import Config, Request

log = logging.getLogger(__name__)

LOG_ERR = 3
LOG_WARNING = 4
LOG_NOTICE = 5
LOG_INFO = 6

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")
_HOST_LIMIT = 64
_ID_LIMIT = 16


def _atoi(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def _host(text: str) -> str:
    return text[:_HOST_LIMIT]


def _ident(text: str) -> str:
    return text[:_ID_LIMIT]


def _cgi_dir(text: str) -> str:
    return text if text.endswith("/") else text + "/"


class _StoreAndFlag(argparse.Action):
    """Store the value and switch on a second, boolean setting."""

    def __init__(self, option_strings: Sequence[str], dest: str, flag: str, **kwargs: Any) -> None:
        super().__init__(option_strings, dest, **kwargs)
        self.flag = flag

    def __call__(self, parser, namespace, values, option_string=None) -> None:
        setattr(namespace, self.dest, values)
        setattr(namespace, self.flag, True)


class _Parser(argparse.ArgumentParser):
    """Parser that exits with status 1 on bad options."""

    def error(self, message: str) -> None:  # type: ignore[override]
        print(f"{self.prog}: {message}", file=sys.stderr)
        raise SystemExit(1)


def build_parser() -> argparse.ArgumentParser:
    """Parser for the server's single-letter options."""
    parser = _Parser(prog="webfsd", add_help=False, argument_default=argparse.SUPPRESS)
    add = parser.add_argument
    add("-h", dest="help", action="store_true")
    add("-4", dest="family", action="store_const", const=4)
    add("-6", dest="family", action="store_const", const=6)
    add("-s", dest="usesyslog", action="count")
    add("-d", dest="debug", action="count")
    add("-v", dest="virtualhosts", action="count")
    add("-F", dest="dontdetach", action="count")
    add("-j", dest="no_listing", action="store_true")
    add("-S", dest="with_ssl", action="store_true")
    add("-r", dest="doc_root")
    add("-R", dest="doc_root", action=_StoreAndFlag, flag="do_chroot")
    add("-f", dest="indexhtml")
    add("-n", dest="server_host", type=_host)
    add("-N", dest="server_host", type=_host, action=_StoreAndFlag, flag="canonicalhost")
    add("-O", dest="cors")
    add("-i", dest="listen_ip")
    add("-p", dest="listen_port")
    add("-t", dest="timeout", type=_atoi)
    add("-c", dest="max_conn", type=_atoi)
    add("-a", dest="max_dircache", type=_atoi)
    add("-u", dest="user", type=_ident)
    add("-g", dest="group", type=_ident)
    add("-l", dest="logfile")
    add("-L", dest="logfile", action=_StoreAndFlag, flag="flushlog")
    add("-m", dest="mimetypes")
    add("-k", dest="pidfile")
    add("-b", dest="userpass")
    add("-e", dest="lifespan", type=_atoi)
    add("-x", dest="cgipath", type=_cgi_dir)
    add("-C", dest="certificate")
    add("-P", dest="password")
    add("-~", dest="userdir")
    add("operands", nargs="*")
    return parser


def _default_server_host() -> str:
    name = socket.gethostname()
    try:
        infos = socket.getaddrinfo(name, None, flags=socket.AI_CANONNAME)
    except OSError:
        return name
    for info in infos:
        if info[3]:
            return info[3]
    return name


def parse_options(argv: Sequence[str] | None = None) -> Config:
    """Build the configuration from command line arguments (without program name).

    Prints the usage text and exits with status 0 for -h; exits with
    status 1 on an unknown option.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    values = vars(parser.parse_args(args))
    wants_help = values.pop("help", False)
    family = values.pop("family", None)
    values.pop("operands", None)
    for name in ("virtualhosts", "dontdetach"):
        if name in values:
            values[name] = bool(values[name])
    if "server_host" not in values:
        values["server_host"] = _default_server_host()
    config = Config(**values)
    if family == 4:
        config.use_ipv4, config.use_ipv6 = True, False
    elif family == 6:
        config.use_ipv4, config.use_ipv6 = False, True
    if wants_help:
        print(usage_text(config, parser.prog), file=sys.stderr, end="")
        raise SystemExit(0)
    return config


def _on_off(flag: Any) -> str:
    return "on" if flag else "off"


def usage_text(config: Config, prog: str = "webfsd") -> str:
    """The help text, showing the current settings in brackets."""
    name = prog.rsplit("/", 1)[-1]
    text = (
        "This is a lightweight http server for static content\n"
        "\n"
        f"usage: {name} [ options ]\n"
        "\n"
        "Options:\n"
        "  -h       print this text\n"
        "  -4       use ipv4\n"
        "  -6       use ipv6\n"
        f"  -d       enable debug output                 [{_on_off(config.debug)}]\n"
        f"  -F       do not fork into background         [{_on_off(config.dontdetach)}]\n"
        f"  -s       enable syslog (start/stop/errors)   [{_on_off(config.usesyslog)}]\n"
        f"  -t sec   set network timeout                 [{config.timeout}]\n"
        f"  -c n     set max. allowed connections        [{config.max_conn}]\n"
        f"  -O CORS  set CORS header                     [{config.cors or 'none'}]\n"
        f"  -a n     set max. cached dirs                [{config.max_dircache}]\n"
        f"  -j       disable directory listings          [{_on_off(config.no_listing)}]\n"
        f"  -p port  use tcp-port >port<                 [{config.listen_port}]\n"
        f"  -r dir   document root is >dir<              [{config.doc_root}]\n"
        "  -R dir   same as above + chroot to >dir<\n"
        f"  -f file  look for >file< as directory index  [{config.indexhtml or 'none'}]\n"
        f"  -n host  server hostname is >host<           [{config.server_host}]\n"
        "  -N host  same as above + UseCanonicalName\n"
        f"  -i ip    bind to IP-address >ip<             [{config.listen_ip or 'any'}]\n"
        f"  -v       enable virtual hosts                [{_on_off(config.virtualhosts)}]\n"
        f"  -l log   write access log to file >log<      [{config.logfile or 'none'}]\n"
        "  -L log   same as above + flush every line\n"
        f"  -m file  read mime types from >file<         [{config.mimetypes}]\n"
        f"  -k file  use >file< as pidfile               [{config.pidfile or 'none'}]\n"
        "  -b user:pass  password protect the exported\n"
        "           files (basic authentication)\n"
        "  -e sec   limit live span of files to sec\n"
        "           seconds (using expires header)\n"
        "  -S       enable SSL mode\n"
        f"  -C file  SSL-Certificate file                [{config.certificate}]\n"
        "  -P pass  SSL-Certificate password\n"
        "  -x dir   CGI script directory (relative to\n"
        f"           document root)                      [{config.cgipath or 'none'}]\n"
        "  -~ dir   user home directory (will expand\n"
        "           /~user/path to $HOME/dir/path\n"
    )
    if hasattr(os, "getuid") and os.getuid() == 0:
        user = group = "???"
        if pwd is not None:
            try:
                user = pwd.getpwuid(0).pw_name
            except KeyError:
                pass
        if grp is not None:
            try:
                group = grp.getgrgid(os.getgid()).gr_name
            except KeyError:
                pass
        text += (
            f"  -u user  run as user >user<                  [{user}]\n"
            f"  -g group run as group >group<                [{group}]\n"
        )
    return text


def format_log_line(req: Request, now: float) -> str:
    """One access log line in common log format; a missing status counts as 400."""
    timestamp = time.strftime("[%d/%b/%Y:%H:%M:%S +0000]", time.localtime(now))
    if req.status == 0:
        req.status = 400
    if req.status == 400:
        return f'{req.peerhost} - - {timestamp} "-" 400 {req.bc}\n'
    return (
        f'{req.peerhost} - - {timestamp} '
        f'"{req.type} {req.uri} HTTP/{req.major}.{req.minor}" {req.status} {req.bc}\n'
    )


class AccessLog:
    """Append-only access log; "-" writes to standard output."""

    def __init__(self, path: str, flush: bool = False) -> None:
        self.path = path
        self.flush = flush
        self._lock = threading.Lock()
        self._handle: TextIO | None = None
        self._open()

    def _open(self) -> None:
        if self.path == "-":
            self._handle = sys.stdout
            return
        try:
            self._handle = open(self.path, "a", encoding="utf-8", errors="surrogateescape")
        except OSError as exc:
            log.warning("open access log: %s", exc)
            self._handle = None

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def write(self, req: Request, now: float) -> None:
        """Log one finished request."""
        with self._lock:
            if self._handle is None:
                return
            self._handle.write(format_log_line(req, now))
            if self.flush:
                self._handle.flush()

    def reopen(self) -> None:
        """Close and reopen the file, as after log rotation."""
        if self.path == "-":
            return
        with self._lock:
            if self._handle is not None:
                self._handle.close()
            self._open()

    def close(self) -> None:
        """Flush and close the log."""
        with self._lock:
            if self._handle is None:
                return
            if self._handle is sys.stdout:
                self._handle.flush()
            else:
                self._handle.close()
            self._handle = None

    def __enter__(self) -> AccessLog:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def report_error(config: Config, level: int, text: str, peerhost: str | None = None) -> str | None:
    """Report a problem on stderr and to syslog as configured.

    Returns the reported message, or None when the level is filtered out.
    """
    if level == LOG_INFO and config.usesyslog < 2 and not config.debug:
        return None
    message = text if peerhost is None else f"{text} (peer={peerhost})"
    if config.have_tty:
        print(message, file=sys.stderr)
    if config.usesyslog and syslog is not None:
        syslog.syslog(level, message)
    return message