"""The listening socket, the connection loop and the program entry point."""

from __future__ import annotations

import contextlib
import errno
import os
import re
import select
import signal
import socket
import ssl
import sys
import time
from collections.abc import Iterator, Sequence

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

from webfs.cgi import read_cgi_header
from webfs.config import Config, Request, State
from webfs.listing import DirCache
from webfs.mime import MimeTypes
from webfs.options import (
    LOG_ERR,
    LOG_INFO,
    LOG_NOTICE,
    LOG_WARNING,
    AccessLog,
    parse_options,
    report_error,
)
from webfs.request import parse_request, read_request
from webfs.response import make_error, write_request
from webfs.tls import create_server_context, wrap_connection

_READING = (State.KEEPALIVE, State.READ_HEADER)
_WRITING = (
    State.WRITE_HEADER,
    State.WRITE_BODY,
    State.WRITE_FILE,
    State.WRITE_RANGES,
    State.CGI_BODY_OUT,
)
_NUMERIC = socket.NI_NUMERICHOST | socket.NI_NUMERICSERV
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")
_ID_LIMIT = 16


def _trace(config: Config, message: str) -> None:
    if config.debug:
        print(message, file=sys.stderr)


def _atoi(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def _pending(sock: object) -> bool:
    return isinstance(sock, ssl.SSLSocket) and sock.pending() > 0


def _fd(obj: object) -> int:
    try:
        return obj.fileno()  # type: ignore[attr-defined]
    except (OSError, ValueError, AttributeError):
        return -1


class Server:
    """A single-threaded, non-blocking HTTP server for static files and CGI."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.mimetypes = MimeTypes("text/plain")
        if not self.mimetypes.load(config.mimetypes):
            _trace(config, f"warning: {config.mimetypes} not found, using built-in mime types")
        self.dircache = DirCache(config.max_dircache)
        self.access_log: AccessLog | None = None
        self.tls_context: ssl.SSLContext | None = None
        self.connections: list[Request] = []
        self.listener: socket.socket | None = None
        self.family: int | None = None
        self.address = ""
        self.termsig = 0
        self._stopping = False
        self._reopen_log = False
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._uid = os.getuid() if hasattr(os, "getuid") else 0
        self._euid = os.geteuid() if hasattr(os, "geteuid") else 0

    @contextlib.contextmanager
    def _privileged(self) -> Iterator[None]:
        if self._uid == self._euid:
            yield
            return
        _run_as(self.config, self._euid)
        try:
            yield
        finally:
            _run_as(self.config, self._uid)

    def bind(self) -> tuple[str, int]:
        """Create, bind and listen on the server socket; IPv6 is tried before IPv4."""
        config = self.config
        flags = socket.AI_PASSIVE
        if config.listen_ip:
            flags |= socket.AI_CANONNAME
        info = None
        listener = None
        if config.use_ipv6 and socket.has_ipv6:
            try:
                info = socket.getaddrinfo(
                    config.listen_ip, config.listen_port, socket.AF_INET6,
                    socket.SOCK_STREAM, 0, flags,
                )[0]
            except socket.gaierror as exc:
                _trace(config, f"getaddrinfo (ipv6): {exc}")
            else:
                try:
                    listener = socket.socket(info[0], info[1], info[2])
                except OSError as exc:
                    if config.debug:
                        report_error(config, LOG_ERR, f"socket (ipv6): {exc.strerror}")
                    info = None
        if listener is None and config.use_ipv4:
            try:
                info = socket.getaddrinfo(
                    config.listen_ip, config.listen_port, socket.AF_INET,
                    socket.SOCK_STREAM, 0, flags,
                )[0]
            except socket.gaierror as exc:
                print(f"getaddrinfo (ipv4): {exc}", file=sys.stderr)
                raise
            try:
                listener = socket.socket(info[0], info[1], info[2])
            except OSError as exc:
                report_error(config, LOG_ERR, f"socket (ipv4): {exc.strerror}")
                raise
        if listener is None or info is None:
            raise OSError("no usable address family for the listening socket")

        family, _, _, canonname, sockaddr = info
        if canonname:
            config.server_host = canonname
        try:
            host, serv = socket.getnameinfo(sockaddr, _NUMERIC)
        except OSError as exc:
            listener.close()
            print(f"getnameinfo: {exc}", file=sys.stderr)
            raise
        config.tcp_port = _atoi(serv)

        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            with contextlib.suppress(OSError):
                listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        listener.setblocking(False)

        try:
            with self._privileged():
                listener.bind(sockaddr)
        except OSError as exc:
            listener.close()
            report_error(config, LOG_ERR, f"bind: {exc.strerror}")
            if exc.errno == errno.EADDRINUSE:
                print(
                    f"Error: Port {config.tcp_port} is already in use. Please choose a "
                    "different port or stop the existing server.",
                    file=sys.stderr,
                )
            elif exc.errno in (errno.EACCES, errno.EPERM):
                print(
                    f"Error: Permission denied to bind to port {config.tcp_port}. "
                    "Ports below 1024 require root privileges.",
                    file=sys.stderr,
                )
            raise
        try:
            listener.listen(2 * config.max_conn)
        except OSError as exc:
            listener.close()
            report_error(config, LOG_ERR, f"listen: {exc.strerror}")
            raise
        config.tcp_port = listener.getsockname()[1]
        self.listener = listener
        self.family = family
        self.address = host
        return host, config.tcp_port

    def stop(self) -> None:
        """Ask the serving loop to finish; safe to call from signal handlers and threads."""
        self._stopping = True
        with contextlib.suppress(OSError):
            self._wake_w.send(b"x")

    def _request_reopen(self) -> None:
        self._reopen_log = True
        with contextlib.suppress(OSError):
            self._wake_w.send(b"x")

    def serve_forever(self) -> None:
        """Serve connections until stop() is called."""
        if self.listener is None:
            raise RuntimeError("bind() must be called before serve_forever()")
        try:
            while not self._stopping:
                self._step()
        finally:
            for req in self.connections:
                self._dispose(req)
            self.connections = []
            self.listener.close()
            self.listener = None
            self._wake_r.close()
            self._wake_w.close()

    def _step(self) -> None:
        config = self.config
        if self._reopen_log:
            self._reopen_log = False
            if self.access_log is not None:
                _trace(config, f"got SIGHUP, reopen logfile {config.logfile}")
                self.access_log.reopen()

        readers = {self._wake_r.fileno()}
        writers: set[int] = set()
        buffered: set[int] = set()
        if len(self.connections) < config.max_conn:
            readers.add(self.listener.fileno())
        for req in self.connections:
            if req.state in _READING:
                fd = _fd(req.sock)
                readers.add(fd)
                if _pending(req.sock):
                    buffered.add(fd)
            elif req.state in _WRITING:
                fd = _fd(req.sock)
                writers.add(fd)
                if config.with_ssl:
                    readers.add(fd)
            elif req.state in (State.CGI_HEADER, State.CGI_BODY_IN):
                readers.add(_fd(req.cgipipe))
        readers.discard(-1)
        writers.discard(-1)

        if buffered:
            timeout: float | None = 0
        elif self.connections:
            timeout = config.keepalive_time
        else:
            timeout = None
        try:
            rd_list, wr_list, _ = select.select(readers, writers, [], timeout)
        except OSError as exc:
            _trace(config, f"select: {exc}")
            return
        now = int(time.time())
        rd = set(rd_list) | buffered
        wr = set(wr_list)

        if self._wake_r.fileno() in rd:
            with contextlib.suppress(OSError):
                while self._wake_r.recv(512):
                    pass
        if self._stopping:
            return
        if self.listener.fileno() in rd:
            self._accept(now)

        active = len(self.connections)
        survivors = []
        for req in self.connections:
            self._service(req, rd, wr, now, active)
            if req.state is State.CLOSE:
                self._log(req, now)
                self._dispose(req)
                active -= 1
                _trace(config, f"done ({active})")
            else:
                survivors.append(req)
        self.connections = survivors

    def _accept(self, now: int) -> None:
        config = self.config
        try:
            sock, _ = self.listener.accept()
        except BlockingIOError:
            return
        except OSError as exc:
            report_error(config, LOG_WARNING, f"accept: {exc.strerror}")
            return
        sock.setblocking(False)
        req = Request(sock=sock, cors=config.cors, state=State.READ_HEADER, ping=now)
        try:
            peer = sock.getpeername()
        except OSError as exc:
            report_error(config, LOG_WARNING, f"getpeername: {exc.strerror}")
            req.state = State.CLOSE
        else:
            with contextlib.suppress(OSError):
                req.peerhost, req.peerserv = socket.getnameinfo(peer, _NUMERIC)
        if config.with_ssl:
            if self.tls_context is None:
                self.tls_context = create_server_context(config.certificate, config.password)
            req.sock = wrap_connection(self.tls_context, sock)
        self.connections.insert(0, req)
        _trace(config, f"new request ({len(self.connections)}), connect from ({req.peerhost})")

    def _read(self, req: Request, pipelined: bool, now: int) -> None:
        try:
            read_request(req, pipelined)
        except ValueError:
            make_error(req, self.config, 400, False, now)

    def _service(self, req: Request, rd: set[int], wr: set[int], now: int, active: int) -> None:
        config = self.config
        fd = _fd(req.sock)
        state = req.state
        if state in _READING:
            if fd in rd:
                req.state = State.READ_HEADER
                self._read(req, False, now)
                req.ping = now
        elif state in _WRITING:
            if fd in wr:
                write_request(req)
                req.ping = now
            if config.with_ssl and fd in rd:
                write_request(req)
                req.ping = now
        elif state is State.CGI_HEADER:
            if _fd(req.cgipipe) in rd:
                read_cgi_header(req, config, now)
                req.ping = now
        elif state is State.CGI_BODY_IN:
            if _fd(req.cgipipe) in rd:
                write_request(req)
                req.ping = now

        if req.state is State.KEEPALIVE:
            if now > req.ping + config.keepalive_time or active > config.max_conn * 9 // 10:
                _trace(config, "keepalive timeout")
                req.state = State.CLOSE
        elif now > req.ping + config.timeout:
            if req.state is State.READ_HEADER:
                make_error(req, config, 408, False, now)
            else:
                report_error(config, LOG_INFO, "network timeout", req.peerhost)
                req.state = State.CLOSE

        while True:
            if req.state is State.PARSE_HEADER:
                parse_request(req, config, self.dircache, self.mimetypes, now)
                if req.state is State.WRITE_HEADER:
                    write_request(req)
            if req.state is State.FINISHED and not req.keep_alive:
                req.state = State.CLOSE
            if req.state is not State.FINISHED:
                return
            self._log(req, now)
            req.reset()
            if len(req.hreq) == req.lreq:
                _trace(config, "keepalive wait")
                req.state = State.KEEPALIVE
                req.hreq = bytearray()
                req.lreq = 0
                self._uncork(req)
                return
            _trace(config, "keepalive pipeline")
            del req.hreq[: req.lreq]
            req.lreq = 0
            req.state = State.READ_HEADER
            self._read(req, True, now)

    def _uncork(self, req: Request) -> None:
        option = getattr(socket, "TCP_CORK", None)
        if not req.tcp_cork or option is None:
            return
        req.tcp_cork = False
        with contextlib.suppress(OSError):
            req.sock.setsockopt(socket.IPPROTO_TCP, option, 0)

    def _log(self, req: Request, now: int) -> None:
        if self.access_log is not None:
            self.access_log.write(req, now)

    def _dispose(self, req: Request) -> None:
        with contextlib.suppress(OSError):
            req.sock.close()
        with contextlib.suppress(OSError):
            req.reset()


def _run_as(config: Config, uid: int) -> None:
    try:
        os.seteuid(uid)
    except OSError as exc:
        print(f"seteuid({uid}): {exc.strerror}", file=sys.stderr)
        raise SystemExit(1) from None
    _trace(config, f"run_as: uid={os.getuid()} euid={os.geteuid()}")


def _lookup_user(name: str):
    try:
        return pwd.getpwnam(name)
    except KeyError:
        pass
    try:
        return pwd.getpwuid(_atoi(name))
    except KeyError:
        return None


def _lookup_group(name: str):
    try:
        return grp.getgrnam(name)
    except KeyError:
        pass
    try:
        return grp.getgrgid(_atoi(name))
    except KeyError:
        return None


def _fix_ug(config: Config) -> None:
    """Switch to the configured user and group, chrooting first if asked to."""
    if pwd is None or grp is None:
        return
    is_root = os.getuid() == 0
    if is_root and config.user:
        user = _lookup_user(config.user)
    else:
        try:
            user = pwd.getpwuid(os.getuid())
        except KeyError:
            user = None
    if is_root and config.group:
        group = _lookup_group(config.group)
    else:
        try:
            group = grp.getgrgid(os.getgid())
        except KeyError:
            group = None
    if user is None:
        report_error(config, LOG_ERR, "user unknown")
        raise SystemExit(1)
    if group is None:
        report_error(config, LOG_ERR, "group unknown")
        raise SystemExit(1)

    if config.do_chroot:
        try:
            os.chdir(config.doc_root)
            os.chroot(config.doc_root)
        except OSError as exc:
            report_error(config, LOG_ERR, f"chroot: {exc.strerror}")
            raise SystemExit(1) from None

    gid = group.gr_gid
    if os.getegid() != gid or os.getgid() != gid:
        with contextlib.suppress(OSError):
            os.setgid(gid)
            os.setgroups([])
    if os.getegid() != gid or os.getgid() != gid:
        report_error(config, LOG_ERR, "setgid failed")
        raise SystemExit(1)
    config.group = group.gr_name[:_ID_LIMIT]

    uid = user.pw_uid
    if os.geteuid() != uid or os.getuid() != uid:
        with contextlib.suppress(OSError):
            os.setuid(uid)
    if os.geteuid() != uid or os.getuid() != uid:
        report_error(config, LOG_ERR, "setuid failed")
        raise SystemExit(1)
    config.user = user.pw_name[:_ID_LIMIT]
    _trace(
        config,
        f"fix_ug: uid={os.getuid()} euid={os.geteuid()} / gid={os.getgid()} egid={os.getegid()}",
    )


def _detach(config: Config) -> None:
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        pid = os.fork()
    except OSError as exc:
        report_error(config, LOG_ERR, f"fork: {exc.strerror}")
        raise SystemExit(1) from None
    if pid:
        os._exit(0)
    devnull = os.open(os.devnull, os.O_RDWR)
    for fd in (0, 1, 2):
        os.dup2(devnull, fd)
    if devnull > 2:
        os.close(devnull)
    os.setsid()
    config.have_tty = False


def _startup_report(server: Server) -> str:
    config = server.config
    return (
        "http server started\n"
        f"  ipv6  : {'yes' if server.family == socket.AF_INET6 else 'no'}\n"
        f"  ssl   : {'yes' if config.with_ssl else 'no'}\n"
        f"  node  : {config.server_host}\n"
        f"  ipaddr: {server.address}\n"
        f"  port  : {config.tcp_port}\n"
        f"  export: {config.doc_root}\n"
        f"  user  : {config.user}\n"
        f"  group : {config.group}\n"
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run the server from command line arguments; returns the exit status."""
    config = parse_options(argv)
    server = Server(config)
    uid, euid = server._uid, server._euid
    if uid != euid:
        _run_as(config, uid)
    if config.usesyslog and syslog is not None:
        syslog.openlog("webfsd", syslog.LOG_PID, syslog.LOG_DAEMON)

    try:
        server.bind()
    except OSError:
        return 1

    if config.with_ssl:
        server.tls_context = create_server_context(config.certificate, config.password)

    if uid != euid:
        _run_as(config, euid)
    _fix_ug(config)

    if config.logfile:
        server.access_log = AccessLog(config.logfile, config.flushlog)

    pid_fd = None
    if config.pidfile:
        try:
            pid_fd = os.open(config.pidfile, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except OSError as exc:
            print(f"open {config.pidfile}: {exc.strerror}", file=sys.stderr)
            return 1

    if config.debug:
        print(_startup_report(server), file=sys.stderr, end="")

    if not config.debug and not config.dontdetach:
        _detach(config)

    if config.usesyslog and syslog is not None:
        syslog.syslog(
            LOG_NOTICE,
            f"started (listen on {config.listen_ip or '*'}:{config.tcp_port}, "
            f"root={config.doc_root}, user={config.user}, group={config.group})",
        )
    if pid_fd is not None:
        os.write(pid_fd, str(os.getpid()).encode())
        os.close(pid_fd)

    def _terminate(signum: int, frame: object) -> None:
        server.termsig = signum
        server.stop()

    def _hangup(signum: int, frame: object) -> None:
        server._request_reopen()

    signal.signal(signal.SIGPIPE, signal.SIG_IGN)
    signal.signal(signal.SIGCHLD, signal.SIG_IGN)
    signal.signal(signal.SIGHUP, _hangup)
    signal.signal(signal.SIGTERM, _terminate)
    if config.debug or config.dontdetach:
        signal.signal(signal.SIGINT, _terminate)

    try:
        server.serve_forever()
    finally:
        if server.access_log is not None:
            server.access_log.close()
        if config.pidfile:
            with contextlib.suppress(OSError):
                os.unlink(config.pidfile)
        if config.usesyslog and syslog is not None:
            if server.termsig:
                syslog.syslog(
                    LOG_NOTICE,
                    f"stopped on signal {server.termsig} ({signal.strsignal(server.termsig)})",
                )
            else:
                syslog.syslog(LOG_NOTICE, "stopped")
            syslog.closelog()
        _trace(config, "bye...")
    return 0