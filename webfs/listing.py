"""HTML directory listings and a small cache for them."""

from __future__ import annotations

import os
import stat
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

try:
    import grp
    import pwd
except ImportError:  # pragma: no cover - non-POSIX systems
    grp = None
    pwd = None

MAX_CACHE_AGE = 3600
_QUOTE_LIMIT = 2048 - 4
_ALWAYS_QUOTED = frozenset(b'+#%"?')
_SAFE_BYTES = frozenset(byte for byte in range(33, 127) if byte not in _ALWAYS_QUOTED)
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_SIX_MONTHS = 60 * 60 * 24 * 30 * 6
_RWX = ("---", "--x", "-w-", "-wx", "r--", "r-x", "rw-", "rwx")
_TYPE_CHARS = {
    stat.S_IFIFO: "p",
    stat.S_IFCHR: "c",
    stat.S_IFDIR: "d",
    stat.S_IFBLK: "b",
    stat.S_IFREG: "-",
    stat.S_IFLNK: "l",
    stat.S_IFSOCK: "=",
}


def quote(path: str | bytes, maxlength: int = 9999) -> str:
    """Percent-encode a path for use in a link, looking at most at maxlength bytes."""
    data = os.fsencode(path) if isinstance(path, str) else bytes(path)
    parts: list[str] = []
    length = 0
    for byte in data[:maxlength]:
        if length >= _QUOTE_LIMIT:
            break
        if byte in _SAFE_BYTES:
            parts.append(chr(byte))
            length += 1
        else:
            parts.append(f"%{byte:02x}")
            length += 3
    return "".join(parts)


def file_mode_string(mode: int) -> str:
    """Render a file mode as the ten characters shown by ls -l."""
    kind = _TYPE_CHARS.get(stat.S_IFMT(mode), "?")
    return kind + _RWX[(mode >> 6) & 7] + _RWX[(mode >> 3) & 7] + _RWX[mode & 7]


def format_size(stat_result: os.stat_result) -> str:
    """Render the size column of a listing line."""
    mode = stat_result.st_mode
    size = stat_result.st_size
    if stat.S_ISDIR(mode):
        return "  &lt;DIR&gt;  "
    if not stat.S_ISREG(mode):
        return "     --  "
    if size < 1024 * 9:
        return f"{size:4d}  B  "
    if size < 1024 * 1024 * 9:
        return f"{size >> 10:4d} kB  "
    if size < 1024 * 1024 * 1024 * 9:
        return f"{size >> 20:4d} MB  "
    if size < 1024 * 1024 * 1024 * 1024 * 9:
        return f"{size >> 30:4d} GB  "
    return f"{size >> 40:4d} TB  "


class _NameCache:
    """Fixed number of slots, replaced round robin; misses are cached too."""

    def __init__(self, lookup: Callable[[int], str | None], size: int = 32) -> None:
        self._lookup = lookup
        self._size = size
        self._slots: list[tuple[int, str | None]] = []
        self._next = 0
        self._lock = threading.Lock()

    def __call__(self, key: int) -> str | None:
        with self._lock:
            for known, name in self._slots:
                if known == key:
                    return name
            name = self._lookup(key)
            if len(self._slots) < self._size:
                self._slots.append((key, name))
            else:
                self._slots[self._next] = (key, name)
            self._next = (self._next + 1) % self._size
            return name


def _lookup_user(uid: int) -> str | None:
    if pwd is None:
        return None
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return None


def _lookup_group(gid: int) -> str | None:
    if grp is None:
        return None
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return None


_user_cache = _NameCache(_lookup_user)
_group_cache = _NameCache(_lookup_group)


def user_name(uid: int, chroot: bool = False) -> str | None:
    """Name of a user id, or None if unknown or the server runs chrooted."""
    if chroot:
        return None
    return _user_cache(uid)


def group_name(gid: int, chroot: bool = False) -> str | None:
    """Name of a group id, or None if unknown or the server runs chrooted."""
    if chroot:
        return None
    return _group_cache(gid)


@dataclass
class _Entry:
    name: str
    info: os.stat_result
    readable: bool


def _readable(info: os.stat_result, uid: int, gid: int) -> bool:
    mode = info.st_mode
    if not (stat.S_ISDIR(mode) or stat.S_ISREG(mode)):
        return False
    if info.st_uid == uid and mode & 0o400:
        return True
    if info.st_uid == gid and mode & 0o040:
        return True
    return bool(mode & 0o004)


def _month_day(moment: time.struct_time) -> str:
    return f"{_MONTHS[moment.tm_mon - 1]} {moment.tm_mday:02d}"


def _format_mtime(now: float, mtime: int) -> str:
    moment = time.gmtime(mtime)
    if now - mtime > _SIX_MONTHS:
        return f"{_month_day(moment)}  {moment.tm_year:4d}  "
    return f"{_month_day(moment)} {moment.tm_hour:02d}:{moment.tm_min:02d}  "


def _owner_column(name: str | None, number: int) -> str:
    if name is not None:
        return f"{name[:8]:<8}  "
    return f"{number:8d}  "


def _listing_line(entry: _Entry, now: float, chroot: bool) -> str:
    info = entry.info
    parts = [
        file_mode_string(info.st_mode),
        "  ",
        _owner_column(user_name(info.st_uid, chroot), info.st_uid),
        _owner_column(group_name(info.st_gid, chroot), info.st_gid),
        _format_mtime(now, int(info.st_mtime)),
        format_size(info),
    ]
    if entry.readable:
        slash = "/" if stat.S_ISDIR(info.st_mode) else ""
        parts.append(f'<a href="{quote(entry.name)}{slash}">{entry.name}</a>\n')
    else:
        parts.append(f"{entry.name}\n")
    return "".join(parts)


def _breadcrumbs(path: str) -> str:
    links = []
    start, end = 0, 1
    while True:
        links.append(f'<a href="{quote(path[:end])}">{path[start:end]}</a>')
        start = end
        slash = path.find("/", end)
        if slash < 0:
            break
        end = slash + 1
    return "".join(links)


def render_listing(
    now: float,
    hostname: str,
    port: int,
    filename: str,
    path: str,
    server_name: str,
    chroot: bool = False,
) -> bytes | None:
    """Build the HTML listing of a directory, or None if it cannot be read."""
    try:
        names = os.listdir(filename)
    except OSError:
        return None
    if path != "/":
        names.append("..")

    uid, gid = os.getuid(), os.getgid()
    entries = []
    for name in names:
        try:
            info = os.stat(f"{filename}/{name}")
        except OSError:
            continue
        entries.append(_Entry(name, info, _readable(info, uid, gid)))
    entries.sort(key=lambda e: (not stat.S_ISDIR(e.info.st_mode), os.fsencode(e.name)))

    moment = time.gmtime(now)
    stamp = (
        f"{moment.tm_mday:02d}/{_MONTHS[moment.tm_mon - 1]}/{moment.tm_year:4d} "
        f"{moment.tm_hour:02d}:{moment.tm_min:02d}:{moment.tm_sec:02d} GMT"
    )
    text = "".join(
        [
            f"<head><title>{hostname}:{port}{path}</title></head>\n"
            "<body bgcolor=white text=black link=darkblue vlink=firebrick alink=red>\n"
            "<h1>listing: \n",
            _breadcrumbs(path),
            "</h1><hr noshade size=1><pre>\n"
            "<b>access      user      group     date             size  name</b>\n\n",
            *(_listing_line(entry, now, chroot) for entry in entries),
            "</pre><hr noshade size=1>\n"
            f"<small>{server_name} &nbsp; {stamp}</small>\n"
            "</body>\n",
        ]
    )
    return text.encode("utf-8", "surrogateescape")


@dataclass
class _CacheEntry:
    path: str
    mtime: str
    added: float
    html: bytes | None


class DirCache:
    """Most-recently-used cache of rendered directory listings."""

    def __init__(self, max_entries: int = 128) -> None:
        self.max_entries = max_entries
        self._entries: list[_CacheEntry] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(
        self,
        filename: str,
        mtime: str,
        now: float,
        hostname: str,
        port: int,
        path: str,
        server_name: str,
        chroot: bool = False,
    ) -> bytes | None:
        """Return the listing for a directory, rendering it if not cached or stale."""
        with self._lock:
            found = None
            for index, entry in enumerate(self._entries):
                if entry.path == filename:
                    found = self._entries.pop(index)
                    break
                if index > self.max_entries:
                    del self._entries[index:]
                    break
            if found is not None and (
                now - found.added > MAX_CACHE_AGE or found.mtime != mtime
            ):
                found = None
            if found is None:
                html = render_listing(now, hostname, port, filename, path, server_name, chroot)
                found = _CacheEntry(filename, mtime, now, html)
            self._entries.insert(0, found)
            return found.html