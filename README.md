# webfs

A small HTTP server for static content. It serves the files below a
document root and produces HTML directory listings. It answers byte-range
requests, including multipart ranges, and honours `If-Modified-Since`,
`If-Unmodified-Since` and `If-Range`. It can protect everything with basic
authentication and can run simple CGI scripts from one directory. Only
`GET` and `HEAD` are served; other methods get `501 Not Implemented`.

It runs on POSIX systems and needs nothing beyond the Python standard
library.

## Installing

    pip install .

This installs the `webfsd` command.

## Running

Serve the current directory on port 8000 in the foreground:

    webfsd -F

Serve another directory on port 8080 with an index file and an access log:

    webfsd -F -p 8080 -r /srv/www -f index.html -l access.log

Without `-F` or `-d` the server forks into the background.

| Option           | Meaning                                                  |
|------------------|----------------------------------------------------------|
| `-h`             | print the option summary and exit                        |
| `-4` / `-6`      | use IPv4 or IPv6 only (by default IPv6 is tried first)   |
| `-d`             | debug output on stderr (repeat for more)                 |
| `-F`             | stay in the foreground                                   |
| `-s`             | log start, stop and errors to syslog                     |
| `-t sec`         | network timeout (default 60)                             |
| `-c n`           | maximum number of connections (default 32)               |
| `-a n`           | maximum number of cached directory listings (default 128)|
| `-p port`        | TCP port (default 8000)                                  |
| `-i ip`          | bind to this address                                     |
| `-r dir`         | document root (`-R` also changes root to it)             |
| `-f file`        | directory index file                                     |
| `-j`             | no directory listings                                    |
| `-n host`        | server host name (`-N` also always uses it)              |
| `-v`             | virtual hosts: one subdirectory per host name            |
| `-l log`         | common-log-format access log, `-` for stdout (`-L` flushes each line) |
| `-m file`        | read MIME types from this file                           |
| `-k file`        | write the process id to this file                        |
| `-u user`, `-g group` | user and group to run as (when started as root)     |
| `-b user:password` | basic authentication                                   |
| `-e sec`         | send `Expires` headers `sec` seconds after mtime         |
| `-O origin`      | value for `Access-Control-Allow-Origin`                  |
| `-x dir`         | CGI script directory, relative to the document root      |
| `-~ dir`         | expand `/~user/path` to `$HOME/dir/path`                 |
| `-S`, `-C file`, `-P pass` | TLS mode, certificate file (certificate chain and key in one PEM file) and its password |

When the MIME types file cannot be read, a small built-in table is used.

The server stops on SIGTERM (and on SIGINT when it runs in the
foreground); SIGHUP reopens the access log.

## Using it from Python

    from webfs.options import parse_options
    from webfs.server import Server

    config = parse_options(["-p", "8080", "-r", "/srv/www"])
    server = Server(config)
    server.bind()
    server.serve_forever()

`Server.stop()` ends `serve_forever()` and may be called from a signal
handler or another thread. `webfs.server.main(argv)` does what the
`webfsd` command does and returns its exit status.

The building blocks work on their own as well:

- `webfs.mime.MimeTypes` and `webfs.mime.load_mime_types` map file names
  to content types.
- `webfs.listing.render_listing` renders a directory as HTML;
  `webfs.listing.DirCache` caches such listings.
- `webfs.request.parse_ranges` parses the value of a `Range: bytes=`
  header and raises `webfs.request.RangeError` when it is invalid;
  `webfs.request.unquote` and `webfs.request.fixpath` decode and tidy
  request paths.
- `webfs.options.AccessLog` writes common-log-format lines.

## What it does not do

The server handles all connections in one thread; there is no option to
start several worker threads. CGI scripts receive no request body, as
`POST` and `PUT` requests are refused.

## Running the tests

    pip install .[test]
    pytest