"""TLS support for the listening socket."""

from __future__ import annotations

import socket
import ssl
import sys


def create_server_context(certificate: str, password: str | None = None) -> ssl.SSLContext:
    """Server-side TLS context using one PEM file for certificate chain and key.

    A certificate that cannot be loaded is reported on stderr; the context is
    returned regardless, as connections will then fail their handshake.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)

    def _password() -> str:
        return password if password is not None else ""

    try:
        context.load_cert_chain(certificate, certificate, _password)
    except (ssl.SSLError, OSError) as exc:
        print(f"SSL cert load error [{exc}]", file=sys.stderr)
    return context


def wrap_connection(context: ssl.SSLContext, sock: socket.socket) -> ssl.SSLSocket:
    """Wrap an accepted connection; the handshake runs with the first read or write."""
    return context.wrap_socket(sock, server_side=True, do_handshake_on_connect=False)