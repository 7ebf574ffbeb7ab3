"""Direct client-to-client payment links: listening, connecting and one-shot transfers."""

from __future__ import annotations

import contextlib
import select
import socket
import ssl
from typing import Optional, Union

from micropay.listing import OnlineUser, Transfer, parse_transfer

_BUFSZ = 4096
_MAX_READ = _BUFSZ - 1
_BACKLOG = 5
_PEER_TIMEOUT = 10.0
_BURST_WAIT = 0.2

AnySocket = Union[socket.socket, ssl.SSLSocket]


class PeerError(Exception):
    """A peer link could not be opened, or a peer sent something unusable."""


def connect_peer(ip: str, port: int, timeout: Optional[float] = None) -> socket.socket:
    """A TCP connection to ip:port; raise PeerError if the address is bad or unreachable."""
    try:
        socket.inet_pton(socket.AF_INET, ip)
    except OSError:
        raise PeerError(f"inet_pton(peer) failed for {ip}") from None
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect((ip, port))
    except OSError as exc:
        sock.close()
        raise PeerError(f"connect(peer) {ip}:{port} failed: {exc}") from exc
    return sock


def open_listener(port: int) -> socket.socket:
    """A socket listening on every interface at port; raise PeerError on failure."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        reuse_port = getattr(socket, "SO_REUSEPORT", None)
        if reuse_port is not None:
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, reuse_port, 1)
        sock.bind(("", port))
        sock.listen(_BACKLOG)
    except OSError as exc:
        sock.close()
        raise PeerError(f"cannot listen on port {port}: {exc}") from exc
    return sock


def make_peer_client_context() -> ssl.SSLContext:
    """A TLS 1.2-only client context that does not verify the peer."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.maximum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def make_peer_server_context(certfile: str, keyfile: str) -> ssl.SSLContext:
    """A TLS 1.2-only server context with the given certificate and key."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.maximum_version = ssl.TLSVersion.TLSv1_2
    context.verify_mode = ssl.CERT_NONE
    context.load_cert_chain(certfile, keyfile)
    return context


def _close(sock: AnySocket) -> None:
    if isinstance(sock, ssl.SSLSocket):
        with contextlib.suppress(OSError, ValueError):
            sock.unwrap()
    else:
        with contextlib.suppress(OSError):
            sock.shutdown(socket.SHUT_WR)
    with contextlib.suppress(OSError):
        sock.close()


def send_transfer(
    user: OnlineUser, transfer: Transfer, context: Optional[ssl.SSLContext] = None
) -> None:
    """Send transfer to user's listening port, over TLS when a context is given."""
    raw = connect_peer(user.ip, user.port, _PEER_TIMEOUT)
    sock: AnySocket = raw
    if context is not None:
        try:
            sock = context.wrap_socket(raw, server_side=False)
        except (ssl.SSLError, OSError) as exc:
            raw.close()
            raise PeerError(f"TLS handshake with {user.name} failed: {exc}") from exc
    try:
        sock.sendall(transfer.encode().encode("utf-8"))
    except OSError as exc:
        with contextlib.suppress(OSError):
            sock.close()
        raise PeerError(f"send to {user.name} failed: {exc}") from exc
    _close(sock)


def receive_transfer(
    listener: socket.socket, context: Optional[ssl.SSLContext] = None
) -> Transfer:
    """Accept one peer on listener and read its transfer; raise PeerError if unusable."""
    try:
        raw, _ = listener.accept()
    except OSError as exc:
        raise PeerError(f"accept failed: {exc}") from exc
    raw.settimeout(_PEER_TIMEOUT)
    sock: AnySocket = raw
    if context is not None:
        try:
            sock = context.wrap_socket(raw, server_side=True)
        except (ssl.SSLError, OSError) as exc:
            raw.close()
            raise PeerError(f"TLS accept failed: {exc}") from exc
    try:
        try:
            data = sock.recv(_MAX_READ)
        except OSError as exc:
            raise PeerError(f"receive failed: {exc}") from exc
        if not data:
            raise PeerError("peer closed without sending a transfer")
        text = data.split(b"\0", 1)[0].decode("utf-8", errors="replace")
        transfer = parse_transfer(text)
        if transfer is None:
            raise PeerError(f"Invalid transfer format: {text}")
        return transfer
    finally:
        _close(sock)


def _has_more(sock: AnySocket, wait: float) -> bool:
    if isinstance(sock, ssl.SSLSocket) and sock.pending() > 0:
        return True
    try:
        ready, _, _ = select.select([sock], [], [], wait)
    except (OSError, ValueError):
        return False
    return bool(ready)


def recv_burst(sock: AnySocket, limit: int = _MAX_READ, wait: float = _BURST_WAIT) -> bytes:
    """One blocking read, then whatever follows within wait seconds, up to limit bytes.

    Returns b"" when the peer has closed before sending anything.
    """
    first = sock.recv(limit)
    if not first:
        return b""
    chunks = [first]
    total = len(first)
    while total < limit and _has_more(sock, wait):
        try:
            chunk = sock.recv(limit - total)
        except (BlockingIOError, ssl.SSLWantReadError):
            break
        except OSError:
            break
        if not chunk:
            break
        chunks.append(chunk)
        total += len(chunk)
    return b"".join(chunks)