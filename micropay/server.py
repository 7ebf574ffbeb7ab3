"""TCP/TLS front end of the payment server: one thread per client connection."""

from __future__ import annotations

import contextlib
import re
import socket
import ssl
import sys
import threading
from typing import Callable, Optional, Sequence, Union

from micropay.ledger import Connection, Ledger, OutputMode

CERT_FILE = "mycert.pem"
KEY_FILE = "mykey.pem"
_BUFSZ = 4096
_BACKLOG = 10
_ACCEPT_POLL = 0.2

_MODES = {
    "-d": OutputMode.BASIC,
    "-s": OutputMode.SHOW_LIST,
    "-a": OutputMode.ALL,
}

_USAGE = (
    "Usage: ./server <port> [Option]\n"
    "Option:\n"
    "  -d: Basic messages (Register/Login/Exit)\n"
    "  -s: Also show online list\n"
    "  -a: Show all message transfers (Debug)"
)


def parse_mode(option: Optional[str]) -> OutputMode:
    """Output mode for a command-line option; raise ValueError for an unknown one."""
    if option is None:
        return OutputMode.DEFAULT
    try:
        return _MODES[option]
    except KeyError:
        raise ValueError(f"Unknown option: {option}") from None


def make_server_context(certfile: str, keyfile: str) -> ssl.SSLContext:
    """A TLS 1.2-only server context holding the given certificate and key."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.maximum_version = ssl.TLSVersion.TLSv1_2
    context.verify_mode = ssl.CERT_NONE
    context.load_cert_chain(certfile, keyfile)
    return context


def _parse_port(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


class BankServer:
    """Listens for clients and serves each one on its own thread."""

    def __init__(
        self,
        port: int = 0,
        host: str = "",
        context: Optional[ssl.SSLContext] = None,
        mode: OutputMode = OutputMode.DEFAULT,
        ledger: Optional[Ledger] = None,
        log: Callable[[str], None] = print,
    ) -> None:
        self.context = context
        self.mode = mode
        self.ledger = ledger if ledger is not None else Ledger()
        self.log = log
        self._stopped = threading.Event()
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._listener.bind((host, port))
            self._listener.listen(_BACKLOG)
            self._listener.settimeout(_ACCEPT_POLL)
        except OSError:
            self._listener.close()
            raise

    @property
    def address(self) -> tuple[str, int]:
        """The (host, port) the server listens on."""
        host, port = self._listener.getsockname()[:2]
        return host, port

    def __enter__(self) -> "BankServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def serve_forever(self) -> None:
        """Accept clients until close() is called."""
        while not self._stopped.is_set():
            try:
                sock, address = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stopped.is_set():
                    break
                continue
            client: Union[socket.socket, ssl.SSLSocket] = sock
            if self.context is not None:
                try:
                    client = self.context.wrap_socket(sock, server_side=True)
                except (ssl.SSLError, OSError) as exc:
                    print(f"TLS handshake failed: {exc}", file=sys.stderr)
                    sock.close()
                    continue
            threading.Thread(
                target=self.handle_client, args=(client, address), daemon=True
            ).start()

    def handle_client(self, sock: socket.socket, address: tuple) -> None:
        """Serve one client until it exits or the connection drops."""
        connection = Connection(self.ledger, address[0], self.mode, self.log)
        try:
            while True:
                try:
                    data = sock.recv(_BUFSZ - 1)
                except ssl.SSLError as exc:
                    print(f"TLS error: {exc}", file=sys.stderr)
                    break
                except OSError:
                    break
                if not data:
                    connection.disconnect()
                    break
                reply = connection.handle(data)
                if connection.closed:
                    break
                if reply:
                    sock.sendall(reply.encode("utf-8"))
        finally:
            with contextlib.suppress(OSError):
                sock.close()

    def close(self) -> None:
        """Stop accepting clients and release the listening socket."""
        self._stopped.set()
        with contextlib.suppress(OSError):
            self._listener.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the server: <port> [-d|-s|-a]."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not 1 <= len(args) <= 2:
        print(_USAGE)
        return 0
    port = _parse_port(args[0])
    try:
        mode = parse_mode(args[1] if len(args) == 2 else None)
    except ValueError as exc:
        print(exc)
        return 0

    try:
        context = make_server_context(CERT_FILE, KEY_FILE)
    except (OSError, ssl.SSLError) as exc:
        print(f"Cannot load certificate: {exc}", file=sys.stderr)
        return 1

    try:
        server = BankServer(port, context=context, mode=mode)
    except OSError as exc:
        print(f"Bind failed: {exc}", file=sys.stderr)
        return 1

    flag = {v: k for k, v in _MODES.items()}.get(mode)
    suffix = f" (Mode: {flag})" if flag else ""
    print(f"Server started on port {port}{suffix}", flush=True)
    with server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass
    return 0


if __name__ == "__main__":
    sys.exit(main())