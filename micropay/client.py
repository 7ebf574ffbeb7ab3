"""Interactive payment client: talks to the server and pays peers directly."""

from __future__ import annotations

import contextlib
import re
import select
import socket
import ssl
import sys
from typing import Optional, Sequence, TextIO, Union

from micropay.listing import Transfer, format_users
from micropay.peer import (
    PeerError,
    connect_peer,
    make_peer_client_context,
    make_peer_server_context,
    open_listener,
    receive_transfer,
    send_transfer,
)
from micropay.session import ClientSession, ClientState, TransferRejected

CERT_FILE = "mycert.pem"
KEY_FILE = "mykey.pem"
_MAX_READ = 4095
_POLL = 0.5
_INT_RE = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")

AnySocket = Union[socket.socket, ssl.SSLSocket]


def _atoi(text: str) -> int:
    match = _INT_RE.match(text)
    return int(match.group(1)) if match else 0


class Client:
    """One client connected to the server, with an optional P2P listener."""

    def __init__(
        self,
        server: AnySocket,
        *,
        peer_client_context: Optional[ssl.SSLContext] = None,
        peer_server_context: Optional[ssl.SSLContext] = None,
        out: Optional[TextIO] = None,
    ) -> None:
        self.server = server
        self.peer_client_context = peer_client_context
        self.peer_server_context = peer_server_context
        self.out = out if out is not None else sys.stdout
        self.session = ClientSession()
        self.listener: Optional[socket.socket] = None
        self._closed = False

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _print(self, text: str = "", end: str = "\n") -> None:
        self.out.write(text + end)
        self.out.flush()

    def show_menu(self) -> None:
        """Print the user info box and the prompt."""
        self._print(self.session.render_menu(), end="")

    def _send(self, text: str) -> None:
        self.server.sendall(text.encode("utf-8"))

    def run(self, stdin: Optional[TextIO] = None) -> int:
        """Serve keyboard, server and peers until Exit, end of input or server close."""
        stdin = sys.stdin if stdin is None else stdin
        while not self._closed:
            listener = self.listener
            watched: list = [stdin, self.server]
            if listener is not None:
                watched.append(listener)
            pending = isinstance(self.server, ssl.SSLSocket) and self.server.pending() > 0
            try:
                ready, _, _ = select.select(watched, [], [], 0 if pending else _POLL)
            except InterruptedError:
                continue

            if listener is not None and listener in ready:
                self._accept_peer(listener)

            if pending or self.server in ready:
                try:
                    data: Optional[bytes] = self.server.recv(_MAX_READ)
                except (ssl.SSLWantReadError, ssl.SSLWantWriteError):
                    data = None
                except OSError as exc:
                    print(f"Server read failed: {exc}", file=sys.stderr)
                    break
                if data == b"":
                    self._print("[INFO] Server closed TLS connection.")
                    self.close()
                    return 0
                if data is not None:
                    self._on_server_data(data)

            if stdin in ready:
                line = stdin.readline()
                if not line or not self.handle_line(line):
                    break
        return 0

    def handle_line(self, line: str) -> bool:
        """Act on one typed line; return False when the client should stop."""
        command = self.session.classify(line)
        if command is None:
            return True
        if command.transfer is not None:
            self._pay(command.transfer)
            return True
        if command.login_port is not None:
            self._listen(command.login_port)
        if command.blocked:
            self._print("[WARN] A P2P transfer is being processed, please wait...")
            return True
        self._send(command.text)
        return not command.is_exit

    def _listen(self, port: int) -> None:
        if self.listener is not None:
            with contextlib.suppress(OSError):
                self.listener.close()
            self.listener = None
        self.listener = open_listener(port)
        self._print(f"\n[INFO] Listening on port {port} for P2P transfers")

    def _pay(self, transfer: Transfer) -> None:
        try:
            target = self.session.check_transfer(transfer)
        except TransferRejected as exc:
            self._print(f"[WARN] {exc}")
            return
        name = self.session.name
        self._print(f"\n[LOCAL] Confirm {transfer.sender} → {transfer.receiver} ({transfer.amount})")
        outgoing = Transfer(name, transfer.amount, transfer.receiver)
        try:
            send_transfer(target, outgoing, self.peer_client_context)
        except PeerError as exc:
            self._print(f"[WARN] Cannot reach {target.name}@{target.ip}:{target.port}: {exc}")
            return
        self._print(f"[INFO] Transfer request sent: {name} → {transfer.receiver} ({transfer.amount})")

    def _accept_peer(self, listener: socket.socket) -> None:
        try:
            transfer = receive_transfer(listener, self.peer_server_context)
        except PeerError as exc:
            self._print(f"[P2P] {exc}")
            return
        self._print(f"\n[P2P] {transfer.sender} sent you {transfer.amount}")
        self._send(transfer.encode())
        self.session.state = ClientState.AWAITING_TRANSFER_OK

    def _on_server_data(self, data: bytes) -> None:
        text = data.split(b"\0", 1)[0].decode("utf-8", errors="replace")
        self._print("\n\n#====== Server Reply: ======#")
        self._print(text, end="")
        self._print("#===========================#\n")

        if text and "0" <= text[0] <= "9":
            self._update_users(text)
            self.show_menu()

        if self.session.state is ClientState.AWAITING_TRANSFER_OK:
            self._send("List")
            self.session.state = ClientState.AWAITING_LIST
        elif self.session.state is ClientState.AWAITING_LIST:
            self.session.state = ClientState.IDLE

    def _update_users(self, text: str) -> None:
        try:
            snapshot = self.session.apply_list(text)
        except ValueError:
            self._print(f"[WARN] Cannot find start of List payload. Raw:\n{text}")
            return
        self._print(f"Balance: {snapshot.balance}")
        if snapshot.server_key:
            self._print(f"ServerKey: {snapshot.server_key}")
        self._print(format_users(snapshot.users))

    def close(self) -> None:
        """Close the server connection and the P2P listener."""
        self._closed = True
        for sock in (self.server, self.listener):
            if sock is not None:
                with contextlib.suppress(OSError):
                    sock.close()
        self.listener = None


def _peer_server_context() -> ssl.SSLContext:
    try:
        return make_peer_server_context(CERT_FILE, KEY_FILE)
    except (OSError, ssl.SSLError) as exc:
        print(f"Cannot load P2P certificate: {exc}", file=sys.stderr)
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.maximum_version = ssl.TLSVersion.TLSv1_2
        return context


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the client: <server_ip> <server_port>."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 2:
        print("Usage: client <server_ip> <server_port>", file=sys.stderr)
        return 1
    ip, port = args[0], _atoi(args[1])

    try:
        raw = connect_peer(ip, port)
    except (PeerError, OverflowError) as exc:
        print(f"connect: {exc}", file=sys.stderr)
        return 1

    try:
        server = make_peer_client_context().wrap_socket(raw, server_side=False)
    except (ssl.SSLError, OSError) as exc:
        raw.close()
        print(f"TLS handshake failed: {exc}", file=sys.stderr)
        return 1

    client = Client(
        server,
        peer_client_context=make_peer_client_context(),
        peer_server_context=_peer_server_context(),
    )
    with client:
        print(f"\n===== Connected to {ip}:{port} =====")
        client.show_menu()
        try:
            return client.run(sys.stdin)
        except (OSError, PeerError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1


if __name__ == "__main__":
    sys.exit(main())