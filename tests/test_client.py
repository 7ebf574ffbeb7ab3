import io
import select
import socket

import pytest

from micropay.client import Client, main
from micropay.listing import OnlineUser, Transfer
from micropay.peer import open_listener, receive_transfer, send_transfer
from micropay.session import ClientState


@pytest.fixture
def setup():
    client_side, server_side = socket.socketpair()
    server_side.settimeout(5)
    out = io.StringIO()
    client = Client(client_side, out=out)
    yield client, server_side, out
    client.close()
    server_side.close()


@pytest.fixture
def stdin_pair():
    reader, writer = socket.socketpair()
    stdin = reader.makefile("r", encoding="utf-8")
    yield stdin, writer
    stdin.close()
    reader.close()
    writer.close()


def _readable(sock):
    ready, _, _ = select.select([sock], [], [], 0.1)
    return bool(ready)


def test_register_line_sent_to_server(setup):
    client, server, _ = setup
    assert client.handle_line("REGISTER#alice\n") is True
    assert server.recv(4096) == b"REGISTER#alice"


def test_exit_stops_and_is_sent(setup):
    client, server, _ = setup
    assert client.handle_line("Exit\n") is False
    assert server.recv(4096) == b"Exit"


def test_blank_line_sends_nothing(setup):
    client, server, _ = setup
    assert client.handle_line("\n") is True
    assert not _readable(server)


def test_login_opens_listener(setup):
    client, server, out = setup
    assert client.handle_line("alice#0\n") is True
    assert server.recv(4096) == b"alice#0"
    assert client.session.name == "alice"
    assert client.listener is not None
    assert client.listener.getsockname()[1] > 0
    assert "Listening on port 0" in out.getvalue()


def test_transfer_without_login_is_rejected(setup):
    client, server, out = setup
    assert client.handle_line("alice#100#bob\n") is True
    assert "[WARN]" in out.getvalue()
    assert not _readable(server)


def test_transfer_reaches_peer(setup):
    client, server, _ = setup
    listener = open_listener(0)
    try:
        port = listener.getsockname()[1]
        client.session.name = "alice"
        client.session.apply_list(f"10000\nkey\n1\nbob#127.0.0.1#{port}\n")
        assert client.handle_line("alice#100#bob\n") is True
        assert receive_transfer(listener) == Transfer("alice", 100, "bob")
    finally:
        listener.close()
    assert not _readable(server)


def test_incoming_transfer_forwarded_to_server(setup, stdin_pair):
    client, server, out = setup
    stdin, writer = stdin_pair
    client.handle_line("alice#0\n")
    assert server.recv(4096) == b"alice#0"
    port = client.listener.getsockname()[1]
    send_transfer(OnlineUser("alice", "127.0.0.1", port), Transfer("bob", 50, "alice"))
    writer.shutdown(socket.SHUT_WR)
    assert client.run(stdin) == 0
    assert server.recv(4096) == b"bob#50#alice"
    assert client.session.state is ClientState.AWAITING_TRANSFER_OK
    assert "bob sent you 50" in out.getvalue()


def test_transfer_ok_triggers_list(setup, stdin_pair):
    client, server, _ = setup
    stdin, writer = stdin_pair
    client.session.state = ClientState.AWAITING_TRANSFER_OK
    server.sendall(b"Transfer OK\n")
    writer.shutdown(socket.SHUT_WR)
    assert client.run(stdin) == 0
    assert server.recv(4096) == b"List"
    assert client.session.state is ClientState.AWAITING_LIST


def test_list_reply_updates_session(setup, stdin_pair):
    client, server, out = setup
    stdin, writer = stdin_pair
    client.session.state = ClientState.AWAITING_LIST
    server.sendall(b"10\nServerPubKey_Dummy\n1\nbob#127.0.0.1#6000\n")
    writer.shutdown(socket.SHUT_WR)
    assert client.run(stdin) == 0
    assert client.session.balance == 10
    assert client.session.find_user("bob") == OnlineUser("bob", "127.0.0.1", 6000)
    assert client.session.state is ClientState.IDLE
    text = out.getvalue()
    assert "Balance: 10" in text
    assert "ServerKey: ServerPubKey_Dummy" in text


def test_exit_from_stdin_ends_run(setup, stdin_pair):
    client, server, _ = setup
    stdin, writer = stdin_pair
    writer.sendall(b"Exit\n")
    assert client.run(stdin) == 0
    assert server.recv(4096) == b"Exit"


def test_server_close_ends_run(setup, stdin_pair):
    client, server, out = setup
    stdin, _ = stdin_pair
    server.close()
    assert client.run(stdin) == 0
    assert "Server closed" in out.getvalue()


def test_main_usage(capsys):
    assert main([]) == 1
    assert "Usage" in capsys.readouterr().err


def test_main_bad_address(capsys):
    assert main(["not-an-ip", "1"]) == 1
    assert "not-an-ip" in capsys.readouterr().err