import pytest

from micropay.ledger import (
    DEFAULT_BALANCE,
    Account,
    Connection,
    Ledger,
    OutputMode,
    Response,
    normalize_command,
)


@pytest.fixture
def ledger():
    return Ledger()


def make_conn(ledger, ip="127.0.0.1", mode=OutputMode.DEFAULT):
    logs = []
    return Connection(ledger, ip, mode=mode, log=logs.append), logs


def test_register_creates_account_with_default_balance(ledger):
    account = ledger.register("alice")
    assert account == Account("alice", DEFAULT_BALANCE, False, "", 0)
    assert "alice" in ledger
    assert ledger.balance_of("alice") == 10000


def test_register_duplicate_raises(ledger):
    ledger.register("alice")
    with pytest.raises(ValueError):
        ledger.register("alice")
    assert len(ledger) == 1


def test_login_unknown_raises(ledger):
    with pytest.raises(KeyError):
        ledger.login("ghost", 5000, "127.0.0.1")


def test_balance_of_unknown_is_zero(ledger):
    assert ledger.balance_of("nobody") == 0


def test_online_accounts_sorted_and_filtered(ledger):
    for name in ("carol", "alice", "bob"):
        ledger.register(name)
    ledger.login("carol", 7000, "10.0.0.3")
    ledger.login("alice", 5000, "10.0.0.1")
    names = [a.name for a in ledger.online_accounts()]
    assert names == ["alice", "carol"]
    ledger.logout("alice")
    assert [a.name for a in ledger.online_accounts()] == ["carol"]


def test_online_accounts_returns_copies(ledger):
    ledger.register("alice")
    ledger.login("alice", 5000, "127.0.0.1")
    ledger.online_accounts()[0].balance = -1
    assert ledger.balance_of("alice") == DEFAULT_BALANCE


def test_transfer_conserves_total(ledger):
    ledger.register("alice")
    ledger.register("bob")
    ledger.transfer("alice", 250, "bob")
    assert ledger.balance_of("alice") + ledger.balance_of("bob") == 2 * DEFAULT_BALANCE
    assert ledger.balance_of("bob") - ledger.balance_of("alice") == 500


def test_transfer_unknown_party_leaves_balances(ledger):
    ledger.register("alice")
    with pytest.raises(KeyError):
        ledger.transfer("alice", 100, "ghost")
    assert ledger.balance_of("alice") == DEFAULT_BALANCE


def test_list_message_format(ledger):
    ledger.register("alice")
    ledger.login("alice", 5000, "127.0.0.1")
    assert ledger.list_message("alice") == (
        "10000\nServerPubKey_Dummy\n1\nalice#127.0.0.1#5000\n"
    )


def test_online_table_lists_online_users(ledger):
    ledger.register("alice")
    ledger.login("alice", 5000, "127.0.0.1")
    lines = ledger.online_table().split("\n")
    assert lines[1] == "Current Online List:"
    assert lines[2] == "alice\t127.0.0.1:5000"
    assert lines[0] == lines[-1] == "-" * 42


def test_normalize_command_strips_newlines_and_nul():
    assert normalize_command(b"List\r\n") == "List"
    assert normalize_command("Li\nst\0garbage") == "List"
    assert normalize_command(b"\r\n") == ""


def test_connection_register_replies(ledger):
    conn, _ = make_conn(ledger)
    assert conn.handle("REGISTER#alice\n") == "100 OK\n"
    assert conn.handle("REGISTER#alice") == "210 FAIL\n"


def test_connection_blank_returns_none(ledger):
    conn, _ = make_conn(ledger)
    assert conn.handle("\r\n") is None


def test_connection_login_returns_list(ledger):
    conn, _ = make_conn(ledger, ip="192.168.1.20")
    conn.handle("REGISTER#alice")
    reply = conn.handle("alice#5000")
    assert reply == ledger.list_message("alice")
    assert reply.endswith("alice#192.168.1.20#5000\n")
    assert conn.user == "alice"


def test_connection_login_unknown(ledger):
    conn, _ = make_conn(ledger)
    assert conn.handle("bob#5000") == Response.AUTH_FAIL.value
    assert conn.user is None


def test_connection_list_requires_login(ledger):
    conn, _ = make_conn(ledger)
    assert conn.handle("List") == "Please login first\n"


def test_connection_transfer(ledger):
    conn, _ = make_conn(ledger)
    conn.handle("REGISTER#alice")
    conn.handle("REGISTER#bob")
    assert conn.handle("alice#300#bob") == "Transfer OK\n"
    assert ledger.balance_of("alice") + ledger.balance_of("bob") == 2 * DEFAULT_BALANCE
    assert conn.handle("alice#300#ghost") == "Transfer Fail\n"


def test_connection_format_error(ledger):
    conn, _ = make_conn(ledger)
    assert conn.handle("hello") == "230 Input format error\n"
    assert conn.handle("a#b#c#d") == Response.FORMAT_ERROR.value


def test_connection_exit_goes_offline_and_closes(ledger):
    conn, _ = make_conn(ledger)
    conn.handle("REGISTER#alice")
    conn.handle("alice#5000")
    assert conn.handle("Exit") == "Bye\n"
    assert conn.closed
    assert ledger.online_accounts() == []
    with pytest.raises(RuntimeError):
        conn.handle("List")


def test_disconnect_takes_user_offline(ledger):
    conn, logs = make_conn(ledger, mode=OutputMode.BASIC)
    conn.handle("REGISTER#alice")
    conn.handle("alice#5000")
    conn.disconnect()
    assert ledger.online_accounts() == []
    assert logs[-1] == "[Info] User alice disconnected."


def test_logging_levels(ledger):
    conn, logs = make_conn(ledger, mode=OutputMode.ALL)
    conn.handle("REGISTER#alice")
    assert logs == [
        "[Recv from Unknown]: REGISTER#alice",
        "[Register] New user: alice",
        "[Send to ]: 100 OK",
    ]


def test_default_mode_logs_nothing(ledger):
    conn, logs = make_conn(ledger)
    conn.handle("REGISTER#alice")
    conn.handle("alice#5000")
    conn.handle("Exit")
    assert logs == []