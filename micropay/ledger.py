"""Account book and per-connection command handling for the payment server."""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Iterator, Optional, Union

DEFAULT_BALANCE = 10000
SERVER_KEY = "ServerPubKey_Dummy"
_RULE = "-" * 42


class OutputMode(IntEnum):
    """How much the server reports on its console."""

    DEFAULT = 0
    BASIC = 1  # -d: register, login, exit, transfer
    SHOW_LIST = 2  # -s: also the online list on login and exit
    ALL = 3  # -a: every message received and sent


class Response(str, Enum):
    """Fixed replies of the wire protocol."""

    REGISTER_OK = "100 OK\n"
    REGISTER_FAIL = "210 FAIL\n"
    AUTH_FAIL = "220 AUTH_FAIL\n"
    FORMAT_ERROR = "230 Input format error\n"
    LOGIN_FIRST = "Please login first\n"
    TRANSFER_OK = "Transfer OK\n"
    TRANSFER_FAIL = "Transfer Fail\n"
    BYE = "Bye\n"


@dataclass
class Account:
    """A registered user and where peers can reach them."""

    name: str
    balance: int = DEFAULT_BALANCE
    online: bool = False
    ip: str = ""
    port: int = 0


class Ledger:
    """Thread-safe store of all accounts, keyed and ordered by name."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._accounts: dict[str, Account] = {}

    def __contains__(self, name: object) -> bool:
        with self.lock:
            return name in self._accounts

    def __len__(self) -> int:
        with self.lock:
            return len(self._accounts)

    def register(self, name: str) -> Account:
        """Create an account; raise ValueError if the name is taken."""
        with self.lock:
            if name in self._accounts:
                raise ValueError(f"account {name!r} already exists")
            account = Account(name)
            self._accounts[name] = account
            return dataclasses.replace(account)

    def login(self, name: str, port: int, ip: str) -> None:
        """Mark an account online at ip:port; raise KeyError if unknown."""
        with self.lock:
            account = self._accounts[name]
            account.online = True
            account.ip = ip
            account.port = port

    def logout(self, name: str) -> None:
        """Mark an account offline; raise KeyError if unknown."""
        with self.lock:
            self._accounts[name].online = False

    def transfer(self, sender: str, amount: int, receiver: str) -> None:
        """Move amount from sender to receiver; raise KeyError if either is unknown."""
        with self.lock:
            for name in (sender, receiver):
                if name not in self._accounts:
                    raise KeyError(name)
            self._accounts[sender].balance -= amount
            self._accounts[receiver].balance += amount

    def balance_of(self, name: str) -> int:
        """Balance of an account, or 0 for an unknown name."""
        with self.lock:
            account = self._accounts.get(name)
            return account.balance if account else 0

    def online_accounts(self) -> list[Account]:
        """Copies of the online accounts, ordered by name."""
        with self.lock:
            return [
                dataclasses.replace(self._accounts[name])
                for name in sorted(self._accounts)
                if self._accounts[name].online
            ]

    def list_message(self, requestor: str) -> str:
        """The List reply: balance, server key, online count, then name#ip#port lines."""
        with self.lock:
            users = self.online_accounts()
            header = [str(self.balance_of(requestor)), SERVER_KEY, str(len(users))]
            body = [f"{u.name}#{u.ip}#{u.port}" for u in users]
            return "".join(line + "\n" for line in header + body)

    def online_table(self) -> str:
        """Console view of who is online, framed by rules."""
        lines = [_RULE, "Current Online List:"]
        lines.extend(f"{u.name}\t{u.ip}:{u.port}" for u in self.online_accounts())
        lines.append(_RULE)
        return "\n".join(lines)


def normalize_command(raw: Union[bytes, str]) -> str:
    """Text up to the first NUL, with every CR and LF removed."""
    if isinstance(raw, bytes):
        raw = raw.split(b"\0", 1)[0].decode("utf-8", errors="replace")
    else:
        raw = raw.split("\0", 1)[0]
    return raw.replace("\n", "").replace("\r", "")


def _atoi(text: str) -> int:
    """Leading decimal integer of text, 0 if there is none."""
    stripped = text.lstrip(" \t\n\v\f\r")
    sign = 1
    if stripped[:1] in ("+", "-"):
        sign = -1 if stripped[0] == "-" else 1
        stripped = stripped[1:]
    digits = "".join(_leading_digits(stripped))
    return sign * int(digits) if digits else 0


def _leading_digits(text: str) -> Iterator[str]:
    for ch in text:
        if not ("0" <= ch <= "9"):
            return
        yield ch


class Connection:
    """Protocol state for one client connection to the server."""

    def __init__(
        self,
        ledger: Ledger,
        peer_ip: str,
        mode: OutputMode = OutputMode.DEFAULT,
        log: Callable[[str], None] = print,
    ) -> None:
        self.ledger = ledger
        self.peer_ip = peer_ip
        self.mode = mode
        self.log = log
        self.user: Optional[str] = None
        self.closed = False

    def handle(self, raw: Union[bytes, str]) -> Optional[str]:
        """Process one received chunk and return the reply, or None if it was blank."""
        if self.closed:
            raise RuntimeError("connection is closed")
        cmd = normalize_command(raw)
        if not cmd:
            return None
        if self.mode >= OutputMode.ALL:
            self.log(f"[Recv from {self.user or 'Unknown'}]: {cmd}")
        with self.ledger.lock:
            response = self._dispatch(cmd)
        if not self.closed and self.mode >= OutputMode.ALL:
            self.log(f"[Send to {self.user or ''}]: {response.replace(chr(10), '')}")
        return response

    def disconnect(self) -> None:
        """Take the logged-in user offline when the connection drops."""
        with self.ledger.lock:
            if self.user is not None:
                self._go_offline()
        self.closed = True

    def _go_offline(self) -> None:
        assert self.user is not None
        self.ledger.logout(self.user)
        if self.mode >= OutputMode.BASIC:
            self.log(f"[Info] User {self.user} disconnected.")
        if self.mode >= OutputMode.SHOW_LIST:
            self.log(self.ledger.online_table())
        self.user = None

    def _dispatch(self, cmd: str) -> str:
        hashes = cmd.count("#")
        if cmd.startswith("REGISTER#"):
            return self._register(cmd[len("REGISTER#"):])
        if hashes == 1:
            name, _, port = cmd.partition("#")
            return self._login(name, _atoi(port))
        if cmd == "List":
            if self.user is None:
                return Response.LOGIN_FIRST.value
            return self.ledger.list_message(self.user)
        if cmd == "Exit":
            if self.user is not None:
                self._go_offline()
            self.closed = True
            return Response.BYE.value
        if hashes == 2:
            sender, amount, receiver = cmd.split("#")
            return self._transfer(sender, _atoi(amount), receiver)
        return Response.FORMAT_ERROR.value

    def _register(self, name: str) -> str:
        try:
            self.ledger.register(name)
        except ValueError:
            return Response.REGISTER_FAIL.value
        if self.mode >= OutputMode.BASIC:
            self.log(f"[Register] New user: {name}")
        return Response.REGISTER_OK.value

    def _login(self, name: str, port: int) -> str:
        try:
            self.ledger.login(name, port, self.peer_ip)
        except KeyError:
            return Response.AUTH_FAIL.value
        self.user = name
        if self.mode >= OutputMode.BASIC:
            self.log(f"[Login] User: {name} on port {port}")
        if self.mode >= OutputMode.SHOW_LIST:
            self.log(self.ledger.online_table())
        return self.ledger.list_message(name)

    def _transfer(self, sender: str, amount: int, receiver: str) -> str:
        try:
            self.ledger.transfer(sender, amount, receiver)
        except KeyError:
            return Response.TRANSFER_FAIL.value
        if self.mode >= OutputMode.BASIC:
            self.log(f"[Transfer] {sender} -> {receiver} ({amount})")
        return Response.TRANSFER_OK.value