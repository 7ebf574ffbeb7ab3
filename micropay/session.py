"""Client-side session state: who we are, who is online, and the transfer flow."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from micropay.ledger import DEFAULT_BALANCE
from micropay.listing import (
    ListSnapshot,
    OnlineUser,
    Transfer,
    clean_input,
    parse_list,
    parse_transfer,
)

_MAX_NAME = 127
_INT_RE = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")

_MENU_BOX = (
    "┌──────────────────────── Commands ──────────────────────────┐\n"
    "│  REGISTER#name          a#amount#b             Exit        │\n"
    "│  name#port              List                               │\n"
    "└────────────────────────────────────────────────────────────┘\n"
    "> "
)


def _atoi(text: str) -> int:
    match = _INT_RE.match(text)
    return int(match.group(1)) if match else 0


class ClientState(Enum):
    """Where the client stands in handling a payment it received."""

    IDLE = 0
    AWAITING_TRANSFER_OK = 1
    AWAITING_LIST = 2


class TransferRejected(Exception):
    """A transfer the client refuses to send."""


@dataclass(frozen=True)
class Command:
    """One typed line, cleaned and classified."""

    text: str
    transfer: Optional[Transfer] = None
    login_port: Optional[int] = None
    blocked: bool = False

    @property
    def is_exit(self) -> bool:
        """True for the Exit command, in any letter case."""
        return self.text.lower() == "exit"

    @property
    def refresh_list(self) -> bool:
        """True if the server's reply should be read as a List payload."""
        return not self.text[:8].lower() == "register" and not self.is_exit

    @property
    def goes_to_server(self) -> bool:
        """True if the line is sent to the server as it is."""
        return self.transfer is None and not self.blocked


class ClientSession:
    """The client's view of itself and of the online users."""

    def __init__(self) -> None:
        self.name = ""
        self.port = 0
        self.balance = DEFAULT_BALANCE
        self.users: tuple[OnlineUser, ...] = ()
        self.state = ClientState.IDLE

    @property
    def logged_in(self) -> bool:
        return bool(self.name)

    def find_user(self, name: str) -> Optional[OnlineUser]:
        """The online user with exactly this name, or None."""
        return next((user for user in self.users if user.name == name), None)

    def check_transfer(self, transfer: Transfer) -> OnlineUser:
        """The receiver to pay; raise TransferRejected if the transfer is not allowed."""
        if not self.logged_in:
            raise TransferRejected("not logged in")
        if transfer.sender.lower() != self.name.lower():
            raise TransferRejected("can only transfer under your own name")
        if transfer.receiver == self.name:
            raise TransferRejected("cannot transfer to yourself")
        if transfer.amount <= 0:
            raise TransferRejected("amount must be a positive integer")
        if transfer.amount > self.balance:
            raise TransferRejected("insufficient balance")
        target = self.find_user(transfer.receiver)
        if target is None:
            raise TransferRejected(f"receiver {transfer.receiver!r} is not online")
        return target

    def apply_list(self, text: str) -> ListSnapshot:
        """Take balance and users from a List reply.

        The user list is cleared first; if no payload is found it stays
        empty and ValueError is raised.
        """
        self.users = ()
        snapshot = parse_list(text, self.balance)
        self.balance = snapshot.balance
        self.users = snapshot.users
        return snapshot

    def on_server_reply(self, text: str) -> Optional[str]:
        """Advance the transfer flow on an unsolicited reply; return a line to send, if any.

        While awaiting the list, the state returns to IDLE before the reply
        is applied, so a ValueError from apply_list leaves the session idle.
        """
        if self.state is ClientState.AWAITING_TRANSFER_OK:
            self.state = ClientState.AWAITING_LIST
            return "List"
        if self.state is ClientState.AWAITING_LIST:
            self.state = ClientState.IDLE
            self.apply_list(text)
        return None

    def on_incoming_transfer(self, transfer: Transfer) -> list[str]:
        """Lines to send the server after a peer paid us: the transfer, then List."""
        self.state = ClientState.AWAITING_LIST
        return [transfer.encode(), "List"]

    def classify(self, line: str) -> Optional[Command]:
        """Classify a typed line, or None if it is blank.

        A name#port line records the name and port as our own.
        """
        text = clean_input(line)
        if not text:
            return None
        transfer = parse_transfer(text)
        if transfer is not None:
            return Command(text, transfer=transfer)
        login_port = None
        if "#" in text and text[:9].lower() != "register#":
            name, _, rest = text.partition("#")
            self.name = name[:_MAX_NAME]
            self.port = _atoi(rest)
            login_port = self.port
        return Command(
            text,
            login_port=login_port,
            blocked=self.state is not ClientState.IDLE,
        )

    def render_menu(self) -> str:
        """User info box and command list, ending with the prompt."""
        name = self.name or "(not login)"
        ip = "N/A"
        port = self.port
        if self.logged_in:
            me = self.find_user(self.name)
            if me is not None:
                ip, port = me.ip, me.port
        return (
            "\n#==================== User Info ====================#\n\n"
            f"User : {name:<12}  Balance: {self.balance}\n"
            f"IP   : {ip:<12}  Port   : {port}\n"
            "\n" + _MENU_BOX
        )