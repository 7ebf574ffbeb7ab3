"""Parsing of the client-side protocol text: transfer commands and List replies."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

MAX_ONLINE_USERS = 100
_MAX_NAME = 127
_MAX_IP = 15
_MAX_REPLY = 4095
_INPUT_STOP = "\r\n\t "

_TRANSFER_RE = re.compile(r"([^#]+)#[ \t\n\v\f\r]*([+-]?[0-9]+)#[ \t\n\v\f\r]*([^ \t\n\v\f\r]+)")
_USER_RE = re.compile(r"([^#]+)#([^#]+)#[ \t\n\v\f\r]*([+-]?[0-9]+)")
_INT_RE = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")


@dataclass(frozen=True)
class OnlineUser:
    """An online user and the address where peers reach them."""

    name: str
    ip: str
    port: int


@dataclass(frozen=True)
class Transfer:
    """A payment of amount from sender to receiver."""

    sender: str
    amount: int
    receiver: str

    def encode(self) -> str:
        """Wire form: sender#amount#receiver."""
        return f"{self.sender}#{self.amount}#{self.receiver}"


@dataclass(frozen=True)
class ListSnapshot:
    """What one List reply says: balance, server key, expected count and users."""

    balance: int
    server_key: str = ""
    expected: int = 0
    users: tuple[OnlineUser, ...] = field(default_factory=tuple)


def _leading_int(text: str) -> Optional[int]:
    match = _INT_RE.match(text)
    return int(match.group(1)) if match else None


def clean_input(line: str) -> str:
    """The line cut at its first CR, LF, tab or space."""
    for index, ch in enumerate(line):
        if ch in _INPUT_STOP:
            return line[:index]
    return line


def parse_transfer(text: str) -> Optional[Transfer]:
    """A Transfer if text has the form sender#amount#receiver, else None."""
    match = _TRANSFER_RE.match(text)
    if match is None:
        return None
    sender, amount, receiver = match.groups()
    return Transfer(sender, int(amount), receiver)


def looks_like_list(text: str) -> bool:
    """True if the first non-blank character is a decimal digit."""
    stripped = text.lstrip(" \r\n\t")
    return bool(stripped) and "0" <= stripped[0] <= "9"


def _payload_start(text: str) -> int:
    """Index of the first line that starts with a digit, skipping noise lines."""
    pos = 0
    while pos < len(text) and not ("0" <= text[pos] <= "9"):
        newline = text.find("\n", pos)
        if newline < 0:
            break
        pos = newline + 1
    return pos


def parse_list(text: str, previous_balance: int) -> ListSnapshot:
    """Parse a List reply; raise ValueError if no payload can be found.

    Leading lines that do not start with a digit (such as a stray
    "Transfer OK") are skipped. The balance stays previous_balance when
    the first line holds no number, and a negative balance reads as 0.
    """
    text = text[:_MAX_REPLY]
    start = _payload_start(text)
    if start >= len(text):
        raise ValueError(f"cannot find start of List payload: {text!r}")

    balance = previous_balance
    server_key = ""
    expected = 0
    users: list[OnlineUser] = []

    tokens = (token for token in text[start:].split("\n") if token)
    for line_no, token in enumerate(tokens):
        line = token.split("\r", 1)[0]
        if line_no == 0:
            parsed = _leading_int(line)
            if parsed is not None:
                balance = max(parsed, 0)
        elif line_no == 1:
            server_key = line
        elif line_no == 2:
            expected = _leading_int(line) or 0
        elif len(users) < MAX_ONLINE_USERS:
            match = _USER_RE.match(line)
            if match is not None:
                name, ip, port = match.groups()
                users.append(OnlineUser(name[:_MAX_NAME], ip[:_MAX_IP], int(port)))
        if expected and len(users) >= expected:
            break

    return ListSnapshot(balance, server_key, expected, tuple(users))


def format_users(users: Iterable[OnlineUser]) -> str:
    """Console listing: a count line, then one "  - name@ip:port" line per user."""
    users = list(users)
    lines = [f"[INFO] {len(users)} users online:"]
    lines.extend(f"  - {u.name}@{u.ip}:{u.port}" for u in users)
    return "\n".join(lines)