from __future__ import annotations

import enum
import re
from collections.abc import Iterator
from dataclasses import dataclass, field

from .exceptions import ParseError

#: Prefix of an ``:include:`` expansion
INCLUDE_PREFIX: str = ":include:"

_USERNAME_RE: re.Pattern[str] = re.compile(r"^[A-Za-z0-9_.+-]+$")
_DOMAIN_RE: re.Pattern[str] = re.compile(
    r"^(\[[0-9A-Fa-f:.]+\]|[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?)*)$"
)


class ExpandType(enum.Enum):
    ADDRESS = "address"
    USERNAME = "username"
    FILENAME = "filename"
    FILTER = "filter"
    INCLUDE = "include"


@dataclass(frozen=True)
class ExpandNode:
    """
    One delivery target.

    Attributes:
        type: what kind of target this is
        value: the address, username, path or command

    """

    type: ExpandType
    value: str


def _as_include(line: str) -> ExpandNode | None:
    if not line.startswith(INCLUDE_PREFIX):
        return None
    path = line[len(INCLUDE_PREFIX) :].strip()
    if not path.startswith("/"):
        return None
    return ExpandNode(ExpandType.INCLUDE, path)


def _as_filter(line: str) -> ExpandNode | None:
    if len(line) > 1 and line[0] == line[-1] == '"':
        line = line[1:-1]
    if not line.startswith("|"):
        return None
    command = line[1:].strip()
    if not command:
        return None
    return ExpandNode(ExpandType.FILTER, command)


def _as_filename(line: str) -> ExpandNode | None:
    if not line.startswith("/"):
        return None
    return ExpandNode(ExpandType.FILENAME, line)


def _as_address(line: str) -> ExpandNode | None:
    user, sep, domain = line.rpartition("@")
    if not sep or not user or not domain:
        return None
    if any(c.isspace() for c in user) or not _DOMAIN_RE.match(domain):
        return None
    return ExpandNode(ExpandType.ADDRESS, f"{user}@{domain.lower()}")


def _as_username(line: str) -> ExpandNode | None:
    if not _USERNAME_RE.match(line):
        return None
    return ExpandNode(ExpandType.USERNAME, line)


_PARSERS = (_as_include, _as_filter, _as_filename, _as_address, _as_username)


def parse_expansion(text: str) -> ExpandNode:
    """
    Parse one alias value into an :py:class:`ExpandNode`.

    We try, in order:

    * ``:include:/path`` -- :py:attr:`ExpandType.INCLUDE`
    * ``|command`` or ``"|command"`` -- :py:attr:`ExpandType.FILTER`
    * ``/path`` -- :py:attr:`ExpandType.FILENAME`
    * ``user@domain`` -- :py:attr:`ExpandType.ADDRESS`
    * ``user`` -- :py:attr:`ExpandType.USERNAME`

    Args:
        text: the value, surrounding whitespace is ignored

    Raises:
        ParseError: ``text`` matches none of the above

    Returns:
        The parsed node.

    """
    line = text.strip()
    for parser in _PARSERS:
        node = parser(line)
        if node is not None:
            return node
    msg = f"invalid expansion {text!r}"
    raise ParseError(msg)


@dataclass
class ExpansionList:
    """
    The result of a successful lookup: the nodes in the order the directory
    returned them, and how many there are.
    """

    nodes: list[ExpandNode] = field(default_factory=list)
    count: int = 0

    def append(self, node: ExpandNode) -> None:
        self.nodes.append(node)
        self.count += 1

    def clear(self) -> None:
        self.nodes.clear()
        self.count = 0

    def __iter__(self) -> Iterator[ExpandNode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return self.count
