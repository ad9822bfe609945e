from __future__ import annotations

import socket
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import ldap
import ldapurl

from .exceptions import AuthError, ConnectError, ProtocolError
from .logging import logger

if TYPE_CHECKING:
    from types import TracebackType

    from .config import DirectoryConfig

#: The port we use when the URL does not name one
DEFAULT_PORT: int = 389

#: Address families we are willing to connect over
STREAM_FAMILIES: tuple[int, ...] = (socket.AF_INET, socket.AF_INET6)


def parse_url(url: str) -> tuple[str, int]:
    """
    Split an ``ldap://`` URL into host and port.

    Args:
        url: the server URL, e.g. ``ldap://ldap.example.com:389``

    Raises:
        ConnectError: ``url`` is not an LDAP URL, uses a scheme other than
            ``ldap``, or names no host

    Returns:
        A ``(host, port)`` 2-tuple.

    """
    try:
        parsed = ldapurl.LDAPUrl(url)
    except ValueError as exc:
        msg = f"invalid LDAP URL {url!r}"
        raise ConnectError(msg) from exc
    if parsed.urlscheme != "ldap":
        msg = f"unsupported URL scheme {parsed.urlscheme!r} in {url!r}"
        raise ConnectError(msg)
    try:
        split = urlsplit(f"//{parsed.hostport}")
        host = split.hostname
        port = split.port or DEFAULT_PORT
    except ValueError as exc:
        msg = f"invalid host or port in {url!r}"
        raise ConnectError(msg) from exc
    if not host:
        msg = f"no host in {url!r}"
        raise ConnectError(msg)
    return host, port


def connect_stream(host: str, port: int) -> socket.socket:
    """
    Resolve ``host`` and open a TCP connection to the first of its IPv4 or
    IPv6 addresses that accepts one.

    Args:
        host: hostname or address literal
        port: TCP port

    Raises:
        ConnectError: ``host`` did not resolve, or no address accepted a
            connection

    Returns:
        A connected stream socket.

    """
    try:
        candidates = socket.getaddrinfo(
            host, port, socket.AF_UNSPEC, socket.SOCK_STREAM
        )
    except (OSError, UnicodeError) as exc:
        msg = f"could not resolve {host!r}: {exc}"
        raise ConnectError(msg) from exc
    for family, socktype, proto, _, sockaddr in candidates:
        if family not in STREAM_FAMILIES:
            continue
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError:
            continue
        try:
            sock.connect(sockaddr)
        except OSError as exc:
            logger.debug(
                "connection.candidate_failed address=%s error=%s", sockaddr, exc
            )
            sock.close()
            continue
        logger.debug("connection.connected address=%s", sockaddr)
        return sock
    msg = f"could not connect to {host!r} port {port}"
    raise ConnectError(msg)


class DirectorySession:
    """
    One python-ldap connection riding on a socket we connected ourselves.

    python-ldap owns the descriptor handed to it via ``fileno`` and closes
    it on unbind, so we detach our socket object from it and never close it
    ourselves.

    Args:
        url: the URL we connected to
        connection: the ``ldap.ldapobject.LDAPObject`` using our descriptor

    """

    def __init__(self, url: str, connection: ldap.ldapobject.LDAPObject) -> None:
        self.url: str = url
        self.connection: ldap.ldapobject.LDAPObject = connection
        self.closed: bool = False

    def close(self) -> None:
        """
        Unbind, which also closes the descriptor.  Calling this more than
        once does nothing.
        """
        if self.closed:
            return
        self.closed = True
        _unbind(self.connection, self.url)
        logger.debug("session.closed url=%s", self.url)


def _unbind(connection: ldap.ldapobject.LDAPObject, url: str) -> None:
    try:
        connection.unbind_ext_s()
    except ldap.LDAPError as exc:
        logger.debug("session.unbind_failed url=%s error=%s", url, exc)


def open_session(config: DirectoryConfig) -> DirectorySession:
    """
    Connect to the server named by ``config.url``.

    Args:
        config: the directory configuration

    Raises:
        ConnectError: the URL was invalid, the server could not be reached,
            or python-ldap could not take over the connection

    Returns:
        An unauthenticated :py:class:`DirectorySession`.

    """
    host, port = parse_url(config.url)
    sock = connect_stream(host, port)
    try:
        connection = ldap.initialize(config.url, fileno=sock)
    except (ldap.LDAPError, ValueError) as exc:
        # ValueError: libldap was built without ldap_init_fd
        sock.close()
        msg = f"could not initialize LDAP connection to {config.url!r}: {exc}"
        raise ConnectError(msg) from exc
    sock.detach()
    try:
        connection.set_option(ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3)
        connection.set_option(ldap.OPT_REFERRALS, 0)
    except ldap.LDAPError as exc:
        _unbind(connection, config.url)
        msg = f"could not initialize LDAP connection to {config.url!r}: {exc}"
        raise ConnectError(msg) from exc
    return DirectorySession(config.url, connection)


def authenticate(session: DirectorySession, username: str, password: str) -> None:
    """
    Do a simple bind on ``session`` and wait for its single response.

    Args:
        session: an open session
        username: the DN to bind as; empty for an anonymous bind
        password: the password for ``username``

    Raises:
        AuthError: the server refused the credentials
        ProtocolError: any other failure, or a response that is not the
            bind response we are waiting for

    """
    try:
        msgid = session.connection.simple_bind(username, password)
        rtype, _, rmsgid, _ = session.connection.result3(ldap.RES_ANY, all=1)
    except ldap.INVALID_CREDENTIALS as exc:
        logger.warning("session.bind_refused url=%s who=%s", session.url, username)
        msg = f"invalid credentials for {username!r}"
        raise AuthError(msg) from exc
    except ldap.LDAPError as exc:
        msg = f"bind failed: {exc}"
        raise ProtocolError(msg) from exc
    if rtype != ldap.RES_BIND or rmsgid != msgid:
        msg = f"expected bind response for msgid={msgid}, got type={rtype} msgid={rmsgid}"
        raise ProtocolError(msg)
    logger.info("session.bound url=%s who=%s", session.url, username)


class LDAPHandle:
    """
    An authenticated :py:class:`DirectorySession` paired with the
    :py:class:`DirectoryConfig` it was opened from.

    A handle must only be driven by one lookup at a time.  Use it as a
    context manager to make sure it gets closed::

        with open_handle(config) as handle:
            PagedSearch(handle).run("postmaster")

    """

    def __init__(self, session: DirectorySession, config: DirectoryConfig) -> None:
        self.session: DirectorySession = session
        self.config: DirectoryConfig = config

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:
        return self.session.connection

    @property
    def closed(self) -> bool:
        return self.session.closed

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> LDAPHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def open_handle(config: DirectoryConfig) -> LDAPHandle:
    """
    Connect and bind to the server described by ``config``.  If the bind
    fails, the connection is closed before the error is raised.

    Args:
        config: the directory configuration

    Raises:
        ConnectError: we could not connect
        AuthError: the server refused our credentials
        ProtocolError: the bind failed for another reason

    Returns:
        An open, authenticated :py:class:`LDAPHandle`.

    """
    session = open_session(config)
    try:
        authenticate(session, config.username, config.password)
    except (AuthError, ProtocolError):
        session.close()
        raise
    return LDAPHandle(session, config)
