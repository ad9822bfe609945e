from __future__ import annotations

import inspect
import json
import os
import sys
import warnings
from collections import deque
from copy import deepcopy
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

import ldap
from ldap.controls import SimplePagedResultsControl
from ldap_filter import Filter  # type: ignore[reportUnknownVariableType]
from ldap_filter.parser import ParseError

from .logging import logger
from .types import (
    CILDAPData,
    LDAPData,
    LDAPDirectory,
    LDAPRecord,
    LDAPSearchResult,
    RawLDAPDirectory,
    Result3,
)

if TYPE_CHECKING:
    from collections.abc import Callable


# =========================
# Call history
# =========================


@dataclass
class LDAPCallRecord:
    """
    A single call to a :py:class:`FakeLDAP` or :py:class:`FakeLDAPObject`
    method.

    Example:
        The call ``conn.search_ext(base, ldap.SCOPE_SUBTREE, '(uid=foo)',
        attrlist=['mail'])`` is recorded as::

            LDAPCallRecord(
                api_name='search_ext',
                args={
                    'base': base,
                    'scope': 2,
                    'filterstr': '(uid=foo)',
                    'attrlist': ['mail'],
                    ...
                }
            )

    """

    api_name: str  #: the name of the method called
    args: dict[str, Any]  #: the args and kwargs dict, defaults included


class CallHistory:
    """
    The call history of a :py:class:`FakeLDAP` or :py:class:`FakeLDAPObject`,
    filled in by the ``@record_call`` decorator.
    """

    def __init__(self, calls: list[LDAPCallRecord] | None = None):
        self._calls: list[LDAPCallRecord] = []
        if calls:
            self._calls = calls

    def register(self, api_name: str, arguments: dict[str, Any]) -> None:
        self._calls.append(LDAPCallRecord(api_name, arguments))

    def filter_calls(self, api_name: str) -> list[LDAPCallRecord]:
        """
        Return the calls to ``api_name``, in the order they were made.
        """
        return [call for call in self._calls if call.api_name == api_name]

    @property
    def calls(self) -> list[LDAPCallRecord]:
        return self._calls

    @property
    def names(self) -> list[str]:
        """
        The names of the methods called, in order.
        """
        return [call.api_name for call in self._calls]


def record_call(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Save a record of the call to ``func`` so that our tests can inspect it later.
    """

    @wraps(func)
    def inner(*args, **kwargs) -> Any:
        sig = inspect.signature(func)
        args_dict = dict(sig.bind(*args, **kwargs).arguments)
        args_dict["self"].calls.register(func.__name__, args_dict)
        del args_dict["self"]
        logger.debug("record_call api=%s, arguments=%s", func.__name__, args_dict)
        return func(*args, **kwargs)

    return inner


# =========================
# Directory data
# =========================


class DirectoryStore:
    """
    The entries our fake directory server answers searches from.

    Attribute names are case-insensitive, as they are in a real server, and
    searches are matched with :py:class:`ldap_filter.Filter`.

    Args:
        objects: LDAP records to load, as ``python-ldap`` would return them

    """

    def __init__(self, objects: list[LDAPRecord] | None = None) -> None:
        #: the records exactly as registered, values as ``list[bytes]``
        self.raw_objects: RawLDAPDirectory = RawLDAPDirectory()
        #: the same records with case-insensitive attributes and ``list[str]``
        #: values, which is what :py:meth:`ldap_filter.Filter.match` wants
        self.objects: LDAPDirectory = LDAPDirectory()
        #: dns in registration order; searches return entries in this order
        self.dns: list[str] = []
        if objects:
            self.register_objects(objects)

    def __len__(self) -> int:
        return len(self.dns)

    def convert_LDAPData(self, data: LDAPData) -> CILDAPData:  # noqa: N802
        d: dict[str, Any] = deepcopy(data)
        for key, value in d.items():
            d[key] = [v.decode("utf8") for v in value]
        return CILDAPData(d)

    def load_objects(self, filename: str) -> None:
        """
        Load records from a JSON file.  JSON has neither tuples nor bytes, so
        each record in the file is a ``[dn, {attr: [str, ...]}]`` list.

        Args:
            filename: the path to the JSON file

        """
        with Path(filename).open(encoding="utf-8") as fd:
            objects = json.load(fd)
        for dn, data in objects:
            self.register_object(
                (dn, {attr: [v.encode("utf-8") for v in values] for attr, values in data.items()})
            )

    def register_objects(self, objs: list[LDAPRecord]) -> None:
        for obj in objs:
            self.register_object(obj)

    def register_object(self, obj: LDAPRecord) -> None:
        """
        Add one record.

        Args:
            obj: a ``(dn, {attr: [bytes, ...]})`` 2-tuple

        Raises:
            ldap.INVALID_DN_SYNTAX: ``dn`` is not a well formed DN
            ldap.ALREADY_EXISTS: there is already a record with this dn
            TypeError: a value is not ``list[bytes]``

        """
        dn, data = obj
        if not ldap.dn.is_dn(dn):  # type: ignore[attr-defined]
            raise ldap.INVALID_DN_SYNTAX({"desc": "Invalid DN syntax", "info": dn})  # type: ignore[attr-defined]
        if dn in self.raw_objects:
            raise ldap.ALREADY_EXISTS({"desc": "Already exists", "info": dn})  # type: ignore[attr-defined]
        for attr, value in data.items():
            if not isinstance(value, list) or not all(isinstance(v, bytes) for v in value):
                msg = f"values must be of type List[bytes]: {attr}={value!r}"
                raise TypeError(msg)
        self.raw_objects[dn] = deepcopy(data)
        self.objects[dn] = self.convert_LDAPData(data)
        self.dns.append(dn)

    def check_password(self, dn: str, password: str) -> bool:
        if dn not in self.objects:
            return False
        return password in self.objects[dn].get("userPassword", [])

    def __parse_filterstr(self, filterstr: str) -> Any:
        try:
            return Filter.parse(filterstr)
        except ParseError as exc:
            raise ldap.FILTER_ERROR(  # type: ignore[attr-defined]
                {"result": -7, "desc": "Bad search filter", "ctrls": []}
            ) from exc

    def __filter_attributes(self, data: LDAPData, attrlist: list[str] | None) -> LDAPData:
        if not attrlist or "*" in attrlist:
            return deepcopy(data)
        wanted = {attr.lower() for attr in attrlist}
        return {attr: deepcopy(value) for attr, value in data.items() if attr.lower() in wanted}

    def search_subtree(
        self, base: str, filterstr: str, attrlist: list[str] | None = None
    ) -> LDAPSearchResult:
        """
        Return the records at or under ``base`` that match ``filterstr``.

        Raises:
            ldap.INVALID_DN_SYNTAX: ``base`` was not a well-formed DN
            ldap.FILTER_ERROR: ``filterstr`` has bad filter syntax

        """
        if base and not ldap.dn.is_dn(base):  # type: ignore[attr-defined]
            raise ldap.INVALID_DN_SYNTAX({"desc": "Invalid DN syntax", "info": base})  # type: ignore[attr-defined]
        basedn_parts = ldap.dn.explode_dn(base.lower(), flags=ldap.DN_FORMAT_LDAPV3)  # type: ignore[attr-defined]
        filt = self.__parse_filterstr(filterstr)
        results: LDAPSearchResult = []
        for dn in self.dns:
            if basedn_parts:
                dn_parts = ldap.dn.explode_dn(dn.lower(), flags=ldap.DN_FORMAT_LDAPV3)  # type: ignore[attr-defined]
                if dn_parts[-len(basedn_parts) :] != basedn_parts:
                    continue
            if filt.match(self.objects[dn]):
                results.append((dn, self.__filter_attributes(self.raw_objects[dn], attrlist)))
        return results


class LDAPServerFactory:
    """
    Decide which :py:class:`DirectoryStore` answers for a given LDAP URI.

    Register either one default store used for every URI, or one store per
    URI, not both.
    """

    def __init__(self) -> None:
        self.servers: dict[str, DirectoryStore] = {}
        self.default: DirectoryStore | None = None

    def load_from_file(self, filename: str, uri: str | None = None) -> None:
        store = DirectoryStore()
        store.load_objects(filename)
        self.register(store, uri=uri)

    def register(self, store: DirectoryStore, uri: str | None = None) -> None:
        """
        Raises:
            ValueError: ``uri`` was given but a default store is already set
            RuntimeWarning: an existing store was replaced
        """
        if uri and self.default is not None:
            msg = (
                f'You cannot register a DirectoryStore for uri="{uri}" because '
                "a default server has already been set"
            )
            raise ValueError(msg)
        if not uri:
            if self.default is not None:
                warnings.warn(
                    "LDAPServerFactory: overriding existing default DirectoryStore",
                    RuntimeWarning,
                    stacklevel=2,
                )
            self.default = store
            return
        if uri in self.servers:
            warnings.warn(
                f"LDAPServerFactory: overriding existing DirectoryStore for uri={uri}",
                RuntimeWarning,
                stacklevel=2,
            )
        self.servers[uri] = store

    def get(self, uri: str) -> DirectoryStore:
        """
        Raises:
            ldap.SERVER_DOWN: no store is registered for ``uri``
        """
        if self.default is not None:
            return self.default
        try:
            return self.servers[uri]
        except KeyError as exc:
            raise ldap.SERVER_DOWN({"desc": "Can't contact LDAP Server"}) from exc  # type: ignore[attr-defined]


# =========================
# Global LDAP object
# =========================


class FakeLDAP:
    """
    House our replacement for :py:func:`ldap.initialize`.  Each call returns
    a new :py:class:`FakeLDAPObject` answering from the store the
    :py:class:`LDAPServerFactory` picks for the URI.

    Anything set on :py:attr:`bind_error` is handed to every connection made
    afterwards, so tests can make the bind fail before they ever see the
    connection object.

    Args:
        server_factory: a configured :py:class:`LDAPServerFactory`

    """

    def __init__(self, server_factory: LDAPServerFactory) -> None:
        #: connections created, in order
        self.connections: list[FakeLDAPObject] = []
        #: call history for :py:meth:`initialize`
        self.calls: CallHistory = CallHistory()
        self.server_factory: LDAPServerFactory = server_factory
        #: if set, the response to every bind on new connections
        self.bind_error: ldap.LDAPError | None = None

    @record_call
    def initialize(
        self,
        uri: str,
        trace_level: int = 0,  # noqa: ARG002
        trace_file: TextIO = sys.stdout,  # noqa: ARG002
        trace_stack_limit: int | None = None,  # noqa: ARG002
        bytes_mode: Any = None,  # noqa: ARG002
        fileno: Any = None,
    ) -> FakeLDAPObject:
        """
        Patch target for :py:func:`ldap.initialize`.  We only use ``uri`` and
        ``fileno``; the rest are recorded and ignored.

        Raises:
            ldap.SERVER_DOWN: no store is registered for ``uri``

        """
        conn = FakeLDAPObject(uri, store=self.server_factory.get(uri), fileno=fileno)
        conn.bind_error = self.bind_error
        self.connections.append(conn)
        return conn

    def connection_calls(self, api_name: str) -> CallHistory:
        results: list[LDAPCallRecord] = []
        for conn in self.connections:
            results.extend(conn.calls.filter_calls(api_name))
        return CallHistory(results)


# =========================
# LDAPObject
# =========================


class FakeLDAPObject:
    """
    Simulate the asynchronous parts of ``ldap.ldapobject.LDAPObject`` that a
    lookup uses: ``simple_bind``, ``search_ext``, ``result3`` with
    ``all=0``, ``abandon_ext`` and ``unbind_ext_s``.

    Responses are queued when a request is made and handed out one message
    per :py:meth:`result3` call, like a real server: one
    ``RES_SEARCH_ENTRY`` per entry, then a ``RES_SEARCH_RESULT``.  The
    Simple Paged Results control is honoured: the result message carries a
    cookie until the last page.

    Use :py:meth:`inject` to make the server misbehave.

    Args:
        uri: the LDAP URI of the connection

    Keyword Args:
        store: the :py:class:`DirectoryStore` to answer from
        fileno: the socket (or descriptor) the caller connected for us.  Like
            python-ldap, we own the descriptor from now on.

    """

    def __init__(
        self,
        uri: str,
        store: DirectoryStore | None = None,
        fileno: Any = None,
    ) -> None:
        self.uri: str = uri  #: the LDAP URI for this connection
        self.fileno: Any = fileno  #: the socket we were handed
        #: the descriptor behind :py:attr:`fileno`; closed by :py:meth:`unbind_ext_s`
        self.fd: int | None = fileno.fileno() if hasattr(fileno, "fileno") else fileno
        self.fd_closed: bool = False
        self.store: DirectoryStore = store if store is not None else DirectoryStore()
        self.calls: CallHistory = CallHistory()  #: the method call history
        self.options: dict[int, Any] = {}  #: options from :py:meth:`set_option`
        self.bound_dn: str | None = None  #: set by a successful bind
        self.unbound: bool = False  #: set by :py:meth:`unbind_ext_s`
        #: if set, raised from :py:meth:`result3` in place of the bind response
        self.bind_error: ldap.LDAPError | None = None
        self.current_msgid: int = 1
        self.responses: deque[Result3 | ldap.LDAPError] = deque()
        self.searches: int = 0
        self._injections: dict[
            int, list[tuple[int, LDAPSearchResult, int | None, ldap.LDAPError | None]]
        ] = {}

    def _next_msgid(self) -> int:
        msgid = self.current_msgid
        self.current_msgid += 1
        return msgid

    # Test instrumentation

    def inject(
        self,
        search: int,
        rtype: int = ldap.RES_SEARCH_ENTRY,  # type: ignore[attr-defined]
        data: LDAPSearchResult | None = None,
        msgid: int | None = None,
        error: ldap.LDAPError | None = None,
    ) -> None:
        """
        Put a stray message in front of the responses to the ``search``-th
        :py:meth:`search_ext` call on this connection (counting from 1).

        Args:
            search: which search request to disturb
            rtype: the message type of the stray message

        Keyword Args:
            data: the message's data
            msgid: the message id; defaults to that of the search request
            error: if given, queue this error instead of a message; it is
                raised from :py:meth:`result3`

        """
        self._injections.setdefault(search, []).append((rtype, data or [], msgid, error))

    # LDAPObject methods

    @record_call
    def set_option(self, option: int, invalue: Any) -> None:
        self.options[option] = invalue

    @record_call
    def simple_bind(
        self,
        who: str | None = None,
        cred: str | None = None,
        serverctrls: list[ldap.controls.LDAPControl] | None = None,  # noqa: ARG002
        clientctrls: list[ldap.controls.LDAPControl] | None = None,  # noqa: ARG002
    ) -> int:
        """
        Queue the response to a bind.  An empty ``who`` is an anonymous bind
        and always succeeds; otherwise ``cred`` must match the entry's
        ``userPassword``.

        Returns:
            The message id of the bind request.

        """
        msgid = self._next_msgid()
        if self.bind_error is not None:
            self.responses.append(self.bind_error)
        elif not who or self.store.check_password(who, cred or ""):
            self.bound_dn = who or None
            self.responses.append((ldap.RES_BIND, [], msgid, []))  # type: ignore[attr-defined]
        else:
            self.responses.append(
                ldap.INVALID_CREDENTIALS(  # type: ignore[attr-defined]
                    {
                        "msgtype": ldap.RES_BIND,  # type: ignore[attr-defined]
                        "msgid": msgid,
                        "result": 49,
                        "desc": "Invalid credentials",
                        "ctrls": [],
                    }
                )
            )
        return msgid

    @record_call
    def search_ext(
        self,
        base: str,
        scope: int,
        filterstr: str = "(objectClass=*)",
        attrlist: list[str] | None = None,
        attrsonly: int = 0,  # noqa: ARG002
        serverctrls: list[ldap.controls.LDAPControl] | None = None,
        clientctrls: list[ldap.controls.LDAPControl] | None = None,  # noqa: ARG002
        timeout: int = -1,  # noqa: ARG002
        sizelimit: int = 0,  # noqa: ARG002
    ) -> int:
        """
        Queue the responses to a search.  Only ``SCOPE_SUBTREE`` is
        supported.

        Returns:
            The message id of the search request.

        """
        msgid = self._next_msgid()
        self.searches += 1
        for rtype, data, stray_msgid, error in self._injections.pop(self.searches, []):
            if error is not None:
                self.responses.append(error)
                continue
            self.responses.append(
                (rtype, data, msgid if stray_msgid is None else stray_msgid, [])
            )
        if scope != ldap.SCOPE_SUBTREE:  # type: ignore[attr-defined]
            self.responses.append(ldap.UNWILLING_TO_PERFORM({"desc": "Server is unwilling to perform"}))  # type: ignore[attr-defined]
            return msgid
        try:
            entries = self.store.search_subtree(base, filterstr, attrlist)
        except ldap.LDAPError as exc:
            self.responses.append(exc)
            return msgid
        page_control = next(
            (
                ctrl
                for ctrl in serverctrls or []
                if ctrl.controlType == SimplePagedResultsControl.controlType
            ),
            None,
        )
        controls: list[ldap.controls.LDAPControl] = []
        if page_control is not None:
            offset = int(page_control.cookie) if page_control.cookie else 0
            end = offset + page_control.size
            next_cookie = b"%d" % end if end < len(entries) else b""
            entries = entries[offset:end]
            controls.append(
                SimplePagedResultsControl(True, size=page_control.size, cookie=next_cookie)  # noqa: FBT003
            )
        for entry in entries:
            self.responses.append((ldap.RES_SEARCH_ENTRY, [entry], msgid, []))  # type: ignore[attr-defined]
        self.responses.append((ldap.RES_SEARCH_RESULT, [], msgid, controls))  # type: ignore[attr-defined]
        return msgid

    @record_call
    def result3(
        self,
        msgid: int = ldap.RES_ANY,  # type: ignore[attr-defined]
        all: int = 1,  # noqa: A002, ARG002
        timeout: int | None = None,  # noqa: ARG002
        resp_ctrl_classes: dict[str, type] | None = None,  # noqa: ARG002
    ) -> Result3:
        """
        Hand out the next queued message, or the next one for ``msgid`` if
        it is not ``ldap.RES_ANY``.  Queued errors match any ``msgid``.

        A real server with nothing to say would block forever; we raise
        ``ldap.TIMEOUT`` instead so a broken test fails rather than hangs.

        """
        for index, response in enumerate(self.responses):
            if (
                msgid == ldap.RES_ANY  # type: ignore[attr-defined]
                or isinstance(response, ldap.LDAPError)
                or response[2] == msgid
            ):
                break
        else:
            raise ldap.TIMEOUT({"desc": "Timed out"})  # type: ignore[attr-defined]
        del self.responses[index]
        if isinstance(response, ldap.LDAPError):
            raise response
        return response

    @record_call
    def abandon_ext(
        self,
        msgid: int,
        serverctrls: list[ldap.controls.LDAPControl] | None = None,  # noqa: ARG002
        clientctrls: list[ldap.controls.LDAPControl] | None = None,  # noqa: ARG002
    ) -> None:
        """
        Drop every queued message for ``msgid``.
        """
        self.responses = deque(
            r for r in self.responses if isinstance(r, ldap.LDAPError) or r[2] != msgid
        )

    @record_call
    def unbind_ext_s(
        self,
        serverctrls: list[ldap.controls.LDAPControl] | None = None,  # noqa: ARG002
        clientctrls: list[ldap.controls.LDAPControl] | None = None,  # noqa: ARG002
    ) -> None:
        """
        Unbind and close our descriptor, as python-ldap does.

        Raises:
            OSError: the descriptor was already closed by someone else

        """
        self.bound_dn = None
        self.unbound = True
        if self.fd is not None and not self.fd_closed:
            self.fd_closed = True
            os.close(self.fd)
