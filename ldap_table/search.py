from __future__ import annotations

from typing import TYPE_CHECKING

import ldap
from case_insensitive_dict import CaseInsensitiveDict
from ldap.controls import SimplePagedResultsControl

from .exceptions import LDAPTableError, LookupFailed, ParseError, ProtocolError
from .expansion import ExpansionList, parse_expansion
from .filter import expand_filter
from .logging import logger

if TYPE_CHECKING:
    from .connection import LDAPHandle
    from .types import LDAPSearchResult, PageCursor

#: Response controls we want python-ldap to decode for us
RESPONSE_CONTROLS: dict[str, type[SimplePagedResultsControl]] = {
    SimplePagedResultsControl.controlType: SimplePagedResultsControl,
}


class PagedSearch:
    """
    Run one lookup against the directory behind ``handle``: expand the
    filter, issue a subtree search for the configured attribute, read the
    responses one message at a time, and follow the paged results cookie
    until the server says there are no more pages.

    Every response must carry the message id of the request we are waiting
    on.  Anything unexpected aborts the whole lookup: the outstanding request
    is abandoned, whatever we collected so far is thrown away, and
    :py:exc:`LookupFailed` is raised.

    There is no timeout here.  A server that never answers blocks
    :py:meth:`run` forever; bound it with a supervisor.

    Args:
        handle: an open, authenticated handle.  It must not be used by
            anything else while :py:meth:`run` is in progress.

    """

    def __init__(self, handle: LDAPHandle) -> None:
        self.handle: LDAPHandle = handle
        #: The message id of the search we are waiting on, if any
        self.outstanding: int | None = None
        #: How many search requests we issued during the last :py:meth:`run`
        self.requests: int = 0

    def run(self, key: str) -> ExpansionList:
        """
        Look ``key`` up.

        Args:
            key: the lookup key, substituted into the filter template

        Raises:
            LookupFailed: the filter could not be built, the server misbehaved,
                or a value could not be parsed

        Returns:
            The expansion list, possibly empty.

        """
        config = self.handle.config
        self.requests = 0
        result = ExpansionList()
        try:
            search_filter = expand_filter(
                config.filter, key, max_length=config.max_filter_length
            )
            cursor: PageCursor = b""
            while True:
                cursor = self._fetch_page(search_filter, cursor, result)
                if not cursor:
                    break
        except (LDAPTableError, ldap.LDAPError) as exc:
            self._abandon()
            result.clear()
            logger.warning(
                "search.aborted identifier=%s key=%s error=%s",
                config.identifier,
                key,
                exc,
            )
            msg = f"lookup of {key!r} failed"
            raise LookupFailed(msg) from None
        logger.debug(
            "search.done identifier=%s key=%s requests=%d nodes=%d",
            config.identifier,
            key,
            self.requests,
            result.count,
        )
        return result

    def _fetch_page(
        self, search_filter: str, cursor: PageCursor, result: ExpansionList
    ) -> PageCursor:
        """
        Issue one search request and consume its responses up to and
        including the search result message.

        Returns:
            The cookie for the next page, or ``b""`` if this was the last.

        """
        config = self.handle.config
        connection = self.handle.connection
        page_control = SimplePagedResultsControl(
            True,  # noqa: FBT003
            size=config.page_size,
            cookie=cursor,
        )
        msgid = connection.search_ext(
            config.basedn,
            ldap.SCOPE_SUBTREE,
            search_filter,
            attrlist=[config.attribute],
            serverctrls=[page_control],
        )
        self.outstanding = msgid
        self.requests += 1
        logger.debug(
            "search.issued msgid=%d base=%s filter=%s", msgid, config.basedn, search_filter
        )
        while True:
            rtype, rdata, rmsgid, rctrls = connection.result3(
                ldap.RES_ANY, all=0, resp_ctrl_classes=RESPONSE_CONTROLS
            )
            if rmsgid != msgid:
                msg = f"expected msgid={msgid}, got msgid={rmsgid}"
                raise ProtocolError(msg)
            if rtype == ldap.RES_SEARCH_RESULT:
                self.outstanding = None
                return self._next_cursor(rctrls)
            if rtype != ldap.RES_SEARCH_ENTRY:
                msg = f"unexpected message type {rtype} for msgid={msgid}"
                raise ProtocolError(msg)
            self._add_entries(rdata, result)

    def _next_cursor(self, controls: list | None) -> PageCursor:
        for control in controls or []:
            if control.controlType == SimplePagedResultsControl.controlType:
                return control.cookie or b""
        return b""

    def _add_entries(self, entries: LDAPSearchResult, result: ExpansionList) -> None:
        attribute = self.handle.config.attribute
        for dn, attrs in entries:
            values = CaseInsensitiveDict(attrs).get(attribute)
            if values is None:
                msg = f"entry {dn!r} has no {attribute!r} attribute"
                raise ProtocolError(msg)
            for value in values:
                try:
                    text = value.decode("utf-8")
                except UnicodeDecodeError as exc:
                    msg = f"entry {dn!r}: {attribute} value is not UTF-8"
                    raise ParseError(msg) from exc
                result.append(parse_expansion(text))

    def _abandon(self) -> None:
        if self.outstanding is None:
            return
        msgid, self.outstanding = self.outstanding, None
        try:
            self.handle.connection.abandon_ext(msgid)
        except ldap.LDAPError as exc:
            logger.debug("search.abandon_failed msgid=%d error=%s", msgid, exc)
