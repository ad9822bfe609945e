from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from .config import ConfigRegistry, registry
from .connection import LDAPHandle, open_handle
from .exceptions import ConfigError
from .expansion import ExpansionList
from .logging import logger
from .search import PagedSearch


class LookupService(enum.Flag):
    """
    The kinds of lookups a host may ask a backend for.
    """

    ALIAS = enum.auto()
    VIRTUAL = enum.auto()


class LookupBackend(ABC):
    """
    The contract a lookup backend fulfils for the host.

    The host calls :py:meth:`configure` once with the backend's
    configuration text, then :py:meth:`open` to get a handle, any number of
    :py:meth:`lookup` calls on that handle, and finally :py:meth:`close`.
    :py:meth:`refresh` asks the backend to reload its data.
    """

    #: The lookup services this backend can answer
    services: ClassVar[LookupService]

    @abstractmethod
    def configure(self, config_text: str) -> None:
        """
        Raises:
            ConfigError: ``config_text`` is not a valid configuration
        """

    @abstractmethod
    def open(self) -> Any: ...

    def refresh(self) -> bool:
        return True

    @abstractmethod
    def close(self, handle: Any) -> None: ...

    @abstractmethod
    def lookup(
        self, handle: Any, key: str, service: LookupService
    ) -> ExpansionList | None: ...


class LDAPBackend(LookupBackend):
    """
    Answer alias and virtual lookups from an LDAP directory.

    Example:
        >>> backend = LDAPBackend()
        >>> backend.configure(config_text)
        >>> handle = backend.open()
        >>> nodes = backend.lookup(handle, "postmaster", LookupService.ALIAS)
        >>> backend.close(handle)

    Keyword Args:
        configs: the :py:class:`ConfigRegistry` to register configurations in
            and look them up from; defaults to the process-wide registry

    """

    services: ClassVar[LookupService] = LookupService.ALIAS | LookupService.VIRTUAL

    def __init__(self, configs: ConfigRegistry | None = None) -> None:
        self.configs: ConfigRegistry = configs if configs is not None else registry
        self.identifier: str | None = None
        self.config_text: str | None = None

    def configure(self, config_text: str) -> None:
        config = self.configs.register_from_text(config_text)
        self.identifier = config.identifier
        self.config_text = config_text

    def open(self) -> LDAPHandle:
        """
        Raises:
            ConfigError: :py:meth:`configure` has not succeeded yet
            ConnectError: the server could not be reached
            AuthError: the server refused our credentials
            ProtocolError: the bind failed for another reason

        Returns:
            An open, authenticated :py:class:`LDAPHandle`.
        """
        if self.identifier is None or self.config_text is None:
            msg = "LDAPBackend.open() called before configure()"
            raise ConfigError(msg)
        config = self.configs.find(self.identifier)
        if config is None:
            config = self.configs.register_from_text(self.config_text)
        logger.debug("backend.open identifier=%s url=%s", config.identifier, config.url)
        return open_handle(config)

    def close(self, handle: LDAPHandle) -> None:
        handle.close()

    def lookup(
        self, handle: LDAPHandle, key: str, service: LookupService
    ) -> ExpansionList | None:
        """
        Resolve ``key``.

        For :py:attr:`LookupService.VIRTUAL`, a key without an ``@`` names a
        domain; we only answer that the domain exists and do not query the
        directory at all.

        Args:
            handle: a handle from :py:meth:`open`
            key: the alias name or recipient address
            service: what kind of lookup this is

        Raises:
            LookupFailed: the search was aborted

        Returns:
            The expansion list, or ``None`` for domain keys and services we do
            not support.

        """
        if service == LookupService.VIRTUAL and "@" not in key:
            return None
        if service not in (LookupService.ALIAS, LookupService.VIRTUAL):
            return None
        return PagedSearch(handle).run(key)


class BackendRegistry:
    """
    Map backend kind names (as written in the host configuration) to
    :py:class:`LookupBackend` classes.
    """

    def __init__(self) -> None:
        self.__backends: dict[str, type[LookupBackend]] = {}

    @property
    def kinds(self) -> list[str]:
        return list(self.__backends)

    def register(self, kind: str, backend: type[LookupBackend]) -> None:
        """
        Register ``backend`` as the implementation of ``kind``.

        Args:
            kind: the backend kind, e.g. ``ldap``
            backend: the :py:class:`LookupBackend` subclass

        Raises:
            ValueError: ``kind`` is already registered

        """
        if kind in self.__backends:
            msg = f'"{kind}" is already a registered backend'
            raise ValueError(msg)
        self.__backends[kind] = backend

    def get(self, kind: str) -> type[LookupBackend]:
        """
        Raises:
            ValueError: there is no backend registered as ``kind``
        """
        try:
            return self.__backends[kind]
        except KeyError as exc:
            msg = f'"{kind}" is not a known backend'
            raise ValueError(msg) from exc


backends = BackendRegistry()

backends.register("ldap", LDAPBackend)
