from __future__ import annotations

import socket
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, cast
from unittest.mock import patch

from .faker import DirectoryStore, FakeLDAP, FakeLDAPObject, LDAPServerFactory

if TYPE_CHECKING:
    from .types import LDAPFixtureList


class LDAPTableFakerMixin:
    """
    A mixin for use with :py:class:`unittest.TestCase`.  It patches
    :py:func:`ldap.initialize` in each module named in :py:attr:`ldap_modules`
    with :py:meth:`FakeLDAP.initialize`, and listens on a loopback TCP port
    so that the stream connection made before ``ldap.initialize`` is a real
    one.  :py:attr:`ldap_url` points at that port.

    :py:attr:`ldap_fixtures` names a JSON file of LDAP records to load into the
    default :py:class:`DirectoryStore`, or a list of ``(filename, uri)``
    tuples to give specific URIs their own store::

        class TestAliases(LDAPTableFakerMixin, unittest.TestCase):

            ldap_modules = ['ldap_table.connection']
            ldap_fixtures = 'aliases.json'

            def test_lookup(self):
                backend = LDAPBackend(ConfigRegistry())
                backend.configure(self.config_text())
                ...

    """

    #: The python paths of the modules that ``import ldap``
    ldap_modules: ClassVar[list[str]] = ["ldap_table.connection"]
    #: The filenames of fixtures to load into our fake directory
    ldap_fixtures: LDAPFixtureList | None = None

    #: The base DN :py:meth:`config_text` uses
    ldap_basedn: ClassVar[str] = "ou=aliases,dc=example,dc=com"
    #: The filter template :py:meth:`config_text` uses
    ldap_filter: ClassVar[str] = "(&(objectClass=mailAlias)(uid=%k))"
    #: The attribute :py:meth:`config_text` uses
    ldap_attribute: ClassVar[str] = "mailForwardingAddress"

    server_factory: ClassVar[LDAPServerFactory]

    def __init__(self, *args, **kwargs) -> None:
        #: The :py:class:`FakeLDAP` created by :py:meth:`setUp`
        self.fake_ldap: FakeLDAP
        #: The loopback socket standing in for the directory server
        self.listener: socket.socket
        #: An ``ldap://`` URL for :py:attr:`listener`
        self.ldap_url: str
        self.patches: list[Any]
        super().__init__(*args, **kwargs)

    @classmethod
    def resolve_file(cls, filename: str) -> str:
        """
        Resolve a relative fixture path against the directory of the test
        module.

        Raises:
            FileNotFoundError: the fixture file does not exist

        """
        full_path = Path(filename)
        if not full_path.is_absolute():
            dirname = Path(cast("str", sys.modules[cls.__module__].__file__)).parent
            full_path = dirname / filename
        if not full_path.exists():
            msg = f"{full_path} does not exist"
            raise FileNotFoundError(msg)
        return str(full_path)

    @classmethod
    def load_servers(cls, server_factory: LDAPServerFactory) -> None:
        if isinstance(cls.ldap_fixtures, list):
            for filename, uri in cls.ldap_fixtures:
                server_factory.load_from_file(cls.resolve_file(filename), uri=uri)
        elif cls.ldap_fixtures:
            server_factory.load_from_file(cls.resolve_file(cls.ldap_fixtures))
        else:
            server_factory.register(DirectoryStore())

    @classmethod
    def setUpClass(cls):
        cls.server_factory = LDAPServerFactory()
        cls.load_servers(cls.server_factory)

    @classmethod
    def tearDownClass(cls):
        del cls.server_factory

    def setUp(self) -> None:
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.ldap_url = f"ldap://127.0.0.1:{self.listener.getsockname()[1]}"
        self.fake_ldap = FakeLDAP(self.server_factory)
        self.patches = []
        for mod in self.ldap_modules:
            init_patch = patch(f"{mod}.ldap.initialize", self.fake_ldap.initialize)
            init_patch.start()
            self.patches.append(init_patch)

    def tearDown(self):
        for p in self.patches:
            p.stop()
        self.listener.close()

    # Helpers

    def config_text(self, **overrides: str | None) -> str:
        """
        Build configuration text pointing at :py:attr:`ldap_url`.  Pass a
        key with value ``None`` to leave it out.
        """
        pairs: dict[str, str | None] = {
            "url": self.ldap_url,
            "basedn": self.ldap_basedn,
            "filter": self.ldap_filter,
            "attribute": self.ldap_attribute,
        }
        pairs.update(overrides)
        return "\n".join(f"{key} {value}" for key, value in pairs.items() if value is not None)

    def last_connection(self) -> FakeLDAPObject | None:
        if self.fake_ldap.connections:
            return self.fake_ldap.connections[-1]
        return None

    # Asserts

    def assertSearchCount(self, conn: FakeLDAPObject, count: int) -> None:  # noqa: N802
        """
        Assert that exactly ``count`` search requests were sent on ``conn``.
        """
        self.assertEqual(len(conn.calls.filter_calls("search_ext")), count)  # type: ignore[attr-defined]

    def assertConnectionClosed(self, conn: FakeLDAPObject) -> None:  # noqa: N802
        """
        Assert that ``conn`` was unbound and closed the descriptor it was
        handed.
        """
        self.assertTrue(conn.unbound)  # type: ignore[attr-defined]
        self.assertTrue(conn.fd_closed)  # type: ignore[attr-defined]
