import socket
import unittest
from pathlib import Path

import ldap
from ldap.controls import SimplePagedResultsControl

from ldap_table.faker import DirectoryStore, FakeLDAP, FakeLDAPObject, LDAPServerFactory


class RegisterObjectsMixin:
    def setUp(self) -> None:
        self.filename: Path = Path(__file__).parent / Path("aliases.json")
        self.store: DirectoryStore = DirectoryStore()
        self.store.load_objects(str(self.filename))
        self.ldap: FakeLDAPObject = FakeLDAPObject("ldap://server", self.store)


class TestDirectoryStore(RegisterObjectsMixin, unittest.TestCase):
    def test_load_objects(self):
        self.assertEqual(len(self.store), 13)
        self.assertEqual(
            self.store.raw_objects["cn=postmaster,ou=aliases,dc=example,dc=com"]["uid"],
            [b"postmaster"],
        )

    def test_duplicate_dn_raises_ALREADY_EXISTS(self):
        with self.assertRaises(ldap.ALREADY_EXISTS):
            self.store.register_object(("CN=Postmaster,ou=aliases,dc=example,dc=com", {}))

    def test_bad_dn_raises_INVALID_DN_SYNTAX(self):
        with self.assertRaises(ldap.INVALID_DN_SYNTAX):
            self.store.register_object(("not a dn", {}))

    def test_str_values_raise_TypeError(self):
        with self.assertRaises(TypeError):
            self.store.register_object(("cn=foo,dc=example,dc=com", {"cn": ["foo"]}))

    def test_search_subtree_respects_base_and_filter(self):
        results = self.store.search_subtree(
            "ou=aliases,dc=example,dc=com", "(uid=staff)", ["mailForwardingAddress"]
        )
        self.assertEqual(
            [dn for dn, _ in results],
            [f"cn=staff-{i},ou=aliases,dc=example,dc=com" for i in range(1, 6)],
        )
        self.assertEqual(results[0][1], {"mailForwardingAddress": [b"alice@example.com"]})

    def test_bad_filter_raises_FILTER_ERROR(self):
        with self.assertRaises(ldap.FILTER_ERROR):
            self.store.search_subtree("dc=example,dc=com", "(uid=staff")

    def test_check_password(self):
        self.assertTrue(self.store.check_password("cn=mailer,dc=example,dc=com", "the password"))
        self.assertFalse(self.store.check_password("cn=mailer,dc=example,dc=com", "nope"))
        self.assertFalse(self.store.check_password("cn=nobody,dc=example,dc=com", "nope"))


class TestFakeLDAPObject_search(RegisterObjectsMixin, unittest.TestCase):
    def search(self, size: int, cookie: bytes = b"") -> int:
        return self.ldap.search_ext(
            "ou=aliases,dc=example,dc=com",
            ldap.SCOPE_SUBTREE,
            "(uid=staff)",
            serverctrls=[SimplePagedResultsControl(True, size=size, cookie=cookie)],
        )

    def test_one_message_per_entry_then_result(self):
        msgid = self.search(10)
        types = [self.ldap.result3(msgid, all=0)[0] for _ in range(6)]
        self.assertEqual(types, [ldap.RES_SEARCH_ENTRY] * 5 + [ldap.RES_SEARCH_RESULT])

    def test_paged_results_cookie(self):
        msgid = self.search(2)
        self.ldap.result3(msgid, all=0)
        self.ldap.result3(msgid, all=0)
        rtype, _, rmsgid, controls = self.ldap.result3(msgid, all=0)
        self.assertEqual((rtype, rmsgid), (ldap.RES_SEARCH_RESULT, msgid))
        self.assertEqual(controls[0].cookie, b"2")

    def test_msgids_increase(self):
        first = self.search(2)
        second = self.search(2)
        self.assertEqual(second, first + 1)

    def test_inject_puts_message_first(self):
        self.ldap.inject(1, msgid=999)
        self.search(2)
        self.assertEqual(self.ldap.result3(all=0)[2], 999)

    def test_abandon_drops_queued_messages(self):
        msgid = self.search(2)
        self.ldap.abandon_ext(msgid)
        self.assertEqual(len(self.ldap.responses), 0)

    def test_result3_with_msgid_skips_other_messages(self):
        self.ldap.inject(1, msgid=999)
        msgid = self.search(10)
        rtype, _, rmsgid, _ = self.ldap.result3(msgid, all=0)
        self.assertEqual((rtype, rmsgid), (ldap.RES_SEARCH_ENTRY, msgid))
        self.assertEqual(self.ldap.result3(all=0)[2], 999)

    def test_result3_with_unknown_msgid_raises_TIMEOUT(self):
        self.search(2)
        with self.assertRaises(ldap.TIMEOUT):
            self.ldap.result3(12345, all=0)

    def test_empty_queue_raises_TIMEOUT(self):
        with self.assertRaises(ldap.TIMEOUT):
            self.ldap.result3(all=0)

    def test_calls_are_recorded(self):
        self.search(2)
        self.assertEqual(self.ldap.calls.names, ["search_ext"])
        call = self.ldap.calls.filter_calls("search_ext")[0]
        self.assertEqual(call.args["filterstr"], "(uid=staff)")


class TestLDAPServerFactory(unittest.TestCase):
    def test_default_store_answers_every_uri(self):
        factory = LDAPServerFactory()
        store = DirectoryStore()
        factory.register(store)
        self.assertIs(factory.get("ldap://anything"), store)

    def test_uri_store_after_default_raises_ValueError(self):
        factory = LDAPServerFactory()
        factory.register(DirectoryStore())
        with self.assertRaises(ValueError):
            factory.register(DirectoryStore(), uri="ldap://server1")

    def test_unknown_uri_raises_SERVER_DOWN(self):
        factory = LDAPServerFactory()
        factory.register(DirectoryStore(), uri="ldap://server1")
        with self.assertRaises(ldap.SERVER_DOWN):
            factory.get("ldap://server2")

    def test_overriding_uri_warns(self):
        factory = LDAPServerFactory()
        factory.register(DirectoryStore(), uri="ldap://server1")
        with self.assertWarns(RuntimeWarning):
            factory.register(DirectoryStore(), uri="ldap://server1")

    def test_initialize_records_connection(self):
        factory = LDAPServerFactory()
        factory.register(DirectoryStore())
        fake = FakeLDAP(factory)
        conn = fake.initialize("ldap://server1")
        self.assertEqual(fake.connections, [conn])
        self.assertEqual(fake.calls.names, ["initialize"])


class TestFakeLDAPObject_unbind(unittest.TestCase):
    def setUp(self):
        self.left, self.right = socket.socketpair()

    def tearDown(self):
        self.right.close()

    def test_unbind_closes_descriptor(self):
        conn = FakeLDAPObject("ldap://server", fileno=self.left)
        self.assertEqual(conn.fd, self.left.fileno())
        self.left.detach()
        conn.unbind_ext_s()
        self.assertTrue(conn.unbound)
        self.assertTrue(conn.fd_closed)
        # the peer sees end of file once our end is gone
        self.assertEqual(self.right.recv(1), b"")

    def test_descriptor_closed_elsewhere_raises_OSError(self):
        conn = FakeLDAPObject("ldap://server", fileno=self.left)
        self.left.close()
        with self.assertRaises(OSError):
            conn.unbind_ext_s()

    def test_without_descriptor_unbind_only_unbinds(self):
        conn = FakeLDAPObject("ldap://server")
        conn.unbind_ext_s()
        self.assertTrue(conn.unbound)
        self.assertFalse(conn.fd_closed)
