import unittest

import ldap

from ldap_table import (
    ExpandNode,
    ExpandType,
    LookupFailed,
    PagedSearch,
    open_handle,
    parse_config,
)
from ldap_table.unittest import LDAPTableFakerMixin

STAFF = [
    ExpandNode(ExpandType.ADDRESS, "alice@example.com"),
    ExpandNode(ExpandType.ADDRESS, "bob@example.com"),
    ExpandNode(ExpandType.ADDRESS, "carol@example.com"),
    ExpandNode(ExpandType.USERNAME, "dave"),
    ExpandNode(ExpandType.FILTER, "/usr/local/bin/archive"),
    ExpandNode(ExpandType.FILENAME, "/var/mail/staff-archive"),
]


class SearchTestMixin(LDAPTableFakerMixin):
    ldap_fixtures = "aliases.json"

    #: extra configuration lines for this test class
    config_overrides: dict = {}

    def setUp(self):
        super().setUp()
        self.handle = open_handle(parse_config(self.config_text(**self.config_overrides)))
        self.conn = self.handle.connection
        self.search = PagedSearch(self.handle)

    def tearDown(self):
        self.handle.close()
        super().tearDown()


class TestPagedSearch_single_page(SearchTestMixin, unittest.TestCase):
    def test_returns_values_in_order(self):
        result = self.search.run("postmaster")
        self.assertEqual(
            list(result),
            [
                ExpandNode(ExpandType.USERNAME, "root"),
                ExpandNode(ExpandType.ADDRESS, "Admin@example.com"),
            ],
        )
        self.assertEqual(result.count, 2)
        self.assertSearchCount(self.conn, 1)

    def test_search_request(self):
        self.search.run("postmaster")
        call = self.conn.calls.filter_calls("search_ext")[0]
        self.assertEqual(call.args["base"], "ou=aliases,dc=example,dc=com")
        self.assertEqual(call.args["scope"], ldap.SCOPE_SUBTREE)
        self.assertEqual(call.args["filterstr"], "(&(objectClass=mailAlias)(uid=postmaster))")
        self.assertEqual(call.args["attrlist"], ["mailForwardingAddress"])
        page_control = call.args["serverctrls"][0]
        self.assertEqual(page_control.cookie, b"")
        self.assertEqual(page_control.size, 100)

    def test_reads_one_message_at_a_time(self):
        self.search.run("postmaster")
        reads = self.conn.calls.filter_calls("result3")[1:]
        # one entry plus the search result
        self.assertEqual(len(reads), 2)
        for read in reads:
            self.assertEqual(read.args["msgid"], ldap.RES_ANY)
            self.assertEqual(read.args["all"], 0)

    def test_all_entries_on_one_page(self):
        self.assertEqual(list(self.search.run("staff")), STAFF)
        self.assertSearchCount(self.conn, 1)
        self.assertEqual(self.search.requests, 1)

    def test_no_match_returns_empty_list(self):
        result = self.search.run("nobody")
        self.assertEqual(result.count, 0)
        self.assertEqual(list(result), [])

    def test_attribute_name_is_case_insensitive(self):
        self.assertEqual(
            list(self.search.run("case")),
            [ExpandNode(ExpandType.ADDRESS, "case@example.com")],
        )

    def test_include(self):
        self.assertEqual(
            list(self.search.run("lists")),
            [ExpandNode(ExpandType.INCLUDE, "/etc/mail/lists.txt")],
        )

    def test_entries_outside_basedn_are_ignored(self):
        values = [node.value for node in self.search.run("staff")]
        self.assertNotIn("outside@example.com", values)

    def test_handle_is_reusable(self):
        self.search.run("postmaster")
        self.assertEqual(list(self.search.run("staff")), STAFF)
        self.assertSearchCount(self.conn, 2)


class TestPagedSearch_multiple_pages(SearchTestMixin, unittest.TestCase):
    config_overrides = {"page_size": "2"}

    def test_concatenates_pages_in_order(self):
        result = self.search.run("staff")
        self.assertEqual(list(result), STAFF)
        self.assertEqual(result.count, len(STAFF))

    def test_one_request_per_page(self):
        self.search.run("staff")
        # 5 entries, 2 per page
        self.assertSearchCount(self.conn, 3)
        self.assertEqual(self.search.requests, 3)

    def test_cookie_is_replayed(self):
        self.search.run("staff")
        cookies = [
            call.args["serverctrls"][0].cookie
            for call in self.conn.calls.filter_calls("search_ext")
        ]
        self.assertEqual(cookies, [b"", b"2", b"4"])

    def test_exact_page_boundary_stops(self):
        # postmaster is a single entry; one page of 2 carries no cookie
        self.search.run("postmaster")
        self.assertSearchCount(self.conn, 1)


class TestPagedSearch_aborts(SearchTestMixin, unittest.TestCase):
    config_overrides = {"page_size": "2"}

    def assertAborted(self, key: str) -> None:  # noqa: N802
        with self.assertLogs("ldap_table", level="WARNING"):
            with self.assertRaises(LookupFailed) as cm:
                self.search.run(key)
        self.assertIsNone(cm.exception.__cause__)
        self.assertIsNone(self.search.outstanding)

    def test_wrong_msgid_on_later_page_aborts(self):
        self.conn.inject(2, msgid=999)
        self.assertAborted("staff")
        self.assertSearchCount(self.conn, 2)

    def test_wrong_msgid_abandons_outstanding_request(self):
        self.conn.inject(2, msgid=999)
        self.assertAborted("staff")
        search_msgid = self.conn.current_msgid - 1
        abandon = self.conn.calls.filter_calls("abandon_ext")[0]
        self.assertEqual(abandon.args["msgid"], search_msgid)
        # nothing from the abandoned page is left to read
        self.assertEqual(len(self.conn.responses), 0)

    def test_unexpected_message_type_aborts(self):
        self.conn.inject(1, rtype=ldap.RES_SEARCH_REFERENCE, data=[(None, ["ldap://elsewhere/"])])
        self.assertAborted("staff")

    def test_unparseable_value_aborts(self):
        self.assertAborted("broken")

    def test_entry_without_attribute_aborts(self):
        self.assertAborted("noattr")

    def test_server_error_aborts(self):
        self.conn.inject(2, error=ldap.NO_SUCH_OBJECT({"desc": "No such object"}))
        self.assertAborted("staff")
        self.assertSearchCount(self.conn, 2)

    def test_handle_usable_after_abort(self):
        self.conn.inject(1, msgid=999)
        self.assertAborted("postmaster")
        self.assertEqual(len(self.search.run("postmaster")), 2)


class TestPagedSearch_filter_limit(SearchTestMixin, unittest.TestCase):
    config_overrides = {"max_filter_length": "32"}

    def test_key_within_limit_is_searched(self):
        self.search.run("k" * 32)
        self.assertSearchCount(self.conn, 1)

    def test_key_over_limit_fails_without_searching(self):
        with self.assertLogs("ldap_table", level="WARNING"):
            with self.assertRaises(LookupFailed):
                self.search.run("k" * 40)
        self.assertSearchCount(self.conn, 0)
        self.assertEqual(self.conn.calls.filter_calls("abandon_ext"), [])
