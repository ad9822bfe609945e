import unittest

from ldap_table import ExpandNode, ExpandType, ExpansionList, ParseError, parse_expansion


class TestParseExpansion(unittest.TestCase):
    def test_address(self):
        self.assertEqual(
            parse_expansion("joe@Example.COM"),
            ExpandNode(ExpandType.ADDRESS, "joe@example.com"),
        )

    def test_address_literal(self):
        self.assertEqual(
            parse_expansion("joe@[192.0.2.1]"),
            ExpandNode(ExpandType.ADDRESS, "joe@[192.0.2.1]"),
        )

    def test_username(self):
        self.assertEqual(parse_expansion("root"), ExpandNode(ExpandType.USERNAME, "root"))
        self.assertEqual(
            parse_expansion("first.last+tag"),
            ExpandNode(ExpandType.USERNAME, "first.last+tag"),
        )

    def test_filename(self):
        self.assertEqual(
            parse_expansion("/var/mail/archive"),
            ExpandNode(ExpandType.FILENAME, "/var/mail/archive"),
        )

    def test_filter(self):
        self.assertEqual(
            parse_expansion("| /usr/bin/procmail -d joe"),
            ExpandNode(ExpandType.FILTER, "/usr/bin/procmail -d joe"),
        )

    def test_quoted_filter(self):
        self.assertEqual(
            parse_expansion('"|/usr/bin/vacation joe"'),
            ExpandNode(ExpandType.FILTER, "/usr/bin/vacation joe"),
        )

    def test_include(self):
        self.assertEqual(
            parse_expansion(":include:/etc/mail/staff"),
            ExpandNode(ExpandType.INCLUDE, "/etc/mail/staff"),
        )

    def test_surrounding_whitespace_is_ignored(self):
        self.assertEqual(parse_expansion("  root \n"), ExpandNode(ExpandType.USERNAME, "root"))

    def test_invalid_values_raise_ParseError(self):
        invalid = (
            "",
            "two words",
            "|",
            '"|"',
            '"root"',
            "joe@",
            "@example.com",
            "joe@exa mple.com",
            ":include:relative",
        )
        for value in invalid:
            with self.subTest(value=value), self.assertRaises(ParseError):
                parse_expansion(value)


class TestExpansionList(unittest.TestCase):
    def test_append_keeps_order_and_counts(self):
        nodes = ExpansionList()
        nodes.append(ExpandNode(ExpandType.USERNAME, "b"))
        nodes.append(ExpandNode(ExpandType.USERNAME, "a"))
        nodes.append(ExpandNode(ExpandType.USERNAME, "b"))
        self.assertEqual([n.value for n in nodes], ["b", "a", "b"])
        self.assertEqual(nodes.count, 3)
        self.assertEqual(len(nodes), 3)

    def test_clear(self):
        nodes = ExpansionList()
        nodes.append(ExpandNode(ExpandType.USERNAME, "a"))
        nodes.clear()
        self.assertEqual(nodes.count, 0)
        self.assertEqual(list(nodes), [])
