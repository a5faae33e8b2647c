import unittest

from ldap3.core.exceptions import LDAPException

from adquery.components.searcher import SHOW_DELETED_OID, Searcher, search
from adquery.config import QueryConfig, ReferralSettings
from adquery.exceptions import ProtocolError
from adquery.models.query import QueryParameters

from fake_directory import BASE_DN, FakeDirectory, NullEntryParser, group_dn, user_dn

CHILD_BASE = "DC=child,DC=example,DC=com"
CHILD_REFERRAL = f"ldap://child.example.com/{CHILD_BASE}"
FOREST_ZONES_REFERRAL = "ldap://ForestDnsZones.example.com/DC=ForestDnsZones,DC=example,DC=com"


def _has_range_request(request):
    return any(";range=" in a for a in request["attributes"])


class TestSearcher(unittest.TestCase):
    """Tests for the search orchestrator against an in-memory directory."""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.directory = FakeDirectory()
        for name in ["Alice", "Bob", "Carol", "Dave", "Erin"]:
            self.directory.add_user(name)
        self.config = QueryConfig(base_dn=BASE_DN, page_size=2)

    def _search(self, query, directory=None, config=None):
        return Searcher(directory or self.directory, config or self.config, query).search()

    def assertUnboundOnce(self, directory):
        counts = [c.unbind_count for c in directory.all_connections]
        self.assertTrue(counts)
        self.assertEqual(counts, [1] * len(counts))

    # ----- Paging -----

    def test_paged_search_returns_every_page(self):
        """Test that results larger than a page are fetched transparently."""
        entries = self._search(QueryParameters(filter="(objectCategory=User)", scope="sub"))

        self.assertEqual(
            sorted(e["cn"] for e in entries), ["Alice", "Bob", "Carol", "Dave", "Erin"]
        )
        requests = self.directory.requests
        self.assertEqual(len(requests), 3)
        self.assertIsNone(requests[0]["paged_cookie"])
        self.assertEqual(requests[1]["paged_cookie"], b"2")
        self.assertTrue(all(r["paged_size"] == 2 for r in requests))
        self.assertEqual(len(self.directory.connections), 1)
        self.assertUnboundOnce(self.directory)

    def test_unpaged_search(self):
        """Test that paging can be switched off per query."""
        entries = self._search(
            QueryParameters(filter="(objectCategory=User)", scope="sub", paged=False)
        )

        self.assertEqual(len(entries), 5)
        self.assertEqual(len(self.directory.requests), 1)
        self.assertIsNone(self.directory.requests[0]["paged_size"])

    def test_default_scope_is_base(self):
        """Test that a raw search without a scope reads only the base entry."""
        entries = self._search(QueryParameters(base_dn=user_dn("Alice")))

        self.assertEqual([e.dn for e in entries], [user_dn("Alice")])
        self.assertEqual(self.directory.requests[0]["search_scope"], "BASE")

    def test_search_helper(self):
        """Test the module-level search convenience function."""
        entries = search(
            self.directory, self.config, QueryParameters(filter="(cn=Bob)", scope="sub")
        )

        self.assertEqual([e["cn"] for e in entries], ["Bob"])

    # ----- Entry shaping -----

    def test_entries_drop_protocol_fields_and_empty_attributes(self):
        """Test that entries carry dn and decoded attributes only."""
        self.directory.add_user("Frank", description=[])

        entries = self._search(QueryParameters(filter="(cn=Frank)", scope="sub"))

        self.assertEqual(len(entries), 1)
        entry = entries[0]
        self.assertEqual(entry.dn, user_dn("Frank"))
        self.assertNotIn("description", entry)
        self.assertNotIn("raw_attributes", entry)
        self.assertNotIn("type", entry)

    def test_single_values_are_unwrapped(self):
        """Test that one-value lists become scalars and longer lists stay lists."""
        self.directory.add_user("Frank", otherMailbox=["frank@other.example.com"])

        entry = self._search(QueryParameters(filter="(cn=Frank)", scope="sub"))[0]

        self.assertEqual(entry["otherMailbox"], "frank@other.example.com")
        self.assertIsInstance(entry["objectClass"], list)

    def test_dn_is_not_requested_as_an_attribute(self):
        """Test that dn is stripped from the attributes sent to the server."""
        self._search(QueryParameters(filter="(cn=Bob)", scope="sub", attributes=["dn", "mail"]))
        self._search(QueryParameters(filter="(cn=Bob)", scope="sub", attributes=["dn"]))
        self._search(QueryParameters(filter="(cn=Bob)", scope="sub", attributes=[]))

        requested = [r["attributes"] for r in self.directory.requests]
        self.assertEqual(requested, [["mail"], ["1.1"], ["*"]])

    def test_query_entry_parser_can_drop_entries(self):
        """Test that an entry parser returning None excludes the entry."""
        parser = NullEntryParser("CN=Bob")

        entries = self._search(
            QueryParameters(filter="(objectCategory=User)", scope="sub", entry_parser=parser)
        )

        self.assertEqual(len(entries), 4)
        self.assertNotIn("Bob", [e["cn"] for e in entries])
        self.assertEqual(parser.calls, 5)

    def test_query_entry_parser_overrides_configured_parser(self):
        """Test that a query-level parser takes precedence over the configured one."""
        configured = NullEntryParser("CN=Alice")
        query_level = NullEntryParser("CN=Carol")
        config = QueryConfig(base_dn=BASE_DN, page_size=10, entry_parser=configured)

        entries = self._search(
            QueryParameters(filter="(objectCategory=User)", scope="sub", entry_parser=query_level),
            config=config,
        )

        names = sorted(e["cn"] for e in entries)
        self.assertIn("Alice", names)
        self.assertNotIn("Carol", names)
        self.assertEqual(configured.calls, 0)

    def test_include_deleted_adds_show_deleted_control(self):
        """Test that deleted-object searches send the show deleted control."""
        self._search(QueryParameters(filter="(cn=Bob)", scope="sub", include_deleted=True))

        self.assertIn((SHOW_DELETED_OID, True, None), self.directory.requests[0]["controls"])

    # ----- Range retrieval -----

    def test_range_reassembly_two_windows(self):
        """Test merging member;range=0-2 and member;range=3-* into one attribute."""
        directory = FakeDirectory(range_window=3)
        members = [user_dn(f"User{i}") for i in range(5)]
        directory.add_group("Staff", members)

        entry = self._search(QueryParameters(base_dn=group_dn("Staff")), directory=directory)[0]

        self.assertEqual(entry["member"], members)
        self.assertFalse([k for k in entry if ";range=" in k])
        follow_ups = [r for r in directory.requests if _has_range_request(r)]
        self.assertEqual(len(follow_ups), 1)
        self.assertIn("member;range=3-6", follow_ups[0]["attributes"])
        self.assertEqual(
            follow_ups[0]["search_filter"], f"(distinguishedName={group_dn('Staff')})"
        )
        self.assertEqual(len(directory.connections), 1)
        self.assertUnboundOnce(directory)

    def test_range_reassembly_many_windows(self):
        """Test that every window is fetched until the server reports the last one."""
        directory = FakeDirectory(range_window=3)
        members = [user_dn(f"User{i}") for i in range(20)]
        directory.add_group("Everyone", members)

        entry = self._search(
            QueryParameters(base_dn=group_dn("Everyone"), attributes=["cn", "member"]),
            directory=directory,
        )[0]

        self.assertEqual(entry["member"], members)
        self.assertEqual(entry["cn"], "Everyone")
        self.assertEqual(len(set(entry["member"])), 20)
        follow_ups = [r for r in directory.requests if _has_range_request(r)]
        self.assertTrue(follow_ups)
        for request in follow_ups:
            self.assertEqual(len(request["attributes"]), 1)
            self.assertTrue(request["attributes"][0].startswith("member;range="))

    def test_range_failure_keeps_partial_values(self):
        """Test that a failed follow-up keeps the values merged so far."""
        directory = FakeDirectory(range_window=3)
        members = [user_dn(f"User{i}") for i in range(8)]
        directory.add_group("Staff", members)
        directory.fail(_has_range_request, 1)

        entries = self._search(QueryParameters(base_dn=group_dn("Staff")), directory=directory)

        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]["member"], members[:3])
        self.assertFalse([k for k in entries[0] if ";range=" in k])
        self.assertUnboundOnce(directory)

    def test_range_exception_keeps_partial_values(self):
        """Test that a follow-up raising a protocol exception is recovered too."""
        directory = FakeDirectory(range_window=3)
        members = [user_dn(f"User{i}") for i in range(8)]
        directory.add_group("Staff", members)
        directory.fail(_has_range_request, LDAPException("socket closed"))

        entries = self._search(QueryParameters(base_dn=group_dn("Staff")), directory=directory)

        self.assertEqual(entries[0]["member"], members[:3])

    # ----- Limits and errors -----

    def test_size_limit_returns_partial_results(self):
        """Test that reaching the size limit is not an error."""
        entries = self._search(
            QueryParameters(filter="(objectCategory=User)", scope="sub", size_limit=3)
        )

        self.assertEqual(len(entries), 3)
        self.assertUnboundOnce(self.directory)

    def test_protocol_error_result_raises(self):
        """Test that other result codes abort the search."""
        self.directory.fail(lambda r: True, 50)

        with self.assertRaises(ProtocolError) as context:
            self._search(QueryParameters(filter="(cn=Bob)", scope="sub"))

        self.assertEqual(context.exception.result_code, 50)
        self.assertUnboundOnce(self.directory)

    def test_protocol_exception_is_wrapped(self):
        """Test that ldap3 exceptions surface as ProtocolError with the cause kept."""
        self.directory.fail(lambda r: True, LDAPException("connection reset"))

        with self.assertRaises(ProtocolError) as context:
            self._search(QueryParameters(filter="(cn=Bob)", scope="sub"))

        self.assertIsInstance(context.exception.__cause__, LDAPException)
        self.assertUnboundOnce(self.directory)

    # ----- Referrals -----

    def _referral_directories(self, references):
        child = FakeDirectory(base_dn=CHILD_BASE)
        child.add(
            f"CN=Remote,{CHILD_BASE}",
            cn="Remote",
            objectCategory="CN=Person,CN=Schema,CN=Configuration,DC=example,DC=com",
        )
        primary = FakeDirectory(references=references, servers={"child.example.com": child})
        primary.add_user("Alice")
        return primary, child

    def test_referrals_are_followed_when_enabled(self):
        """Test that referral results are merged into the same result set."""
        primary, child = self._referral_directories([CHILD_REFERRAL])
        config = QueryConfig(base_dn=BASE_DN, referrals=ReferralSettings(enabled=True))

        entries = self._search(
            QueryParameters(filter="(objectCategory=User)", scope="sub"),
            directory=primary,
            config=config,
        )

        self.assertEqual(sorted(e["cn"] for e in entries), ["Alice", "Remote"])
        self.assertEqual(child.requests[0]["search_base"], CHILD_BASE)
        self.assertUnboundOnce(primary)

    def test_referrals_are_ignored_when_disabled(self):
        """Test that referrals are not chased by default."""
        primary, child = self._referral_directories([CHILD_REFERRAL])

        entries = self._search(
            QueryParameters(filter="(objectCategory=User)", scope="sub"), directory=primary
        )

        self.assertEqual([e["cn"] for e in entries], ["Alice"])
        self.assertEqual(primary.connected_urls, [None])
        self.assertEqual(child.connections, [])

    def test_excluded_referrals_are_never_followed(self):
        """Test that referrals to the DNS zone partitions are skipped."""
        primary, child = self._referral_directories([FOREST_ZONES_REFERRAL, CHILD_REFERRAL])
        config = QueryConfig(base_dn=BASE_DN, referrals=ReferralSettings(enabled=True))

        self._search(
            QueryParameters(filter="(objectCategory=User)", scope="sub"),
            directory=primary,
            config=config,
        )

        self.assertEqual(primary.connected_urls, [None, CHILD_REFERRAL])

    def test_failed_referral_is_swallowed(self):
        """Test that an unreachable referral does not fail the search."""
        primary, _ = self._referral_directories(["ldap://gone.example.com/DC=gone,DC=example,DC=com"])
        config = QueryConfig(base_dn=BASE_DN, referrals=ReferralSettings(enabled=True))

        entries = self._search(
            QueryParameters(filter="(objectCategory=User)", scope="sub"),
            directory=primary,
            config=config,
        )

        self.assertEqual([e["cn"] for e in entries], ["Alice"])
        self.assertUnboundOnce(primary)

    def test_malformed_referral_is_swallowed(self):
        """Test that a referral URL that cannot be parsed does not fail the search."""
        primary, _ = self._referral_directories(["ldap://dc2.example.com:99999/DC=x,DC=com"])
        config = QueryConfig(base_dn=BASE_DN, referrals=ReferralSettings(enabled=True))

        entries = self._search(
            QueryParameters(filter="(objectCategory=User)", scope="sub"),
            directory=primary,
            config=config,
        )

        self.assertEqual([e["cn"] for e in entries], ["Alice"])
        self.assertUnboundOnce(primary)

    def test_referrals_are_discarded_when_primary_search_fails(self):
        """Test that a failing later page aborts the search and drops referral results."""
        child = FakeDirectory(base_dn=CHILD_BASE)
        child.add(
            f"CN=Remote,{CHILD_BASE}",
            cn="Remote",
            objectCategory="CN=Person,CN=Schema,CN=Configuration,DC=example,DC=com",
        )
        primary = FakeDirectory(
            references=[CHILD_REFERRAL],
            servers={"child.example.com": child},
            references_first=True,
        )
        for name in ["Alice", "Bob", "Carol"]:
            primary.add_user(name)
        primary.fail(lambda r: r["paged_cookie"], 50)
        config = QueryConfig(
            base_dn=BASE_DN, page_size=2, referrals=ReferralSettings(enabled=True)
        )
        searcher = Searcher(
            primary, config, QueryParameters(filter="(objectCategory=User)", scope="sub")
        )

        with self.assertRaises(ProtocolError) as context:
            searcher.search()

        self.assertEqual(context.exception.result_code, 50)
        self.assertEqual(len(primary.requests), 2)
        self.assertEqual([c.unbind_count for c in primary.connections], [1])
        self.assertEqual(
            sorted(e["cn"] for e in searcher.results.values()), ["Alice", "Bob"]
        )
        self.assertIsNone(searcher._executor)

    def test_searcher_reports_done(self):
        """Test the completion state after a search."""
        searcher = Searcher(self.directory, self.config, QueryParameters(filter="(cn=Bob)", scope="sub"))
        self.assertFalse(searcher.is_done)

        searcher.search()

        self.assertTrue(searcher.is_done)


if __name__ == '__main__':
    unittest.main()
