import unittest
from unittest.mock import MagicMock

from adquery.components.finder import Finder
from adquery.config import QueryConfig
from adquery.models.entry import Group, User
from adquery.models.membership import MembershipSet
from adquery.models.query import QueryParameters

from fake_directory import BASE_DN, FakeDirectory, group_dn, user_dn

COMPUTER_CATEGORY = f"CN=Computer,CN=Schema,CN=Configuration,{BASE_DN}"


class TestFinder(unittest.TestCase):
    """Tests for finding and classifying directory entries."""

    def setUp(self):
        """Set up users, groups, a computer and an OU."""
        self.directory = FakeDirectory()
        self.directory.add_user("Alice")
        self.directory.add_user("Bob")
        self.directory.add(
            f"CN=WS01,OU=Computers,{BASE_DN}",
            cn="WS01",
            objectClass=["top", "person", "organizationalPerson", "user", "computer"],
            objectCategory=COMPUTER_CATEGORY,
        )
        self.directory.add_ou("Labs")
        self.directory.add_group("Staff", [user_dn("Alice")])
        self.directory.add_group("Admins", [user_dn("Bob"), group_dn("Staff")])

        self.config = QueryConfig(base_dn=BASE_DN)
        self.finder = Finder(self.directory, self.config)

    def _names(self, entries):
        return sorted(e.get("cn") or e.dn for e in entries)

    # ----- find -----

    def test_find_classifies_entries(self):
        """Test that entries are bucketed into users, groups and other."""
        result = self.finder.find("(objectClass=*)")

        self.assertEqual(self._names(result.users), ["Alice", "Bob"])
        self.assertEqual(self._names(result.groups), ["Admins", "Staff"])
        self.assertEqual(self._names(result.other), [f"OU=Labs,{BASE_DN}", "WS01"])
        self.assertEqual(len(result), 6)
        self.assertTrue(all(isinstance(u, User) for u in result.users))
        self.assertTrue(all(isinstance(g, Group) for g in result.groups))

    def test_find_defaults_to_subtree_scope(self):
        """Test that find searches the whole subtree unless told otherwise."""
        self.finder.find("(cn=Alice)")
        self.finder.find(QueryParameters(filter="(cn=Alice)", scope="base"))

        scopes = [r["search_scope"] for r in self.directory.requests]
        self.assertEqual(scopes, ["SUBTREE", "BASE"])

    def test_find_requests_classification_attributes(self):
        """Test that the attributes needed for classification are always requested."""
        self.finder.find(QueryParameters(filter="(cn=Alice)", attributes=["mail"]))

        requested = self.directory.requests[0]["attributes"]
        for attribute in ["mail", "objectCategory", "groupType", "cn", "userPrincipalName"]:
            self.assertIn(attribute, requested)

    def test_find_projects_to_query_attributes(self):
        """Test that results only carry the requested attributes."""
        result = self.finder.find(QueryParameters(filter="(objectClass=*)", attributes=["cn"]))

        for entry in result.users + result.groups:
            self.assertEqual(set(entry.keys()), {"dn", "cn"})

    def test_find_projects_to_kind_defaults(self):
        """Test that users and groups get their own default attributes."""
        result = self.finder.find("(objectClass=*)")

        alice = [u for u in result.users if u["cn"] == "Alice"][0]
        staff = [g for g in result.groups if g["cn"] == "Staff"][0]
        self.assertIn("userPrincipalName", alice)
        self.assertNotIn("description", alice)
        self.assertIn("description", staff)
        self.assertNotIn("userPrincipalName", staff)

    def test_find_is_idempotent(self):
        """Test that two finds against an unchanged directory agree."""
        first = self.finder.find("(objectClass=*)")
        second = self.finder.find("(objectClass=*)")

        self.assertEqual(self._names(first.users), self._names(second.users))
        self.assertEqual(self._names(first.groups), self._names(second.groups))
        self.assertEqual(self._names(first.other), self._names(second.other))

    def test_find_group_membership_for_groups_only(self):
        """Test that include_membership='group' enriches groups and not users."""
        result = self.finder.find(
            QueryParameters(filter="(objectClass=*)", include_membership="group")
        )

        staff = [g for g in result.groups if g["cn"] == "Staff"][0]
        admins = [g for g in result.groups if g["cn"] == "Admins"][0]
        self.assertEqual(self._names(staff.groups), ["Admins"])
        self.assertEqual(admins.groups, [])
        for user in result.users:
            self.assertIsNone(user.groups)

    def test_find_group_membership_for_users(self):
        """Test that include_membership='user' resolves nested membership for users."""
        result = self.finder.find(
            QueryParameters(filter="(objectClass=*)", include_membership="user")
        )

        alice = [u for u in result.users if u["cn"] == "Alice"][0]
        self.assertEqual(self._names(alice.groups), ["Admins", "Staff"])
        for group in result.groups:
            self.assertIsNone(group.groups)

    def test_find_uses_injected_membership_resolver(self):
        """Test that enrichment goes through the membership resolver."""
        resolver = MagicMock()
        resolver.resolve_groups_for.return_value = MembershipSet()
        finder = Finder(self.directory, self.config, membership_resolver=resolver)

        finder.find(QueryParameters(filter="(objectClass=*)", include_membership="all"))

        resolved = sorted(c.args[0] for c in resolver.resolve_groups_for.call_args_list)
        self.assertEqual(
            resolved,
            sorted([user_dn("Alice"), user_dn("Bob"), group_dn("Staff"), group_dn("Admins")]),
        )

    # ----- find_users -----

    def test_find_users_default_filter_excludes_computers(self):
        """Test that computers and groups are not returned as users."""
        users = self.finder.find_users()

        self.assertEqual(self._names(users), ["Alice", "Bob"])

    def test_find_users_filter_string_is_combined(self):
        """Test that a filter string is AND-ed onto the default user filter."""
        users = self.finder.find_users("(cn=A*)")

        self.assertEqual(self._names(users), ["Alice"])
        self.assertTrue(self.directory.requests[0]["search_filter"].startswith("(&(|(objectClass=user)"))

    def test_find_users_with_membership(self):
        """Test enriching users with their groups."""
        users = self.finder.find_users("(cn=Bob)", include_membership=True)

        self.assertEqual(self._names(users[0].groups), ["Admins"])

    # ----- find_groups -----

    def test_find_groups_default(self):
        """Test finding every group."""
        self.assertEqual(self._names(self.finder.find_groups()), ["Admins", "Staff"])

    def test_find_groups_filter_is_combined(self):
        """Test that a simple filter is AND-ed onto the default group filter."""
        groups = self.finder.find_groups("cn=Staff")

        self.assertEqual(self._names(groups), ["Staff"])
        self.assertTrue(self.directory.requests[0]["search_filter"].startswith("(&(objectClass=group)"))

    def test_find_groups_compound_filter_is_used_as_is(self):
        """Test that a compound filter is passed through unchanged."""
        ldap_filter = "(&(objectCategory=Group)(cn=Admins))"

        groups = self.finder.find_groups(ldap_filter)

        self.assertEqual(self._names(groups), ["Admins"])
        self.assertEqual(self.directory.requests[0]["search_filter"], ldap_filter)

    def test_find_groups_with_membership(self):
        """Test enriching groups with their parent groups."""
        groups = self.finder.find_groups(
            QueryParameters(filter="(cn=Staff)", include_membership="group")
        )

        self.assertEqual(self._names(groups[0].groups), ["Admins"])


if __name__ == '__main__':
    unittest.main()
