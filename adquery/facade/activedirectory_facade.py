"""
Active Directory facade for the directory query engine.

This facade wires one LDAPAdapter and one QueryConfig into the search,
finder and membership components and exposes the lookups callers need
most often (find a user, find a group's users, check a membership, ...).
"""

import logging
import re
from typing import Any, Dict, List, Optional, Union

from ..adapters.ldap_adapter import LDAPAdapter
from ..components.finder import Finder
from ..components.group_membership import GroupMembershipResolver
from ..components.group_users import GroupUsersResolver
from ..components.searcher import Searcher
from ..components.utilities import (
    get_group_query_filter,
    get_user_query_filter,
    is_distinguished_name,
)
from ..config import QueryConfig
from ..exceptions import PreconditionError, ProtocolError
from ..models.entry import DirectoryEntry, FindResult, Group, User
from ..models.query import QueryParameters

logger = logging.getLogger(__name__)

DEFAULT_DELETED_ATTRIBUTES = [
    "attributeID",
    "attributeSyntax",
    "dnReferenceUpdate",
    "dNSHostName",
    "flatName",
    "governsID",
    "groupType",
    "instanceType",
    "lDAPDisplayName",
    "legacyExchangeDN",
    "mS-DS-CreatorSID",
    "mSMQOwnerID",
    "nCName",
    "objectClass",
    "objectGUID",
    "objectSid",
    "oMSyntax",
    "proxiedObjectName",
    "replPropertyMetaData",
    "sAMAccountName",
    "securityIdentifier",
    "sIDHistory",
    "subClassOf",
    "systemFlags",
    "trustPartner",
    "trustDirection",
    "trustType",
    "trustAttributes",
    "userAccountControl",
    "uSNChanged",
    "uSNCreated",
    "whenCreated",
    "msDS-AdditionalSamAccountName",
    "msDS-Auxiliary-Classes",
    "msDS-Entry-Time-To-Die",
    "msDS-IntId",
    "msSFU30NisDomain",
    "nTSecurityDescriptor",
    "uid",
]

QueryArg = Union[None, str, QueryParameters]


def _squash(value: Any) -> str:
    return re.sub(r"\s", "", str(value or "")).lower()


class ActiveDirectoryFacade:
    """
    Single entry point for searching a directory and resolving membership.

    Each facade owns its own adapter and query defaults, so several
    directories can be queried side by side without sharing state.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        adapter: Optional[LDAPAdapter] = None,
        verify_connection: bool = False,
    ) -> None:
        """
        Initialize the facade.

        Args:
            config: Adapter configuration (see LDAPAdapter), optionally with
                    ``attributes``, ``referrals`` and ``entry_parser`` overrides
            adapter: Pre-built adapter (default: LDAPAdapter(config))
            verify_connection: Run a connection test before returning

        Raises:
            ConfigurationError: If required configuration keys are missing
            ProtocolError: If ``verify_connection`` is set and the test fails
        """
        self.adapter = adapter or LDAPAdapter(config)
        self.config = QueryConfig.from_dict(config)

        self.membership_resolver = GroupMembershipResolver(self.adapter, self.config)
        self.users_resolver = GroupUsersResolver(self.adapter, self.config)
        self.finder = Finder(self.adapter, self.config, self.membership_resolver)

        if verify_connection and not self.adapter.test_connection():
            raise ProtocolError("Failed to establish directory connection")

        logger.info(f"Active Directory facade initialized for {self.config.base_dn}")

    # Searching

    def search(self, query: QueryArg = None) -> List[DirectoryEntry]:
        """
        Run a raw search.

        Args:
            query: QueryParameters, or a filter string. Scope defaults to base.

        Returns:
            List[DirectoryEntry]: Entries with all requested attributes
        """
        query = QueryParameters.coerce(query)
        return Searcher(self.adapter, self.config, query).search()

    def find(self, query: QueryArg = None) -> FindResult:
        return self.finder.find(query)

    def find_users(
        self, query: QueryArg = None, include_membership: bool = False
    ) -> List[User]:
        return self.finder.find_users(query, include_membership)

    def find_groups(self, query: QueryArg = None) -> List[Group]:
        return self.finder.find_groups(query)

    def find_user(
        self,
        username: str,
        include_membership: bool = False,
        attributes: Optional[List[str]] = None,
    ) -> Optional[User]:
        """
        Find one user by sAMAccountName, userPrincipalName or distinguished name.

        Returns:
            Optional[User]: The first match, or None
        """
        if not username:
            raise PreconditionError("A username is required")

        users = self.finder.find_users(
            QueryParameters(
                filter=get_user_query_filter(username),
                scope="sub",
                attributes=attributes,
            ),
            include_membership,
        )
        if not users:
            logger.debug(f"User {username} not found")
            return None
        return users[0]

    def find_group(
        self,
        group_name: str,
        include_membership: bool = False,
        attributes: Optional[List[str]] = None,
    ) -> Optional[Group]:
        """
        Find one group by cn or distinguished name.

        Returns:
            Optional[Group]: The first match, or None
        """
        if not group_name:
            raise PreconditionError("A group name is required")

        groups = self.finder.find_groups(
            QueryParameters(
                filter=get_group_query_filter(group_name),
                scope="sub",
                attributes=attributes,
                include_membership=("group",) if include_membership else (),
            )
        )
        if not groups:
            logger.debug(f"Group {group_name} not found")
            return None
        return groups[0]

    def user_exists(self, username: str) -> bool:
        if not username:
            raise PreconditionError("A username is required")
        return bool(self._lookup(get_user_query_filter(username), ["cn"]))

    def group_exists(self, group_name: str) -> bool:
        if not group_name:
            raise PreconditionError("A group name is required")
        return bool(self._lookup(get_group_query_filter(group_name), ["cn"]))

    def _lookup(self, ldap_filter: str, attributes: List[str]) -> List[DirectoryEntry]:
        return self.search(
            QueryParameters(filter=ldap_filter, scope="sub", attributes=attributes)
        )

    # Distinguished names

    def get_distinguished_names(self, ldap_filter: str) -> List[str]:
        """Get the distinguished names of every entry matching a filter."""
        return [entry.dn for entry in self._lookup(ldap_filter, ["dn"])]

    def get_user_distinguished_name(self, username: str) -> Optional[str]:
        if not username:
            raise PreconditionError("A username is required")
        if is_distinguished_name(username):
            return username

        dns = self.get_distinguished_names(get_user_query_filter(username))
        if not dns:
            logger.warning(f"Distinguished name for user {username} not found")
            return None
        return dns[0]

    def get_group_distinguished_name(self, group_name: str) -> Optional[str]:
        if not group_name:
            raise PreconditionError("A group name is required")
        if is_distinguished_name(group_name):
            return group_name

        dns = self.get_distinguished_names(get_group_query_filter(group_name))
        if not dns:
            logger.warning(f"Distinguished name for group {group_name} not found")
            return None
        return dns[0]

    # Membership

    def get_group_membership_for_dn(self, dn: str, query: QueryArg = None) -> List[Group]:
        """
        Get every group ``dn`` belongs to, including through nested groups.

        Raises:
            PreconditionError: If ``dn`` is empty
        """
        return self.membership_resolver.resolve_groups_for(dn, query).to_list()

    def get_group_membership_for_user(
        self, username: str, query: QueryArg = None
    ) -> List[Group]:
        dn = self.get_user_distinguished_name(username)
        if dn is None:
            return []
        return self.get_group_membership_for_dn(dn, query)

    def get_group_membership_for_group(
        self, group_name: str, query: QueryArg = None
    ) -> List[Group]:
        dn = self.get_group_distinguished_name(group_name)
        if dn is None:
            return []
        return self.get_group_membership_for_dn(dn, query)

    def get_users_for_group(
        self, group_name: str, query: QueryArg = None
    ) -> Optional[List[User]]:
        """
        Get every user of a group, including users of nested groups.

        Returns:
            Optional[List[User]]: The users, or None if the group does not exist
        """
        return self.users_resolver.resolve_users_for(group_name, query)

    def is_user_member_of(self, username: str, group_name: str) -> bool:
        """
        Check whether a user belongs to a group, directly or through nesting.

        The group matches on its distinguished name, or on its cn containing
        ``group_name``; both comparisons ignore case and whitespace.
        """
        if not group_name:
            raise PreconditionError("A group name is required")

        groups = self.get_group_membership_for_user(
            username, QueryParameters(attributes=["cn", "dn"])
        )
        wanted = _squash(group_name)
        is_member = any(
            _squash(group.dn) == wanted or wanted in _squash(group.get("cn"))
            for group in groups
        )
        logger.debug(f"{username} is{'' if is_member else ' not'} a member of {group_name}")
        return is_member

    # Deleted objects

    def find_deleted_objects(self, query: QueryArg = None) -> List[DirectoryEntry]:
        """
        Search the Deleted Objects container.

        Without a base the container under the root DSE's
        defaultNamingContext is searched. Scope defaults to one level.
        """
        query = QueryParameters.coerce(query)
        changes: Dict[str, Any] = {"include_deleted": True}
        if query.scope is None:
            changes["scope"] = "one"
        if query.attributes is None:
            changes["attributes"] = list(DEFAULT_DELETED_ATTRIBUTES)
        if not query.base_dn:
            root = self.adapter.get_root_dse(["defaultNamingContext"])
            naming_context = root.get("defaultNamingContext")
            if not naming_context:
                raise ProtocolError("Root DSE did not report a defaultNamingContext")
            changes["base_dn"] = f"CN=Deleted Objects,{naming_context}"

        query = query.with_options(**changes)
        logger.debug(f"Searching deleted objects under {query.base_dn}")
        return Searcher(self.adapter, self.config, query).search()

    # Connection

    def get_root_dse(self, attributes: Optional[List[str]] = None) -> DirectoryEntry:
        return self.adapter.get_root_dse(attributes)

    def test_connection(self) -> bool:
        return self.adapter.test_connection()

    def get_connection_info(self) -> Dict[str, Any]:
        info = self.adapter.get_connection_info()
        info["referrals_enabled"] = self.config.referrals.enabled
        return info

    def close(self) -> None:
        """Connections are per search; there is nothing held open between calls."""
        logger.debug("Active Directory facade closed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
