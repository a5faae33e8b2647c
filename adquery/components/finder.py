import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Union

from ..config import QueryConfig
from ..models.entry import DirectoryEntry, FindResult, Group, User
from ..models.query import QueryParameters
from .group_membership import GroupMembershipResolver
from .searcher import Searcher
from .utilities import (
    get_compound_filter,
    get_required_attributes_for_group,
    get_required_attributes_for_user,
    is_group_result,
    is_user_result,
    join_attributes,
    pick_attributes,
    project,
    truncate_log_output,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_FILTER = (
    "(|(objectClass=user)(objectClass=person))"
    "(!(objectClass=computer))(!(objectClass=group))"
)
DEFAULT_GROUP_FILTER = (
    "(objectClass=group)(!(objectClass=computer))"
    "(!(objectClass=user))(!(objectClass=person))"
)

MAX_ENRICHMENT_WORKERS = 8


class Finder:
    """
    Finds entries and sorts them into users, groups and everything else.

    Users and groups can optionally be enriched with the groups they belong
    to (see GroupMembershipResolver); enrichment runs concurrently.
    """

    def __init__(
        self,
        adapter,
        config: QueryConfig,
        membership_resolver: Optional[GroupMembershipResolver] = None,
        max_workers: int = MAX_ENRICHMENT_WORKERS,
    ):
        self.adapter = adapter
        self.config = config
        self.membership_resolver = membership_resolver or GroupMembershipResolver(
            adapter, config
        )
        self.max_workers = max_workers

    def find(self, query: Union[None, str, QueryParameters] = None) -> FindResult:
        """
        Run one search and classify every entry it returns.

        Args:
            query: QueryParameters, or a bare LDAP filter string. Scope
                   defaults to sub-tree.

        Returns:
            FindResult: Entries bucketed into users, groups and other, each
            projected to the query's attributes (or the defaults for its kind)
        """
        query = self._with_subtree_scope(QueryParameters.coerce(query))
        attributes = join_attributes(
            query.attributes,
            self.config.attributes.group,
            self.config.attributes.user,
            get_required_attributes_for_group(query),
            get_required_attributes_for_user(query),
            ["objectCategory"],
        )
        entries = self._search(query.with_options(attributes=attributes))

        result = FindResult()
        to_enrich: List[DirectoryEntry] = []
        for entry in entries:
            if is_group_result(entry):
                group = project(entry, self._attributes_for(query, "group"), model=Group)
                result.groups.append(group)
                if query.includes_membership_for("group"):
                    to_enrich.append(group)
            elif is_user_result(entry):
                user = project(entry, self._attributes_for(query, "user"), model=User)
                result.users.append(user)
                if query.includes_membership_for("user"):
                    to_enrich.append(user)
            else:
                result.other.append(
                    DirectoryEntry(entry.dn, pick_attributes(entry, query.attributes))
                )

        self._enrich(to_enrich, query)
        logger.info(
            f"{len(result.users)} user(s), {len(result.groups)} group(s) and "
            f"{len(result.other)} other entries found for "
            f"'{truncate_log_output(query.filter)}'"
        )
        return result

    def find_users(
        self,
        query: Union[None, str, QueryParameters] = None,
        include_membership: bool = False,
    ) -> List[User]:
        """
        Find user accounts.

        A filter string is AND-ed onto the default user filter, which
        excludes computers and groups. A QueryParameters is used as given.

        Args:
            query: Filter string, QueryParameters, or None for every user
            include_membership: Enrich each user with its groups

        Returns:
            List[User]: Matching users
        """
        if isinstance(query, QueryParameters):
            user_query = query
        elif query:
            user_query = QueryParameters(
                filter=f"(&{DEFAULT_USER_FILTER}{get_compound_filter(query)})"
            )
        else:
            user_query = QueryParameters(filter=f"(&{DEFAULT_USER_FILTER})")
        user_query = self._with_subtree_scope(user_query)

        user_attributes = self._attributes_for(user_query, "user")
        entries = self._search(
            user_query.with_options(
                attributes=join_attributes(
                    user_attributes,
                    get_required_attributes_for_user(user_query),
                    ["objectCategory"],
                )
            )
        )

        users = [
            project(entry, user_attributes, model=User)
            for entry in entries
            if is_user_result(entry)
        ]
        if include_membership or user_query.includes_membership_for("user"):
            self._enrich(users, user_query)

        logger.info(
            f"{len(users)} user(s) found for '{truncate_log_output(user_query.filter)}'"
        )
        return users

    def find_groups(self, query: Union[None, str, QueryParameters] = None) -> List[Group]:
        """
        Find groups.

        A filter that is already a compound ``(&...)`` filter is used as is;
        any other filter is AND-ed onto the default group filter.

        Args:
            query: Filter string, QueryParameters, or None for every group

        Returns:
            List[Group]: Matching groups
        """
        group_query = self._with_subtree_scope(QueryParameters.coerce(query))
        if query is None:
            ldap_filter = f"(&{DEFAULT_GROUP_FILTER})"
        elif group_query.filter.startswith("(&"):
            ldap_filter = group_query.filter
        else:
            ldap_filter = (
                f"(&{DEFAULT_GROUP_FILTER}{get_compound_filter(group_query.filter)})"
            )

        group_attributes = self._attributes_for(group_query, "group")
        entries = self._search(
            group_query.with_options(
                filter=ldap_filter,
                attributes=join_attributes(
                    group_attributes, get_required_attributes_for_group(group_query)
                ),
            )
        )

        groups = [
            project(entry, group_attributes, model=Group)
            for entry in entries
            if is_group_result(entry)
        ]
        if group_query.includes_membership_for("group"):
            self._enrich(groups, group_query)

        logger.info(f"{len(groups)} group(s) found for '{truncate_log_output(ldap_filter)}'")
        return groups

    def _attributes_for(self, query: QueryParameters, kind: str) -> List[str]:
        if query.attributes is not None:
            return query.attributes
        return getattr(self.config.attributes, kind)

    @staticmethod
    def _with_subtree_scope(query: QueryParameters) -> QueryParameters:
        if query.scope is None:
            return query.with_options(scope="sub")
        return query

    def _search(self, query: QueryParameters) -> List[DirectoryEntry]:
        return Searcher(self.adapter, self.config, query).search()

    def _enrich(self, entries: Sequence[DirectoryEntry], query: QueryParameters) -> None:
        """Attach the resolved groups of each entry to its ``groups`` field."""
        if not entries:
            return

        membership_query = QueryParameters(
            base_dn=query.base_dn, entry_parser=query.entry_parser
        )
        logger.debug(f"Resolving group membership for {len(entries)} entries")

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures: Dict = {
                executor.submit(
                    self.membership_resolver.resolve_groups_for,
                    entry.dn,
                    membership_query,
                ): entry
                for entry in entries
            }
            try:
                for future, entry in futures.items():
                    entry.groups = future.result().to_list()
            except Exception:
                executor.shutdown(wait=False, cancel_futures=True)
                raise
