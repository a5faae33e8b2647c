import logging
from typing import List, Optional, Union

from ..config import QueryConfig
from ..exceptions import PreconditionError
from ..models.entry import Group
from ..models.membership import MembershipSet, RecursionGuard
from ..models.query import QueryParameters
from .searcher import Searcher
from .utilities import (
    REQUIRED_GROUP_ATTRIBUTES,
    get_member_of_filter,
    is_group_result,
    join_attributes,
    project,
)

logger = logging.getLogger(__name__)


class GroupMembershipResolver:
    """
    Resolves every group an entry belongs to, directly or through nesting.

    The directory is walked one level at a time with ``(member=<dn>)``
    searches. A RecursionGuard seeded with the starting identity makes the
    walk terminate on cyclic membership (A in B, B in A).
    """

    def __init__(self, adapter, config: QueryConfig):
        self.adapter = adapter
        self.config = config

    def resolve_groups_for(
        self, dn: str, query: Union[None, str, QueryParameters] = None
    ) -> MembershipSet:
        """
        Get the transitive group membership of ``dn``.

        Args:
            dn: Distinguished name of the user or group to resolve
            query: Optional query; its attributes, base and entry parser are
                   used for every level of the walk (its filter is not)

        Returns:
            MembershipSet: The groups, deduplicated by identity. The starting
            identity is never part of the result.

        Raises:
            PreconditionError: If ``dn`` is empty. No search is issued.
            ProtocolError: If any level of the walk fails.
        """
        if not dn:
            raise PreconditionError("A distinguished name is required to resolve group membership")

        query = QueryParameters.coerce(query)
        guard = RecursionGuard([dn])
        groups = MembershipSet()

        logger.debug(f"Resolving group membership for {dn}")
        self._walk(dn, query, guard, groups)
        logger.info(f"Found {len(groups)} groups for {dn}")
        return groups

    def _attributes(self, query: QueryParameters) -> List[str]:
        if query.attributes is None:
            return list(self.config.attributes.group)
        return query.attributes

    def _walk(
        self,
        dn: str,
        query: QueryParameters,
        guard: RecursionGuard,
        groups: MembershipSet,
    ) -> None:
        attributes = self._attributes(query)
        level_query = query.with_options(
            filter=get_member_of_filter(dn),
            scope="sub",
            attributes=join_attributes(attributes, REQUIRED_GROUP_ATTRIBUTES),
            include_membership=(),
            size_limit=0,
        )
        entries = Searcher(self.adapter, self.config, level_query).search()

        for entry in entries:
            if not is_group_result(entry):
                continue
            if not guard.enter(entry.dn):
                logger.debug(f"Already visited {entry.dn}, skipping")
                continue

            groups.add(project(entry, attributes, model=Group))
            self._walk(entry.dn, query, guard, groups)


def resolve_groups_for(
    adapter,
    config: QueryConfig,
    dn: str,
    query: Optional[QueryParameters] = None,
) -> MembershipSet:
    return GroupMembershipResolver(adapter, config).resolve_groups_for(dn, query)
