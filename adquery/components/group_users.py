import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple, Union

from ..config import QueryConfig
from ..exceptions import PreconditionError
from ..models.entry import DirectoryEntry, User
from ..models.membership import identity_key
from ..models.query import QueryParameters
from .searcher import Searcher
from .utilities import (
    REQUIRED_GROUP_ATTRIBUTES,
    chunk,
    get_group_query_filter,
    get_members_filter,
    join_attributes,
    project,
)

logger = logging.getLogger(__name__)

MAX_CHUNK_WORKERS = 4


class GroupUsersResolver:
    """
    Expands a group into the users it contains, following nested groups.

    The group's ``member`` list is split into chunks and each chunk is
    resolved with one disjunctive search; chunks run concurrently. Nested
    groups are expanded recursively with the path of groups being expanded
    carried along as a stack, so a group is never expanded inside itself.
    """

    def __init__(
        self,
        adapter,
        config: QueryConfig,
        chunk_size: Optional[int] = None,
        max_workers: int = MAX_CHUNK_WORKERS,
    ):
        """
        Args:
            adapter: Connection factory exposing ``create_connection(url=None)``
            config: Query defaults
            chunk_size: Members per chunk search (default: the configured page size)
            max_workers: Concurrent chunk searches per group
        """
        self.adapter = adapter
        self.config = config
        self.chunk_size = chunk_size or config.page_size
        self.max_workers = max_workers

    def resolve_users_for(
        self,
        group: str,
        query: Union[None, str, QueryParameters] = None,
        stack: Tuple[str, ...] = (),
    ) -> Optional[List[User]]:
        """
        Get every user in a group, including users of nested groups.

        Args:
            group: cn or distinguished name of the group
            query: Optional query; its attributes shape the returned users
            stack: Identities of the groups already being expanded above this one

        Returns:
            List[User]: Deduplicated users in discovery order, or None if the
            group does not exist

        Raises:
            PreconditionError: If ``group`` is empty
            ProtocolError: If a search fails
        """
        if not group:
            raise PreconditionError("A group name or distinguished name is required")

        query = QueryParameters.coerce(query)
        group_entry = self._find_group(group, query)
        if group_entry is None:
            logger.warning(f"Group {group} not found")
            return None

        members = group_entry.get_list("member")
        logger.debug(f"Group {group_entry.dn} has {len(members)} direct members")

        users: Dict[str, User] = {}
        if members:
            self._expand(group_entry.dn, members, query, stack, users)

        logger.info(f"Found {len(users)} users in {group_entry.dn}")
        return list(users.values())

    def _user_attributes(self, query: QueryParameters) -> List[str]:
        if query.attributes is None:
            return list(self.config.attributes.user)
        return query.attributes

    def _find_group(self, group: str, query: QueryParameters) -> Optional[DirectoryEntry]:
        group_query = QueryParameters(
            filter=get_group_query_filter(group),
            base_dn=query.base_dn,
            scope="sub",
            attributes=join_attributes(REQUIRED_GROUP_ATTRIBUTES, ["member"]),
            entry_parser=query.entry_parser,
        )
        entries = Searcher(self.adapter, self.config, group_query).search()
        return entries[0] if entries else None

    def _expand(
        self,
        group_dn: str,
        members: List[str],
        query: QueryParameters,
        stack: Tuple[str, ...],
        users: Dict[str, User],
    ) -> None:
        attributes = self._user_attributes(query)
        chunk_query = QueryParameters(
            base_dn=query.base_dn,
            scope="sub",
            attributes=join_attributes(attributes, ["groupType"]),
            entry_parser=query.entry_parser,
        )
        chunks = chunk(members, self.chunk_size)
        logger.debug(
            f"Expanding {group_dn} in {len(chunks)} chunk(s) of up to {self.chunk_size}"
        )

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(
                    Searcher(
                        self.adapter,
                        self.config,
                        chunk_query.with_options(filter=get_members_filter(dns)),
                    ).search
                )
                for dns in chunks
            ]
            try:
                # Submission order keeps discovery order stable
                results = [future.result() for future in futures]
            except Exception:
                executor.shutdown(wait=False, cancel_futures=True)
                raise

        path = tuple(identity_key(dn) for dn in stack) + (identity_key(group_dn),)
        for entries in results:
            for entry in entries:
                if not entry.get("groupType"):
                    users[identity_key(entry.dn)] = project(entry, attributes, model=User)
                    continue

                if identity_key(entry.dn) in path:
                    logger.debug(f"{entry.dn} is already being expanded, skipping")
                    continue

                nested = self.resolve_users_for(entry.dn, query, path)
                for user in nested or ():
                    users[identity_key(user.dn)] = user
