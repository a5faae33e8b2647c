import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Any, Dict, Iterable, List, Optional, Set
from urllib.parse import unquote, urlparse

from ldap3 import ALL_ATTRIBUTES, BASE, NO_ATTRIBUTES
from ldap3.core.exceptions import LDAPException

from ..config import QueryConfig
from ..exceptions import ProtocolError, RangeRetrievalError
from ..models.entry import DirectoryEntry
from ..models.membership import identity_key
from ..models.query import QueryParameters
from . import range_attribute
from .utilities import (
    default_entry_parser,
    escape_dn_for_filter,
    normalize_values,
    should_include_all_attributes,
    truncate_log_output,
)

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"
SHOW_DELETED_OID = "1.2.840.113556.1.4.417"

RESULT_SUCCESS = 0
RESULT_SIZE_LIMIT_EXCEEDED = 4
RESULT_REFERRAL = 10

MAX_REFERRAL_WORKERS = 4
MAX_REFERRAL_DEPTH = 8


def to_directory_entry(response: Dict[str, Any]) -> DirectoryEntry:
    """
    Build a DirectoryEntry from an ldap3 search response item.

    Only ``dn`` and the decoded attributes are kept; ``raw_dn``,
    ``raw_attributes`` and ``type`` stay behind. Empty attributes are
    dropped and single values unwrapped.
    """
    entry = DirectoryEntry(response.get("dn", ""))
    for name, value in (response.get("attributes") or {}).items():
        if isinstance(value, list):
            if not value:
                continue
            entry[name] = normalize_values(value)
        else:
            entry[name] = value
    return entry


class Searcher:
    """
    Runs one logical search against the directory.

    A logical search is the primary paged search plus every follow-up it
    needs: range retrieval queries for attributes the server delivered in
    windows, and nested searches for referrals (when enabled). The search is
    complete once the primary search has ended, range retrieval for every
    entry has finished, and every referral sub-search has returned.

    Each Searcher opens its own connection and unbinds it exactly once,
    whatever the outcome. Searchers are single use.
    """

    def __init__(
        self,
        adapter,
        config: QueryConfig,
        query: QueryParameters,
        base_dn: Optional[str] = None,
        url: Optional[str] = None,
        depth: int = 0,
    ):
        """
        Args:
            adapter: Connection factory exposing ``create_connection(url=None)``
            config: Query defaults (page size, referral settings, entry parser)
            query: The query to run
            base_dn: Base to search from (defaults to the query's, then the config's)
            url: Server URL for referral sub-searches (None for the configured server)
            depth: Referral hops taken to reach this searcher
        """
        self.adapter = adapter
        self.config = config
        self.query = query
        self.base_dn = base_dn or query.base_dn or config.base_dn
        self.url = url
        self.depth = depth

        self.results: Dict[str, DirectoryEntry] = {}
        self.search_complete = False
        self.pending_ranges = 0
        self._referrals: List[Future] = []
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def pending_referrals(self) -> int:
        return sum(1 for future in self._referrals if not future.done())

    @property
    def is_done(self) -> bool:
        return (
            self.search_complete
            and self.pending_ranges == 0
            and self.pending_referrals == 0
        )

    def search(self) -> List[DirectoryEntry]:
        """
        Execute the search and return every entry it produced.

        Returns:
            List[DirectoryEntry]: Range-complete, post-processed entries. No
            ordering is guaranteed.

        Raises:
            ProtocolError: If the connection or primary search fails. A size
                limit being reached is not an error; the entries collected so
                far are returned.
        """
        logger.debug(
            f"Querying directory ({self.base_dn}) with filter "
            f"'{truncate_log_output(self.query.filter)}' for "
            f"{self.query.attributes if self.query.attributes else '[*]'}"
        )

        connection = self.adapter.create_connection(self.url)
        try:
            self._run_primary_search(connection)
            self._join_referrals()
        except BaseException:
            self._cancel_referrals()
            raise
        finally:
            self._release(connection)

        entries = list(self.results.values())
        logger.debug(
            f"Directory search ({self.base_dn}) for "
            f"'{truncate_log_output(self.query.filter)}' returned {len(entries)} entries"
        )
        return entries

    # Primary search

    def _request_attributes(self) -> List[str]:
        attributes = self.query.attributes
        if attributes is None or should_include_all_attributes(attributes):
            return [ALL_ATTRIBUTES]
        # dn is always part of the response, it is not a real attribute
        requested = [a for a in attributes if a.lower() != "dn"]
        return requested or [NO_ATTRIBUTES]

    def _controls(self) -> List[Any]:
        controls = list(self.query.controls)
        if self.query.include_deleted and not any(
            c[0] == SHOW_DELETED_OID for c in controls
        ):
            logger.debug(f"Adding show deleted control ({SHOW_DELETED_OID}) to search")
            controls.append((SHOW_DELETED_OID, True, None))
        return controls

    def _run_primary_search(self, connection) -> None:
        search_kwargs = {
            "search_base": self.base_dn,
            "search_filter": self.query.filter,
            "search_scope": self.query.ldap3_scope,
            "attributes": self._request_attributes(),
            "size_limit": self.query.size_limit,
            "time_limit": self.query.time_limit,
        }
        controls = self._controls()
        if controls:
            search_kwargs["controls"] = controls

        cookie = None
        page_num = 0
        while True:
            page_num += 1
            if self.query.paged:
                search_kwargs["paged_size"] = self.config.page_size
                search_kwargs["paged_cookie"] = cookie

            try:
                connection.search(**search_kwargs)
            except LDAPException as e:
                logger.error(
                    f"An error occurred performing the search on {self.base_dn}: {e}"
                )
                raise ProtocolError(f"Search failed: {e}") from e

            # Follow-up queries reuse the connection, so take the page first
            responses = list(connection.response or [])
            result = dict(connection.result or {})
            logger.debug(f"Page {page_num}: {len(responses)} responses")

            for response in responses:
                response_type = response.get("type")
                if response_type == "searchResEntry":
                    self._on_entry(connection, response)
                elif response_type == "searchResRef":
                    self._on_referral(response.get("uri") or [])

            result_code = result.get("result", RESULT_SUCCESS)
            if result_code == RESULT_SIZE_LIMIT_EXCEEDED:
                logger.warning(
                    f"Size limit reached for '{truncate_log_output(self.query.filter)}', "
                    f"returning {len(self.results)} entries collected so far"
                )
                break
            if result_code == RESULT_REFERRAL:
                self._on_referral(result.get("referrals") or [])
                break
            if result_code != RESULT_SUCCESS:
                description = result.get("description", "unknown")
                logger.error(
                    f"[{result_code}] Search on {self.base_dn} failed: {description}"
                )
                raise ProtocolError(
                    f"Search failed with code {result_code} ({description})",
                    result_code=result_code,
                    description=description,
                )

            cookie = self._next_cookie(result)
            if not self.query.paged or not cookie:
                break

        self.search_complete = True

    @staticmethod
    def _next_cookie(result: Dict[str, Any]) -> Optional[bytes]:
        controls = result.get("controls") or {}
        paged = controls.get(PAGED_RESULTS_OID)
        if not paged:
            return None
        return paged.get("value", {}).get("cookie") or None

    # Entries and range retrieval

    def _on_entry(self, connection, response: Dict[str, Any]) -> None:
        entry = to_directory_entry(response)
        if range_attribute.has_range_attributes(entry):
            self.pending_ranges += 1
            try:
                self._retrieve_ranges(connection, entry)
            finally:
                self.pending_ranges -= 1

        parsed = self._parse_entry(entry, response.get("raw_attributes") or {})
        if parsed is None:
            logger.debug(f"Entry parser excluded {entry.dn}")
            return
        self.results[identity_key(parsed.dn)] = parsed

    def _parse_entry(
        self, entry: DirectoryEntry, raw: Dict[str, Any]
    ) -> Optional[DirectoryEntry]:
        parser = self.query.entry_parser or self.config.entry_parser or default_entry_parser
        parsed = parser(entry, raw)
        if parsed is None or isinstance(parsed, DirectoryEntry):
            return parsed
        attributes = {k: v for k, v in parsed.items() if k != "dn"}
        return DirectoryEntry(parsed.get("dn", entry.dn), attributes)

    def _retrieve_ranges(self, connection, entry: DirectoryEntry) -> None:
        """
        Merge every window of every ranged attribute into ``entry``.

        Windows are fetched with follow-up searches on this searcher's
        connection until each attribute reports an open high bound. If a
        follow-up fails, the values merged so far are kept and the entry is
        still emitted.
        """
        merged: Dict[str, List[Any]] = {}
        requested: Set[str] = set()
        current: Optional[Dict[str, Any]] = entry

        while current is not None:
            next_windows = []
            for name in [n for n in current if range_attribute.is_range_attribute(n)]:
                cursor = range_attribute.parse(name)
                values = current[name]
                merged.setdefault(cursor.attribute_name, []).extend(
                    values if isinstance(values, list) else [values]
                )
                entry.pop(name, None)

                following = cursor.next()
                if following is None:
                    continue
                specifier = str(following)
                if specifier != name and specifier.lower() not in requested:
                    requested.add(specifier.lower())
                    next_windows.append(specifier)

            if not next_windows:
                break

            try:
                current = self._range_search(connection, entry.dn, next_windows)
            except (LDAPException, RangeRetrievalError) as e:
                logger.warning(
                    f"Range retrieval for {entry.dn} ({next_windows}) failed, "
                    f"keeping partial values: {e}"
                )
                break

        for name, values in merged.items():
            entry[name] = values

    def _range_search(
        self, connection, dn: str, attributes: List[str]
    ) -> Optional[DirectoryEntry]:
        logger.debug(f"Range search on {dn} for {attributes}")
        search_kwargs = {
            "search_base": dn,
            "search_filter": f"(distinguishedName={escape_dn_for_filter(dn)})",
            "search_scope": BASE,
            "attributes": attributes,
        }
        if self.query.include_deleted:
            search_kwargs["controls"] = [(SHOW_DELETED_OID, True, None)]

        connection.search(**search_kwargs)
        result = connection.result or {}
        if result.get("result", RESULT_SUCCESS) != RESULT_SUCCESS:
            raise RangeRetrievalError(
                f"[{result.get('result')}] {result.get('description', 'unknown')}"
            )

        for response in connection.response or []:
            if response.get("type") == "searchResEntry":
                return to_directory_entry(response)
        return None

    # Referrals

    def _on_referral(self, uris: Iterable[str]) -> None:
        for uri in uris:
            if not self.config.referrals.is_allowed(uri):
                logger.debug(f"Not following referral {uri}")
                continue
            if self.depth >= MAX_REFERRAL_DEPTH:
                logger.warning(f"Referral depth limit reached, not following {uri}")
                continue

            referral_base = unquote(urlparse(uri).path.lstrip("/")) or self.base_dn
            logger.debug(f"Following referral {uri} (base: {referral_base})")
            child = Searcher(
                self.adapter,
                self.config,
                self.query,
                base_dn=referral_base,
                url=uri,
                depth=self.depth + 1,
            )
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=MAX_REFERRAL_WORKERS,
                    thread_name_prefix="adquery-referral",
                )
            self._referrals.append(self._executor.submit(child.search))

    def _join_referrals(self) -> None:
        if not self._referrals:
            return

        for future in as_completed(self._referrals):
            try:
                entries = future.result()
            except Exception as e:
                logger.warning(f"An error occurred chasing a referral: {e}")
                continue
            for entry in entries:
                self.results[identity_key(entry.dn)] = entry

        self._executor.shutdown(wait=True)
        self._executor = None

    def _cancel_referrals(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _release(self, connection) -> None:
        try:
            connection.unbind()
        except LDAPException as e:
            logger.debug(f"Error closing search connection: {e}")


def search(
    adapter, config: QueryConfig, query: QueryParameters, base_dn: Optional[str] = None
) -> List[DirectoryEntry]:
    """Run one logical search. See :class:`Searcher`."""
    return Searcher(adapter, config, query, base_dn=base_dn).search()
