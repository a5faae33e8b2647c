from typing import Dict, Iterable, Iterator, List, Optional, Set

from .entry import DirectoryEntry


def identity_key(dn: str) -> str:
    """Distinguished names compare case-insensitively."""
    return dn.lower()


class MembershipSet:
    """
    Entries deduplicated by distinguished name (case-insensitive).

    Iteration follows insertion order, but callers should treat the
    contents as a set.
    """

    def __init__(self, entries: Optional[Iterable[DirectoryEntry]] = None):
        self._entries: Dict[str, DirectoryEntry] = {}
        for entry in entries or ():
            self.add(entry)

    def add(self, entry: DirectoryEntry) -> bool:
        """Add an entry; returns False if its identity was already present."""
        key = identity_key(entry.dn)
        if key in self._entries:
            return False
        self._entries[key] = entry
        return True

    def update(self, other: Iterable[DirectoryEntry]) -> None:
        for entry in other:
            self.add(entry)

    def identities(self) -> Set[str]:
        return set(self._entries.keys())

    def to_list(self) -> List[DirectoryEntry]:
        return list(self._entries.values())

    def __contains__(self, dn: object) -> bool:
        return isinstance(dn, str) and identity_key(dn) in self._entries

    def __iter__(self) -> Iterator[DirectoryEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"MembershipSet({sorted(self._entries)})"


class RecursionGuard:
    """
    Identities already entered during one group membership resolution.

    Owned by a single top-level call. An identity already in the guard is
    never entered again, which is what makes cyclic membership terminate.
    """

    def __init__(self, seed: Optional[Iterable[str]] = None):
        self._seen: Set[str] = set()
        for dn in seed or ():
            self._seen.add(identity_key(dn))

    def enter(self, dn: str) -> bool:
        """Mark ``dn`` as entered; returns False if it already was."""
        key = identity_key(dn)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def __contains__(self, dn: object) -> bool:
        return isinstance(dn, str) and identity_key(dn) in self._seen

    def __len__(self) -> int:
        return len(self._seen)
