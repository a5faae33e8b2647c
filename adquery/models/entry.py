from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class DirectoryEntry(dict):
    """
    One directory record: attribute name -> value(s), always carrying ``dn``.

    Single-valued attributes hold a scalar and multi-valued attributes a
    list, so ``entry["cn"]`` reads naturally while ``entry["member"]`` may
    still be a list.
    """

    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None):
        super().__init__(attributes or {})
        self["dn"] = dn

    @property
    def dn(self) -> str:
        return self["dn"]

    def get_list(self, name: str) -> List[Any]:
        """Return an attribute as a list regardless of how many values it has."""
        value = self.get(name)
        if value is None:
            return []
        if isinstance(value, list):
            return list(value)
        return [value]


class User(DirectoryEntry):
    """A user account, optionally enriched with the groups it belongs to."""

    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None):
        super().__init__(dn, attributes)
        self.groups: Optional[List["Group"]] = None

    def is_member_of(self, group: str) -> bool:
        """
        Check enriched membership for a group by cn or dn (case-insensitive).

        Always False when the user was not loaded with group membership.
        """
        if not group or not self.groups:
            return False

        wanted = group.lower()
        for g in self.groups:
            if g.dn.lower() == wanted or str(g.get("cn", "")).lower() == wanted:
                return True
        return False


class Group(DirectoryEntry):
    """A group, optionally enriched with the groups it is nested in."""

    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None):
        super().__init__(dn, attributes)
        self.groups: Optional[List["Group"]] = None


@dataclass
class FindResult:
    """Entries from one find, bucketed by kind."""

    users: List[User] = field(default_factory=list)
    groups: List[Group] = field(default_factory=list)
    other: List[DirectoryEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.users) + len(self.groups) + len(self.other)
