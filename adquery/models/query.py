from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Sequence, Tuple, Union

from ..config import EntryParser

SCOPES = {
    "base": "BASE",
    "one": "LEVEL",
    "level": "LEVEL",
    "sub": "SUBTREE",
    "subtree": "SUBTREE",
}

MEMBERSHIP_KINDS = ("user", "group", "all")


def _normalize_membership(
    value: Union[None, bool, str, Sequence[str]]
) -> Tuple[str, ...]:
    if not value:
        return ()
    if value is True:
        return ("all",)
    if isinstance(value, str):
        value = [value]
    kinds = tuple(str(v).lower() for v in value)
    unknown = [k for k in kinds if k not in MEMBERSHIP_KINDS and k != "none"]
    if unknown:
        raise ValueError(
            f"include_membership must be drawn from {list(MEMBERSHIP_KINDS)}, got {unknown}"
        )
    return tuple(k for k in kinds if k != "none")


@dataclass(frozen=True)
class QueryParameters:
    """
    Immutable input to one logical search.

    ``scope=None`` means the operation's default scope (``base`` for a raw
    search, ``sub`` for the finders).

    ``attributes=None`` means "use the default list for the kind of entry
    being searched"; an empty list or a list containing ``*`` requests every
    attribute. Use :meth:`with_options` to derive a modified copy.
    """

    filter: str = "(objectClass=*)"
    base_dn: Optional[str] = None
    scope: Optional[str] = None
    attributes: Optional[List[str]] = None
    size_limit: int = 0
    time_limit: int = 0
    include_membership: Tuple[str, ...] = ()
    entry_parser: Optional[EntryParser] = None
    include_deleted: bool = False
    paged: bool = True
    controls: Tuple[Any, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.scope is not None:
            if self.scope.lower() not in SCOPES:
                raise ValueError(f"scope must be one of: {list(SCOPES.keys())}")
            object.__setattr__(self, "scope", self.scope.lower())
        object.__setattr__(
            self, "include_membership", _normalize_membership(self.include_membership)
        )
        if self.attributes is not None:
            object.__setattr__(self, "attributes", list(self.attributes))
        object.__setattr__(self, "controls", tuple(self.controls or ()))

    @property
    def ldap3_scope(self) -> str:
        """The ldap3 constant name (BASE, LEVEL or SUBTREE) for this scope."""
        return SCOPES[self.scope or "base"]

    def includes_membership_for(self, kind: str) -> bool:
        """Check whether group membership enrichment is enabled for ``kind``."""
        kind = kind.lower()
        return any(k == "all" or k == kind for k in self.include_membership)

    def with_options(self, **changes) -> "QueryParameters":
        return replace(self, **changes)

    @classmethod
    def coerce(
        cls, query: Union[None, str, "QueryParameters"], **defaults
    ) -> "QueryParameters":
        """
        Accept a QueryParameters, a bare filter string, or None.

        ``defaults`` only fill in fields when a string or None was supplied;
        an explicit QueryParameters is returned untouched.
        """
        if isinstance(query, QueryParameters):
            return query
        if isinstance(query, str):
            defaults["filter"] = query
        return cls(**defaults)
