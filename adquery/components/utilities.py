"""
Filter building, attribute projection and entry classification helpers.

Everything here is a pure function; nothing touches the network.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ldap3.protocol.formatters.formatters import format_sid, format_uuid_le
from ldap3.utils.conv import escape_filter_chars

from ..models.entry import DirectoryEntry
from ..models.query import QueryParameters

GROUP_CATEGORY_PATTERN = re.compile(r"CN=Group,CN=Schema,CN=Configuration,.*", re.I)
PERSON_CATEGORY_PATTERN = re.compile(r"CN=Person,CN=Schema,CN=Configuration,.*", re.I)
DISTINGUISHED_NAME_PATTERN = re.compile(r"(([^=]+=.+),?)+", re.I)

REQUIRED_GROUP_ATTRIBUTES = ["dn", "objectCategory", "groupType", "cn"]
REQUIRED_USER_ATTRIBUTES = ["dn", "cn"]

MAX_LOG_OUTPUT_LENGTH = 256


def get_compound_filter(ldap_filter: Optional[str]) -> Optional[str]:
    """Wrap a filter in parentheses unless it already has them."""
    if not ldap_filter:
        return None
    if ldap_filter.startswith("(") and ldap_filter.endswith(")"):
        return ldap_filter
    return f"({ldap_filter})"


def is_distinguished_name(value: Optional[str]) -> bool:
    if not value:
        return False
    return DISTINGUISHED_NAME_PATTERN.search(value) is not None


def escape_dn_for_filter(dn: str) -> str:
    """Escape a distinguished name for use as an assertion value (RFC 4515)."""
    return escape_filter_chars(dn)


def get_user_query_filter(username: Optional[str] = None) -> str:
    """
    Build the filter for a user lookup.

    Args:
        username: sAMAccountName, userPrincipalName or distinguished name.
                  None finds every user.
    """
    if not username:
        return "(objectCategory=User)"
    if is_distinguished_name(username):
        return (
            "(&(objectCategory=User)"
            f"(distinguishedName={escape_dn_for_filter(username)}))"
        )
    value = escape_filter_chars(username)
    return (
        "(&(objectCategory=User)"
        f"(|(sAMAccountName={value})(userPrincipalName={value})))"
    )


def get_group_query_filter(group_name: Optional[str] = None) -> str:
    """
    Build the filter for a group lookup.

    Args:
        group_name: cn or distinguished name of the group. None finds every group.
    """
    if not group_name:
        return "(objectCategory=Group)"
    if is_distinguished_name(group_name):
        return (
            "(&(objectCategory=Group)"
            f"(distinguishedName={escape_dn_for_filter(group_name)}))"
        )
    return f"(&(objectCategory=Group)(cn={escape_filter_chars(group_name)}))"


def get_member_of_filter(dn: str) -> str:
    # The transitive matching rule (1.2.840.113556.1.4.1941) is far slower
    # than walking the tree one level at a time.
    return f"(member={escape_dn_for_filter(dn)})"


def get_members_filter(dns: Sequence[str]) -> str:
    """Disjunction over a chunk of member identities, limited to users and groups."""
    members = "".join(f"(distinguishedName={escape_dn_for_filter(dn)})" for dn in dns)
    return f"(&(|(objectCategory=User)(objectCategory=Group))(|{members}))"


def should_include_all_attributes(attributes: Optional[Sequence[str]]) -> bool:
    """True for an empty attribute list or one containing the ``*`` wildcard."""
    if attributes is None:
        return False
    return len(attributes) == 0 or "*" in attributes


def join_attributes(*attribute_lists: Optional[Sequence[str]]) -> List[str]:
    """
    Union attribute lists, keeping first-seen order.

    Returns an empty list (meaning "all attributes") if any input asks for
    everything.
    """
    for attributes in attribute_lists:
        if should_include_all_attributes(attributes):
            return []

    joined: List[str] = []
    for attributes in attribute_lists:
        for attribute in attributes or ():
            if attribute not in joined:
                joined.append(attribute)
    return joined


def get_required_attributes_for_group(query: QueryParameters) -> List[str]:
    if should_include_all_attributes(query.attributes):
        return []
    required = list(REQUIRED_GROUP_ATTRIBUTES)
    if query.includes_membership_for("group"):
        required.append("member")
    return required


def get_required_attributes_for_user(query: QueryParameters) -> List[str]:
    if should_include_all_attributes(query.attributes):
        return []
    required = list(REQUIRED_USER_ATTRIBUTES)
    if query.includes_membership_for("user"):
        required.append("member")
    return required


def pick_attributes(
    entry: Dict[str, Any], attributes: Optional[Sequence[str]]
) -> Dict[str, Any]:
    """
    Project an entry down to the requested attributes.

    Matching is case-insensitive and the entry's own spelling of each name is
    kept. ``dn`` is always carried over. A wildcard or empty request copies
    every attribute.
    """
    if attributes is None or should_include_all_attributes(attributes):
        return dict(entry)

    by_lower = {name.lower(): name for name in entry}
    picked: Dict[str, Any] = {}
    for attribute in attributes:
        name = by_lower.get(attribute.lower())
        if name is not None:
            picked[name] = entry[name]
    if "dn" in entry:
        picked["dn"] = entry["dn"]
    return picked


def project(entry: DirectoryEntry, attributes: Optional[Sequence[str]], model=None):
    """Build a new ``model`` instance (default: same type) from a projected entry."""
    model = model or type(entry)
    picked = pick_attributes(entry, attributes)
    dn = picked.pop("dn", entry.dn)
    return model(dn, picked)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _get(entry: Dict[str, Any], name: str) -> Any:
    lowered = name.lower()
    for key, value in entry.items():
        if key.lower() == lowered:
            return value
    return None


def is_group_result(entry: Optional[Dict[str, Any]]) -> bool:
    """
    Classify an entry as a group.

    Checks, in order: a group type marker, the object category, and the
    object class list.
    """
    if not entry:
        return False
    if _get(entry, "groupType"):
        return True
    category = _get(entry, "objectCategory")
    if category:
        return any(GROUP_CATEGORY_PATTERN.match(str(c)) for c in _as_list(category))
    classes = _as_list(_get(entry, "objectClass"))
    return any(str(c).lower() == "group" for c in classes)


def is_user_result(entry: Optional[Dict[str, Any]]) -> bool:
    """
    Classify an entry as a user.

    Checks, in order: a user principal name, the object category, and the
    object class list.
    """
    if not entry:
        return False
    if _get(entry, "userPrincipalName"):
        return True
    category = _get(entry, "objectCategory")
    if category:
        return any(PERSON_CATEGORY_PATTERN.match(str(c)) for c in _as_list(category))
    classes = _as_list(_get(entry, "objectClass"))
    return any(str(c).lower() == "user" for c in classes)


def truncate_log_output(output: Any, max_length: int = MAX_LOG_OUTPUT_LENGTH) -> Any:
    """Shorten long filters for logging by eliding the middle."""
    if not output:
        return output

    text = output if isinstance(output, str) else str(output)
    length = len(text)
    if length < max_length + 3:
        return text

    prefix = -(-(max_length - 3) // 2)
    suffix = (max_length - 3) // 2
    return text[:prefix] + "..." + text[length - suffix:]


def binary_sid_to_string_sid(sid: bytes) -> str:
    """Convert a binary security identifier to its ``S-1-5-...`` form."""
    return format_sid(bytes(sid))


def binary_guid_to_string(guid: bytes) -> str:
    """Convert a little-endian binary GUID to its canonical string form."""
    # ldap3 renders GUIDs in registry form, {...}
    return format_uuid_le(bytes(guid)).strip("{}")


def _raw_value(raw: Dict[str, Any], name: str) -> Optional[bytes]:
    values = _get(raw, name)
    if not values:
        return None
    value = values[0] if isinstance(values, (list, tuple)) else values
    return value if isinstance(value, (bytes, bytearray)) else None


def default_entry_parser(
    entry: Dict[str, Any], raw: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    """Replace binary objectSid/objectGUID values with their string forms."""
    sid = _raw_value(raw, "objectSid")
    if sid is not None:
        entry["objectSid"] = binary_sid_to_string_sid(sid)
    guid = _raw_value(raw, "objectGUID")
    if guid is not None and len(guid) == 16:
        entry["objectGUID"] = binary_guid_to_string(guid)
    return entry


def chunk(items: Sequence[Any], chunk_size: int) -> List[List[Any]]:
    """Break ``items`` into consecutive slices of at most ``chunk_size``."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be a positive integer")
    return [list(items[i:i + chunk_size]) for i in range(0, len(items), chunk_size)]


def normalize_values(values: Iterable[Any]) -> Any:
    """One value becomes a scalar, several stay a list."""
    values = list(values)
    if len(values) == 1:
        return values[0]
    return values
