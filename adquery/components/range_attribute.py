"""
Range retrieval specifiers for multi-valued attributes.

Active Directory delivers large multi-valued attributes (``member`` on a big
group, for instance) in windows, naming each window with a specifier such as
``member;range=0-1499``. The final window has an open high bound:
``member;range=1500-*``.

See https://msdn.microsoft.com/en-us/library/cc223242.aspx
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..exceptions import InvalidRangeSpecifierError

# [attribute];range=[low]-[high]
RANGE_PATTERN = re.compile(r"^([^;]+);range=(\d+)-([\d*]+)$", re.IGNORECASE)


@dataclass(frozen=True)
class RangeCursor:
    """One window of a ranged attribute. ``high`` is None for an open window."""

    attribute_name: str
    low: int
    high: Optional[int] = None

    def next(self) -> Optional["RangeCursor"]:
        """
        Compute the specifier for the following window.

        The next window starts right after this one and is the same size,
        plus one extra value when this window started at 0; servers size the
        first window differently from the rest.

        Returns:
            RangeCursor for the next window, or None when there is no next
            window (open high bound, or a window that cannot advance).
        """
        if self.high is None or self.high == self.low:
            return None

        low = self.high + 1
        high = self.high + (self.high - self.low) + 1
        if self.low == 0:
            high += 1
        return RangeCursor(self.attribute_name, low, high)

    def is_complete(self) -> bool:
        return self.high is None

    def __str__(self) -> str:
        high = "*" if self.high is None else str(self.high)
        return f"{self.attribute_name};range={self.low}-{high}"


def is_range_attribute(attribute_name: str) -> bool:
    return RANGE_PATTERN.match(attribute_name) is not None


def parse(attribute_name: str) -> RangeCursor:
    """
    Parse a ``name;range=low-high`` specifier.

    Raises:
        InvalidRangeSpecifierError: If the name carries no range specifier.
    """
    match = RANGE_PATTERN.match(attribute_name or "")
    if match is None:
        raise InvalidRangeSpecifierError(
            f"'{attribute_name}' is not a range retrieval specifier"
        )

    name, low, high = match.groups()
    # A high bound of '*' (or 0) marks the last window
    upper = 0 if "*" in high else int(high)
    return RangeCursor(name, int(low), upper or None)


def get_range_attributes(entry: Dict[str, Any]) -> List[RangeCursor]:
    return [parse(name) for name in entry if is_range_attribute(name)]


def has_range_attributes(entry: Dict[str, Any]) -> bool:
    return any(is_range_attribute(name) for name in entry)
