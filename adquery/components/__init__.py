from .finder import Finder
from .group_membership import GroupMembershipResolver
from .group_users import GroupUsersResolver
from .range_attribute import RangeCursor
from .searcher import Searcher, search

__all__ = [
    'Finder',
    'GroupMembershipResolver',
    'GroupUsersResolver',
    'RangeCursor',
    'Searcher',
    'search',
]
