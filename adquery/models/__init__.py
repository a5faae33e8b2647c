from .entry import DirectoryEntry, FindResult, Group, User
from .membership import MembershipSet, RecursionGuard, identity_key
from .query import QueryParameters

__all__ = [
    'DirectoryEntry',
    'FindResult',
    'Group',
    'User',
    'MembershipSet',
    'RecursionGuard',
    'identity_key',
    'QueryParameters',
]
