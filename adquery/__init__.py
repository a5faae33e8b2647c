from .adapters.ldap_adapter import LDAPAdapter
from .config import ADQueryConfig, QueryConfig
from .exceptions import (
    ConfigurationError,
    DirectoryQueryError,
    InvalidRangeSpecifierError,
    PreconditionError,
    ProtocolError,
    RangeRetrievalError,
)
from .facade.activedirectory_facade import ActiveDirectoryFacade
from .models import DirectoryEntry, FindResult, Group, QueryParameters, User

__version__ = "1.0.0"

__all__ = [
    'ActiveDirectoryFacade',
    'ADQueryConfig',
    'LDAPAdapter',
    'QueryConfig',
    'QueryParameters',
    'DirectoryEntry',
    'FindResult',
    'Group',
    'User',
    'DirectoryQueryError',
    'ConfigurationError',
    'InvalidRangeSpecifierError',
    'PreconditionError',
    'ProtocolError',
    'RangeRetrievalError',
]
