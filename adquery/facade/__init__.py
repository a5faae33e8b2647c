from .activedirectory_facade import ActiveDirectoryFacade

__all__ = ['ActiveDirectoryFacade']
