import getpass
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import keyring
from ldap3 import ALL, BASE, Connection, Server
from ldap3.core.exceptions import LDAPException

from ..exceptions import ConfigurationError, ProtocolError
from ..models.entry import DirectoryEntry
from ..components.utilities import normalize_values

logger = logging.getLogger(__name__)


class LDAPAdapter:
    """
    LDAP connection adapter for the directory query engine.

    This class handles server objects, authentication and connection
    creation. Every logical search asks it for a fresh, bound connection and
    is responsible for unbinding it; connections are never shared between
    searches because paging state is per connection.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP adapter with configuration settings.

        Args:
            config: Dictionary containing LDAP connection settings.
                   Required keys:
                   - 'server': LDAP server hostname
                   - 'search_base': Base DN for searches
                   - 'user': Username for authentication
                   - 'keyring_service': Keyring service name for password

                   Optional keys with defaults:
                   - 'port': LDAP port (default: 636 for SSL, 389 for non-SSL)
                   - 'use_ssl': Enable SSL/TLS (default: True)
                   - 'timeout': Connection timeout in seconds (default: 600)
                   - 'auto_bind': Auto-bind on connection (default: True)
                   - 'get_info': Server info level (default: ALL)
                   - 'default_page_size': Page size for paged searches (default: 1000)
                   - 'password': Bind password (skips keyring lookup)

        Raises:
            ConfigurationError: If required configuration keys are missing
            TypeError: If configuration is not a dictionary
        """
        if not isinstance(config, dict):
            raise TypeError("Configuration must be a dictionary")

        required_keys = ["server", "search_base", "user", "keyring_service"]
        missing_keys = [key for key in required_keys if not config.get(key)]
        if missing_keys:
            raise ConfigurationError(
                f"Missing required configuration keys: {missing_keys}"
            )

        self.server_hostname = config["server"]
        self.search_base = config["search_base"]
        self.user = config["user"]
        self.keyring_service = config["keyring_service"]

        self.use_ssl = config.get("use_ssl", True)
        self.port = config.get("port", 636 if self.use_ssl else 389)
        self.timeout = config.get("timeout", 600)  # AD is very slow, needs long timeout
        self.auto_bind = config.get("auto_bind", True)
        self.get_info = config.get("get_info", ALL)
        self.default_page_size = config.get("default_page_size", 1000)

        self._servers: Dict[str, Server] = {}
        self._password = config.get("password")

        logger.debug(f"LDAP adapter initialized for server: {self.server_hostname}")

    def _get_password(self) -> str:
        """
        Retrieve password from configuration, keyring, or prompt the user.

        Returns:
            str: The password for LDAP authentication

        Raises:
            KeyboardInterrupt: If user cancels password prompt
        """
        if self._password:
            return self._password

        try:
            password = keyring.get_password(self.keyring_service, self.user)
            if password:
                logger.debug("Using password from keyring")
                self._password = password
                return password
        except Exception as e:
            logger.warning(f"Could not retrieve password from keyring: {e}")

        try:
            password = getpass.getpass(f"Enter LDAP password for {self.user}: ")
            self._password = password

            try:
                save_password = (
                    input("Save password to keyring? (y/n): ").lower().strip()
                )
                if save_password == "y":
                    keyring.set_password(self.keyring_service, self.user, password)
                    logger.info("Password saved to keyring")
            except Exception as e:
                logger.warning(f"Could not save password to keyring: {e}")

            return password

        except KeyboardInterrupt:
            logger.info("Password prompt cancelled by user")
            raise

    def _create_server(
        self,
        hostname: Optional[str] = None,
        port: Optional[int] = None,
        use_ssl: Optional[bool] = None,
    ) -> Server:
        """
        Create (or reuse) the ldap3 Server object for a host.

        Args:
            hostname: Host to connect to (defaults to the configured server)
            port: Port (defaults to the configured port for the configured
                  server, or the protocol default for other hosts)
            use_ssl: Use LDAPS (defaults to the configured setting)

        Returns:
            Server: Configured ldap3 Server object

        Raises:
            ProtocolError: If server creation fails
        """
        hostname = hostname or self.server_hostname
        use_ssl = self.use_ssl if use_ssl is None else use_ssl
        if port is None:
            if hostname == self.server_hostname and use_ssl == self.use_ssl:
                port = self.port
            else:
                port = 636 if use_ssl else 389

        key = f"{hostname}:{port}:{use_ssl}"
        if key not in self._servers:
            try:
                self._servers[key] = Server(
                    hostname,
                    use_ssl=use_ssl,
                    port=port,
                    get_info=self.get_info,
                    connect_timeout=self.timeout,
                )
                logger.debug(f"LDAP server object created: {hostname}:{port}")
            except LDAPException as e:
                logger.error(f"Failed to create LDAP server object: {e}")
                raise ProtocolError(f"Server creation failed: {e}") from e

        return self._servers[key]

    def create_connection(self, url: Optional[str] = None) -> Connection:
        """
        Create and bind a connection for one logical search.

        Referral and range handling are left to the search orchestrator, so
        ldap3's automatic versions of both are switched off.

        Args:
            url: Optional ``ldap://host[:port]`` URL to connect to instead of
                 the configured server (used when chasing referrals)

        Returns:
            Connection: Authenticated ldap3 Connection object

        Raises:
            ProtocolError: If connection or authentication fails
        """
        hostname, port, use_ssl = None, None, None
        try:
            if url:
                parsed = urlparse(url)
                hostname = parsed.hostname
                use_ssl = parsed.scheme.lower() == "ldaps"
                port = parsed.port
        except ValueError as e:
            logger.error(f"Invalid LDAP URL {url}: {e}")
            raise ProtocolError(f"Invalid LDAP URL {url}: {e}") from e

        try:
            server = self._create_server(hostname, port, use_ssl)
            connection = Connection(
                server,
                user=self.user,
                password=self._get_password(),
                auto_bind=self.auto_bind,
                auto_referrals=False,
                auto_range=False,
                return_empty_attributes=False,
                receive_timeout=self.timeout,
            )
        except LDAPException as e:
            logger.error(f"LDAP connection failed: {e}")
            raise ProtocolError(f"Connection failed: {e}") from e

        if not connection.bound:
            raise ProtocolError("Failed to bind to LDAP server")

        logger.debug(f"Connected to {server.host}")
        return connection

    def test_connection(self) -> bool:
        """
        Test LDAP connection and verify functionality.

        Binds, then reads the search base entry itself with a base-scoped
        search for ``objectClass`` only.

        Returns:
            bool: True if connection test succeeds, False otherwise
        """
        conn = None
        try:
            conn = self.create_connection()

            logger.debug(f"Testing connection with search at base: {self.search_base}")
            success = conn.search(
                search_base=self.search_base,
                search_filter="(objectClass=*)",
                search_scope=BASE,
                attributes=["objectClass"],
            )

            if success:
                logger.info("Connection test successful")
                return True

            logger.warning(f"Search operation failed: {conn.result}")
            return False

        except (ProtocolError, LDAPException) as e:
            logger.error(f"LDAP connection test failed: {e}")
            return False
        finally:
            if conn is not None:
                try:
                    conn.unbind()
                    logger.debug("LDAP connection closed")
                except LDAPException as e:
                    logger.debug(f"Error closing test connection: {e}")

    def get_root_dse(self, attributes: Optional[List[str]] = None) -> DirectoryEntry:
        """
        Read the root DSE (naming contexts, supported controls, ...).

        Args:
            attributes: Attributes to read (default: all)

        Returns:
            DirectoryEntry: The root DSE with an empty dn

        Raises:
            ProtocolError: If the search fails
        """
        conn = self.create_connection()
        try:
            success = conn.search(
                search_base="",
                search_filter="(objectClass=*)",
                search_scope=BASE,
                attributes=attributes or ["*"],
            )
            if not success:
                raise ProtocolError(
                    f"Root DSE search failed: {conn.result.get('description')}",
                    result_code=conn.result.get("result"),
                    description=conn.result.get("description"),
                )

            root = DirectoryEntry("")
            for response in conn.response or []:
                if response.get("type") != "searchResEntry":
                    continue
                for name, values in response.get("attributes", {}).items():
                    if isinstance(values, list):
                        if not values:
                            continue
                        root[name] = normalize_values(values)
                    else:
                        root[name] = values
            logger.debug(f"Root DSE attributes: {sorted(root.keys())}")
            return root
        except LDAPException as e:
            logger.error(f"Root DSE search failed: {e}")
            raise ProtocolError(f"Root DSE search failed: {e}") from e
        finally:
            conn.unbind()

    def get_connection_info(self) -> Dict[str, Any]:
        """
        Get information about the current LDAP configuration.

        Returns:
            Dict[str, Any]: Configuration information (passwords excluded)
        """
        return {
            "server": self.server_hostname,
            "port": self.port,
            "use_ssl": self.use_ssl,
            "search_base": self.search_base,
            "user": self.user,
            "keyring_service": self.keyring_service,
            "timeout": self.timeout,
            "default_page_size": self.default_page_size,
        }

    def __str__(self) -> str:
        """String representation of the LDAP adapter."""
        ssl_status = "SSL" if self.use_ssl else "non-SSL"
        return f"LDAPAdapter({self.server_hostname}:{self.port}, {ssl_status}, user={self.user})"

    def __repr__(self) -> str:
        """Detailed string representation for debugging."""
        return (
            f"LDAPAdapter(server='{self.server_hostname}', port={self.port}, "
            f"use_ssl={self.use_ssl}, search_base='{self.search_base}', "
            f"user='{self.user}', keyring_service='{self.keyring_service}')"
        )
