import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

# The maximum number of results that AD will return in a single call.
DEFAULT_PAGE_SIZE = 1000

DEFAULT_USER_ATTRIBUTES = [
    "dn",
    "distinguishedName",
    "userPrincipalName",
    "sAMAccountName",
    "mail",
    "lockoutTime",
    "whenCreated",
    "pwdLastSet",
    "userAccountControl",
    "employeeID",
    "sn",
    "givenName",
    "initials",
    "cn",
    "displayName",
    "comment",
    "description",
]

DEFAULT_GROUP_ATTRIBUTES = [
    "dn",
    "cn",
    "description",
    "distinguishedName",
    "objectCategory",
]

# Active Directory returns these partitions as default referrals; they are
# never followed even when referral chasing is enabled.
DEFAULT_REFERRAL_EXCLUSIONS = [
    r"ldaps?://ForestDnsZones\..*/.*",
    r"ldaps?://DomainDnsZones\..*/.*",
    r"ldaps?://.*/CN=Configuration,.*",
]

# (entry, raw_attributes) -> entry, or None to drop the entry
EntryParser = Callable[[Dict[str, Any], Dict[str, Any]], Optional[Dict[str, Any]]]


@dataclass
class DefaultAttributes:
    """Attributes returned for each kind of entry when a query names none."""

    user: List[str] = field(default_factory=lambda: list(DEFAULT_USER_ATTRIBUTES))
    group: List[str] = field(default_factory=lambda: list(DEFAULT_GROUP_ATTRIBUTES))


@dataclass
class ReferralSettings:
    """Referral chasing switch plus the URI patterns that are never chased."""

    enabled: bool = False
    exclude: List[str] = field(
        default_factory=lambda: list(DEFAULT_REFERRAL_EXCLUSIONS)
    )

    def is_allowed(self, referral_uri: Optional[str]) -> bool:
        """Check a referral URI against the enable flag and the exclusion patterns."""
        if not self.enabled or not referral_uri:
            return False

        for pattern in self.exclude:
            if re.search(pattern, referral_uri, re.IGNORECASE):
                return False
        return True


@dataclass
class QueryConfig:
    """
    Per-instance query defaults threaded through every search.

    Each facade builds its own QueryConfig, so overriding the default
    attributes or referral settings for one directory never leaks into
    another.
    """

    base_dn: str = ""
    page_size: int = DEFAULT_PAGE_SIZE
    attributes: DefaultAttributes = field(default_factory=DefaultAttributes)
    referrals: ReferralSettings = field(default_factory=ReferralSettings)
    entry_parser: Optional[EntryParser] = None

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "QueryConfig":
        """
        Build query defaults from an adapter configuration dictionary.

        Partial ``attributes`` and ``referrals`` dictionaries are merged onto
        the defaults, so ``{"referrals": {"enabled": True}}`` keeps the
        default exclusion list.

        Args:
            config: Adapter configuration (see LDAPAdapter).

        Returns:
            QueryConfig: Defaults for searches against that directory.
        """
        attributes = DefaultAttributes()
        attribute_overrides = config.get("attributes") or {}
        if "user" in attribute_overrides:
            attributes.user = list(attribute_overrides["user"])
        if "group" in attribute_overrides:
            attributes.group = list(attribute_overrides["group"])

        referrals = ReferralSettings()
        referral_overrides = config.get("referrals") or {}
        if "enabled" in referral_overrides:
            referrals.enabled = bool(referral_overrides["enabled"])
        if "exclude" in referral_overrides:
            referrals.exclude = list(referral_overrides["exclude"])

        return cls(
            base_dn=config.get("search_base", ""),
            page_size=int(config.get("default_page_size", DEFAULT_PAGE_SIZE)),
            attributes=attributes,
            referrals=referrals,
            entry_parser=config.get("entry_parser"),
        )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class ADQueryConfig:
    """Centralized directory configuration management."""

    @staticmethod
    def get_config() -> Dict[str, Any]:
        """Get directory configuration from environment variables."""
        use_ssl = _env_flag("AD_USE_SSL", "true")

        config = {
            "server": os.getenv("AD_SERVER", ""),
            "search_base": os.getenv("AD_SEARCH_BASE", ""),
            "user": os.getenv("AD_USER", ""),
            "keyring_service": os.getenv("AD_KEYRING_SERVICE", "ldap_ad"),
            "use_ssl": use_ssl,
            "port": int(os.getenv("AD_PORT", "636" if use_ssl else "389")),
            "timeout": int(os.getenv("AD_TIMEOUT", "600")),
            "default_page_size": int(
                os.getenv("AD_PAGE_SIZE", str(DEFAULT_PAGE_SIZE))
            ),
            "referrals": {
                "enabled": _env_flag("AD_REFERRALS_ENABLED", "false"),
            },
        }

        exclude = os.getenv("AD_REFERRALS_EXCLUDE")
        if exclude:
            config["referrals"]["exclude"] = [
                pattern.strip() for pattern in exclude.split(",") if pattern.strip()
            ]

        return config

    @staticmethod
    def get_example_config() -> Dict[str, str]:
        """Get an example set of environment variables."""
        return {
            "AD_SERVER": "dc01.example.com",
            "AD_SEARCH_BASE": "DC=example,DC=com",
            "AD_USER": "EXAMPLE\\svc-query",
            "AD_KEYRING_SERVICE": "ldap_ad",
            "AD_PORT": "636",
            "AD_USE_SSL": "true",
            "AD_PAGE_SIZE": "1000",
            "AD_REFERRALS_ENABLED": "false",
        }
