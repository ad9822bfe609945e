from __future__ import annotations

import warnings
from dataclasses import dataclass, field

from ldap_filter import Filter  # type: ignore[reportUnknownVariableType]
from ldap_filter.parser import ParseError as FilterParseError

from .exceptions import ConfigError, LimitExceeded
from .filter import KEY_PLACEHOLDER, MAX_FILTER_LENGTH, expand_filter
from .logging import logger
from .types import ConfigPairs

#: Every key we understand in the configuration text
KNOWN_KEYS: frozenset[str] = frozenset(
    {
        "name",
        "url",
        "username",
        "password",
        "basedn",
        "filter",
        "attribute",
        "page_size",
        "max_filter_length",
    }
)

#: Keys that must be present besides ``url``
REQUIRED_KEYS: tuple[str, ...] = ("basedn", "filter", "attribute")

#: Default number of entries we ask the server for per page
DEFAULT_PAGE_SIZE: int = 100


@dataclass(frozen=True)
class DirectoryConfig:
    """
    Everything we need to know to talk to one directory server.

    Attributes:
        identifier: the unique name of this configuration
        url: the ``ldap://`` URL of the server
        username: the DN to bind as; empty for an anonymous bind
        password: the password for ``username``
        basedn: the base DN for our searches
        filter: the search filter template, containing ``%k``
        attribute: the attribute whose values we return
        page_size: number of entries to ask for per page
        max_filter_length: expanded filters may be at most twice this long

    """

    identifier: str
    url: str
    basedn: str
    filter: str
    attribute: str
    username: str = ""
    password: str = field(default="", repr=False)
    page_size: int = DEFAULT_PAGE_SIZE
    max_filter_length: int = MAX_FILTER_LENGTH


def parse_pairs(text: str) -> ConfigPairs:
    """
    Split configuration text into key/value pairs.  Each non-blank line that
    does not start with ``#`` must look like ``key value``; the value is the
    rest of the line.

    Args:
        text: the configuration text

    Raises:
        ConfigError: a line has no value, or a key is repeated

    Returns:
        A dict of key to value, in the order the keys appeared.

    """
    pairs: ConfigPairs = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:  # noqa: PLR2004
            msg = f"line {lineno}: expected 'key value', got {line!r}"
            raise ConfigError(msg)
        key, value = parts
        if key in pairs:
            msg = f"line {lineno}: duplicate key {key!r}"
            raise ConfigError(msg)
        pairs[key] = value.strip()
    return pairs


def _positive_int(pairs: ConfigPairs, key: str, default: int) -> int:
    if key not in pairs:
        return default
    try:
        value = int(pairs[key])
    except ValueError as exc:
        msg = f"{key!r} must be an integer, got {pairs[key]!r}"
        raise ConfigError(msg) from exc
    if value <= 0:
        msg = f"{key!r} must be positive, got {value}"
        raise ConfigError(msg)
    return value


def _check_filter(template: str, max_length: int) -> None:
    if KEY_PLACEHOLDER not in template:
        msg = f"filter {template!r} does not contain {KEY_PLACEHOLDER!r}"
        raise ConfigError(msg)
    try:
        Filter.parse(expand_filter(template, "key", max_length=max_length))
    except FilterParseError as exc:
        msg = f"filter {template!r} is not a valid LDAP filter"
        raise ConfigError(msg) from exc
    except LimitExceeded as exc:
        msg = f"filter {template!r} expands to more than {2 * max_length} characters"
        raise ConfigError(msg) from exc


def parse_config(text: str) -> DirectoryConfig:
    """
    Parse configuration text into a :py:class:`DirectoryConfig`.

    Example:
        >>> config = parse_config('''
        ... url ldap://ldap.example.com
        ... basedn ou=aliases,dc=example,dc=com
        ... filter (&(objectClass=mailAlias)(uid=%k))
        ... attribute mailForwardingAddress
        ... ''')
        >>> config.identifier
        'ldap://ldap.example.com'

    Args:
        text: the configuration text

    Raises:
        ConfigError: the text is not key/value pairs, has unknown keys, is
            missing a required key, or has an invalid filter template or
            numeric value

    Returns:
        A fully validated :py:class:`DirectoryConfig`.

    """
    pairs = parse_pairs(text)
    unknown = sorted(set(pairs) - KNOWN_KEYS)
    if unknown:
        msg = f"unknown configuration keys: {', '.join(unknown)}"
        raise ConfigError(msg)
    if "url" not in pairs:
        logger.warning("config.invalid reason=missing 'url' configuration")
        msg = "missing 'url' configuration"
        raise ConfigError(msg)
    for key in REQUIRED_KEYS:
        if key not in pairs:
            msg = f"missing {key!r} configuration"
            raise ConfigError(msg)
    max_filter_length = _positive_int(pairs, "max_filter_length", MAX_FILTER_LENGTH)
    _check_filter(pairs["filter"], max_filter_length)
    return DirectoryConfig(
        identifier=pairs.get("name", pairs["url"]),
        url=pairs["url"],
        username=pairs.get("username", ""),
        password=pairs.get("password", ""),
        basedn=pairs["basedn"],
        filter=pairs["filter"],
        attribute=pairs["attribute"],
        page_size=_positive_int(pairs, "page_size", DEFAULT_PAGE_SIZE),
        max_filter_length=max_filter_length,
    )


class ConfigRegistry:
    """
    Holds every :py:class:`DirectoryConfig` we have parsed, keyed by
    identifier.

    Construct one at startup and hand it to whatever needs to look
    configurations up by name, e.g. :py:class:`ldap_table.backend.LDAPBackend`.

    Example:
        >>> configs = ConfigRegistry()
        >>> config = configs.register_from_text(text)
        >>> configs.find(config.identifier) is config
        True

    """

    def __init__(self) -> None:
        self.configs: dict[str, DirectoryConfig] = {}

    def __contains__(self, identifier: object) -> bool:
        return identifier in self.configs

    def __len__(self) -> int:
        return len(self.configs)

    def find(self, identifier: str) -> DirectoryConfig | None:
        """
        Return the configuration registered as ``identifier``, if any.

        Args:
            identifier: the configuration name

        Returns:
            The :py:class:`DirectoryConfig`, or ``None``.

        """
        return self.configs.get(identifier)

    def register(self, config: DirectoryConfig) -> None:
        """
        Register ``config`` under its identifier.

        Args:
            config: a validated :py:class:`DirectoryConfig`

        Raises:
            RuntimeWarning: raised if we overwrite an already registered
                configuration

        """
        if config.identifier in self.configs:
            warnings.warn(
                f"ConfigRegistry: overriding existing config {config.identifier!r}",
                RuntimeWarning,
                stacklevel=2,
            )
        self.configs[config.identifier] = config

    def register_from_text(self, text: str) -> DirectoryConfig:
        """
        Parse ``text`` and register the result.  Nothing is registered if
        parsing fails.

        Args:
            text: configuration text; see :py:func:`parse_config`

        Raises:
            ConfigError: ``text`` is not a valid configuration

        Returns:
            The registered :py:class:`DirectoryConfig`.

        """
        config = parse_config(text)
        self.register(config)
        logger.debug("config.registered identifier=%s", config.identifier)
        return config

    def clear(self) -> None:
        self.configs.clear()


#: The process-wide registry used when no other is supplied
registry = ConfigRegistry()
