__version__ = "1.0.0"

from .backend import (
    BackendRegistry,
    LDAPBackend,
    LookupBackend,
    LookupService,
    backends,
)
from .config import ConfigRegistry, DirectoryConfig, parse_config, registry
from .connection import LDAPHandle, open_handle
from .exceptions import (
    AuthError,
    ConfigError,
    ConnectError,
    LDAPTableError,
    LimitExceeded,
    LookupFailed,
    ParseError,
    ProtocolError,
)
from .expansion import ExpandNode, ExpandType, ExpansionList, parse_expansion
from .filter import expand_filter
from .search import PagedSearch
