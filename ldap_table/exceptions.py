class LDAPTableError(Exception):
    """
    Base class for every error raised by :py:mod:`ldap_table`.
    """


class ConfigError(LDAPTableError):
    """
    The configuration text could not be parsed, or is missing a required key.
    """


class ConnectError(LDAPTableError):
    """
    The server URL could not be parsed, or no resolved address accepted a
    stream connection.
    """


class AuthError(LDAPTableError):
    """
    The directory server rejected our bind credentials.
    """


class ProtocolError(LDAPTableError):
    """
    The directory server answered with something we did not ask for: an
    unexpected message id, an unexpected message type, or a non-success
    result code.
    """


class LimitExceeded(LDAPTableError):
    """
    The expanded search filter grew past its allowed length.
    """


class ParseError(LDAPTableError):
    """
    An attribute value could not be parsed into an expansion node.
    """


class LookupFailed(LDAPTableError):
    """
    A lookup was aborted.  The detailed cause is logged, not carried.
    """
