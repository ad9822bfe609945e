from __future__ import annotations

from .exceptions import LimitExceeded

#: The placeholder in a filter template that is replaced by the lookup key
KEY_PLACEHOLDER: str = "%k"

#: Default maximum length of a filter template.  Expanded filters may grow to
#: twice this.
MAX_FILTER_LENGTH: int = 1024


class FilterBuilder:
    """
    Accumulate a search filter out of literal runs and substituted keys,
    refusing to grow past ``limit`` characters.

    Args:
        limit: the maximum number of characters the built filter may hold

    """

    def __init__(self, limit: int) -> None:
        self.limit: int = limit
        self._parts: list[str] = []
        self._length: int = 0

    def __len__(self) -> int:
        return self._length

    def append(self, text: str) -> None:
        """
        Append ``text`` to the filter.

        Args:
            text: a literal run from the template, or the lookup key

        Raises:
            LimitExceeded: appending ``text`` would make the filter longer
                than :py:attr:`limit`

        """
        if self._length + len(text) > self.limit:
            msg = f"expanded filter would exceed {self.limit} characters"
            raise LimitExceeded(msg)
        self._parts.append(text)
        self._length += len(text)

    def build(self) -> str:
        return "".join(self._parts)


def expand_filter(template: str, key: str, max_length: int = MAX_FILTER_LENGTH) -> str:
    """
    Build a concrete search filter by replacing every ``%k`` in ``template``
    with ``key``.

    Warning:
        ``key`` is substituted as-is.  Filter metacharacters in ``key``
        (``*``, ``(``, ``)``, ``\\``) are not escaped, so a key can change the
        meaning of the resulting filter.  Callers that take keys from
        untrusted input must sanitize them first.

    Example:
        >>> expand_filter("(&(objectClass=mailAlias)(uid=%k))", "postmaster")
        '(&(objectClass=mailAlias)(uid=postmaster))'

    Args:
        template: the filter template
        key: the lookup key

    Keyword Args:
        max_length: the configured maximum filter length; the expanded filter
            may be at most twice this long

    Raises:
        LimitExceeded: the expanded filter would be longer than
            ``2 * max_length``

    Returns:
        The expanded filter.

    """
    builder = FilterBuilder(2 * max_length)
    start = 0
    while True:
        index = template.find(KEY_PLACEHOLDER, start)
        if index == -1:
            break
        if index > start:
            builder.append(template[start:index])
        builder.append(key)
        start = index + len(KEY_PLACEHOLDER)
    if start < len(template):
        builder.append(template[start:])
    return builder.build()
