from typing import TYPE_CHECKING

from case_insensitive_dict import CaseInsensitiveDict

if TYPE_CHECKING:
    import ldap

# ====================================
# Types
# ====================================

# LDAP records as python-ldap hands them to us
LDAPData = dict[str, list[bytes]]
CILDAPData = CaseInsensitiveDict[str, list[str]]
LDAPRecord = tuple[str, LDAPData]
LDAPSearchResult = list[LDAPRecord]
LDAPDirectory = CaseInsensitiveDict[str, CILDAPData]
RawLDAPDirectory = CaseInsensitiveDict[str, LDAPData]

# Return values
# result3: (result_type, result_data, msgid, decoded server controls)
Result3 = tuple[int, LDAPSearchResult, int, list["ldap.controls.LDAPControl"]]  # type: ignore[attr-defined]

# Paged results cookie; empty means "no more pages"
PageCursor = bytes

# Configuration key/value pairs as read from the configuration text
ConfigPairs = dict[str, str]

# unittest support
LDAPFixtureList = str | list[tuple[str, str]]
