import logging

#: The logger used throughout :py:mod:`ldap_table`.  We never attach handlers
#: here; configuring output is up to the host application.
logger: logging.Logger = logging.getLogger("ldap_table")
