"""
Declarative reconciliation of LDAP directory entries.

Given the desired attributes of a directory entry and its last observed state,
``ldapentry`` computes the attribute level modifications needed to converge
the remote entry and issues them through a directory client.
"""

__version__ = "0.3.0"
