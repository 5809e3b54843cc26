"""Backend drivers: LDAP directory, Graph users and Graph usage reports."""
