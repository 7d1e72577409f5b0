"""User directory.

Accounts belong to the Account subsystem; the relay reads display fields
and writes only the presence columns.
"""
