"""
External access module.

Clients hold a token that points at a document chain, never at a version:
the token always resolves to whichever version of the chain is issued at
access time. Links can expire and be revoked; every resolution is logged.
"""
