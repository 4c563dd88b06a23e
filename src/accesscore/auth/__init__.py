"""Authentication and authorization.

Learn: Two ways in, one principal out:
1. Users → email/password → opaque session token (Bearer)
2. Services/CI → org (osk-) or project (psk-) API key

Both resolve to a Principal; authorization.authorize() then decides
folder and item access against live database state.
"""
