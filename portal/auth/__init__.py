"""
Authentication layer for the portal front-end.

Design goals:
- Identity is owned by an external provider (Identity Toolkit or its emulator).
- One coordinator per client unifies the provider session with the stored profile.
- Provider failures are classified into a small closed set of user-facing errors.
"""
