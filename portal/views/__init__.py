"""
View models for the sign-in pages.

Each view holds UI-only state (field values, validity, loading flag, message text)
and calls exactly one coordinator operation per user action. None of them hold
authoritative state.
"""
