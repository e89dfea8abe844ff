"""Profile store: document reads and merge-writes keyed by (collection, key).

Postgres drivers are imported lazily inside functions so the local store and the
rest of the app work without DB access.
"""

from __future__ import annotations
