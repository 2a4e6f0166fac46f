from __future__ import annotations


class NotFoundError(ValueError):
    """Raised by services when a shop-scoped record does not exist."""
