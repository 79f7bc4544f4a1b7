"""Task-local log context: the site being fetched rides along on every record."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import structlog


@contextmanager
def site_context(site_id: str, site_name: str = "") -> Iterator[None]:
    """Tag records logged inside the block with the site id (and name, if set).

    Restores whatever site was bound before, so nested blocks are safe.
    """
    fields: dict[str, object] = {"site_id": site_id}
    if site_name:
        fields["site_name"] = site_name
    with structlog.contextvars.bound_contextvars(**fields):
        yield
