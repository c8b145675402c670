"""Site handler registry.

Each site registers exactly one handler per page kind. Stages look handlers
up here, so adding a storefront never touches pool or scheduler code.
"""

from __future__ import annotations

import logging
from typing import Union

from price_tracker.db.models import PageKind
from price_tracker.ingest.base import DetailHandler, SearchHandler
from price_tracker.ingest.handlers.kabum import KabumProductHandler, KabumSearchHandler

logger = logging.getLogger(__name__)

Handler = Union[SearchHandler, DetailHandler]


class UnknownHandlerError(LookupError):
    """No handler registered for a site/kind pair."""


class HandlerRegistry:
    """Maps (site, kind) to the handler instance for that variant."""

    def __init__(self):
        self._search: dict[str, SearchHandler] = {}
        self._detail: dict[str, DetailHandler] = {}

    def register(self, handler: Handler) -> None:
        if isinstance(handler, SearchHandler):
            self._search[handler.name] = handler
        elif isinstance(handler, DetailHandler):
            self._detail[handler.name] = handler
        else:
            raise TypeError(f"Not a site handler: {handler!r}")
        logger.debug(f"Registered {handler.kind.value} handler for site: {handler.name}")

    def for_kind(self, kind: PageKind, site: str) -> Handler:
        """Dispatch on the page kind; each kind has its own handler table."""
        if kind is PageKind.SEARCH:
            return self.search(site)
        if kind is PageKind.DETAIL:
            return self.detail(site)
        raise UnknownHandlerError(f"Unknown page kind: {kind!r}")

    def search(self, site: str) -> SearchHandler:
        try:
            return self._search[site]
        except KeyError:
            raise UnknownHandlerError(
                f"No search handler for site {site!r}. Available: {sorted(self._search)}"
            ) from None

    def detail(self, site: str) -> DetailHandler:
        try:
            return self._detail[site]
        except KeyError:
            raise UnknownHandlerError(
                f"No detail handler for site {site!r}. Available: {sorted(self._detail)}"
            ) from None

    def list_sites(self) -> list[str]:
        return sorted(set(self._search) | set(self._detail))


def default_registry() -> HandlerRegistry:
    """Registry with every built-in storefront."""
    registry = HandlerRegistry()
    registry.register(KabumSearchHandler())
    registry.register(KabumProductHandler())
    return registry


__all__ = [
    "HandlerRegistry",
    "UnknownHandlerError",
    "default_registry",
]
