from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import MAX_PAGE_SIZE
from .errors import BackupToolError, ListingError
from .graph_client import GraphClient

logger = logging.getLogger(__name__)

NEXT_LINK = "@odata.nextLink"


@dataclass(frozen=True)
class ListQuery:
    """A Graph collection query.

    ``eventual_consistency`` sends ``ConsistencyLevel: eventual``, which Graph
    requires for ``$count``, ``$search`` and most ``$orderby``/``$filter``
    combinations on directory objects.
    """

    path: str
    filter: Optional[str] = None
    select: Sequence[str] = field(default_factory=tuple)
    orderby: Optional[str] = None
    top: Optional[int] = None
    count: bool = False
    eventual_consistency: bool = False

    def params(self, page_size: int) -> Dict[str, str]:
        params: Dict[str, str] = {"$top": str(min(self.top or page_size, page_size, MAX_PAGE_SIZE))}
        if self.filter:
            params["$filter"] = self.filter
        if self.select:
            params["$select"] = ",".join(self.select)
        if self.orderby:
            params["$orderby"] = self.orderby
        if self.count:
            params["$count"] = "true"
        return params

    def headers(self) -> Dict[str, str]:
        return {"ConsistencyLevel": "eventual"} if self.eventual_consistency else {}


class PaginatedFetcher:
    """Follows ``@odata.nextLink`` until Graph stops returning one.

    The result is all-or-nothing: a failing page raises ``ListingError`` and
    the pages collected so far are discarded.
    """

    def __init__(self, graph: GraphClient, page_size: int = MAX_PAGE_SIZE):
        self.graph = graph
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))

    def fetch_all(self, query: ListQuery) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        headers = query.headers()
        seen_links = set()
        next_link: Optional[str] = None
        page = 0

        while True:
            page += 1
            try:
                if next_link is None:
                    response = self.graph.get(
                        query.path, params=query.params(self.page_size), headers=headers
                    )
                else:
                    response = self.graph.get(next_link, headers=headers)
                payload = response.json()
            except (BackupToolError, httpx.HTTPError, ValueError, RuntimeError) as exc:
                raise ListingError(f"Listing {query.path} failed on page {page}: {exc}") from exc
            if not isinstance(payload, dict):
                raise ListingError(f"Listing {query.path} returned a malformed page {page}")

            values = payload.get("value") or []
            items.extend(values)
            next_link = payload.get(NEXT_LINK)

            if not next_link:
                break
            if not values:
                logger.debug("Page %s of %s was empty but carried a next link; stopping", page, query.path)
                break
            if next_link in seen_links:
                logger.debug("Next link for %s repeated; stopping", query.path)
                break
            seen_links.add(next_link)

        logger.debug("Fetched %s items from %s in %s pages", len(items), query.path, page)
        return items
