# catalog_sync/remote/lookup.py
# Bounded lookup strategy for list endpoints whose filtering contract is not
# documented: which query parameters to try, in which order, and how far to
# page before giving up.
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from catalog_sync.config import settings


@dataclass
class LookupStrategy:
    filter_params: Tuple[str, ...] = ("sku", "search", "query", "keyword")
    page_params: Tuple[Tuple[str, str], ...] = (
        ("page", "limit"),
        ("page", "perPage"),
        ("page", "per_page"),
        ("pageNumber", "pageSize"),
    )
    page_size: int = 100
    max_pages: int = 5

    # spellings that already worked against this backend; tried first next time
    _filter_hit: Optional[str] = field(default=None, repr=False)
    _page_hit: Optional[Tuple[str, str]] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, max_pages: Optional[int] = None) -> "LookupStrategy":
        pages = [tuple(p) for p in settings.LOOKUP_PAGE_PARAMS if isinstance(p, (list, tuple)) and len(p) == 2]
        return cls(
            filter_params=tuple(str(p) for p in settings.LOOKUP_FILTER_PARAMS) or cls.filter_params,
            page_params=tuple(pages) or cls.page_params,
            page_size=max(1, settings.LOOKUP_PAGE_SIZE),
            max_pages=max(1, max_pages if max_pages is not None else settings.FIND_BY_KEY_MAX_PAGES),
        )

    def with_filters(self, filter_params: Sequence[str], max_pages: Optional[int] = None) -> "LookupStrategy":
        """Same pagination knowledge, different filter names (e.g. productId for sub-resources)."""
        return LookupStrategy(
            filter_params=tuple(filter_params),
            page_params=self.page_params,
            page_size=self.page_size,
            max_pages=max_pages if max_pages is not None else self.max_pages,
            _page_hit=self._page_hit,
        )

    def filter_order(self) -> List[str]:
        names = list(self.filter_params)
        if self._filter_hit in names:
            names.remove(self._filter_hit)
            names.insert(0, self._filter_hit)
        return names

    def page_order(self) -> List[Tuple[str, str]]:
        spellings = list(self.page_params)
        if self._page_hit in spellings:
            spellings.remove(self._page_hit)
            spellings.insert(0, self._page_hit)
        return spellings

    def pages(self, spelling: Tuple[str, str]) -> Iterator[Dict[str, int]]:
        page_key, size_key = spelling
        for page in range(1, self.max_pages + 1):
            yield {page_key: page, size_key: self.page_size}

    def remember_filter(self, name: str) -> None:
        self._filter_hit = name

    def remember_pages(self, spelling: Tuple[str, str]) -> None:
        self._page_hit = spelling
