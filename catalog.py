"""
Product catalog browser.

Browse mode pages through products with keyset cursors ("start after the last
product of the previous page"). The store has no cheap offsets, so reaching
page N without cursors for the pages before it replays the query page by page.
Search mode bypasses pagination and asks the search index instead.
"""
import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from config import (
    FEATURED_PRODUCTS_LIMIT,
    NEWEST_SORT_FIELD,
    PRODUCTS_PER_PAGE,
    SEARCH_HITS_PER_PAGE,
    SEARCH_SERVER_SIDE_STATUS_FILTER,
)
from database import PRODUCTS, collection, doc_to_public
from search import ProductSearchIndex, SearchHit, SearchResult, filter_active

logger = logging.getLogger(__name__)

ALL_CATEGORIES = "All"


@dataclass(frozen=True)
class SortOption:
    label: str
    field: str
    direction: int

    @property
    def token(self) -> str:
        return f"{self.field}-{'asc' if self.direction == ASCENDING else 'desc'}"


SORT_OPTIONS = [
    SortOption("Newest First", NEWEST_SORT_FIELD, DESCENDING),
    SortOption("Oldest First", NEWEST_SORT_FIELD, ASCENDING),
    SortOption("Name (A-Z)", "name", ASCENDING),
    SortOption("Name (Z-A)", "name", DESCENDING),
    SortOption("Most Popular", "sales_count", DESCENDING),
]
DEFAULT_SORT = SORT_OPTIONS[0]
ADMIN_DEFAULT_SORT = SortOption("Newest First", "created_at", DESCENDING)

Cursor = Tuple[Any, Any]


def parse_sort(token: Optional[str], default: SortOption = DEFAULT_SORT) -> SortOption:
    """Resolve a ``field-direction`` URL token; unknown tokens fall back to the default."""
    if not token or "-" not in token:
        return default
    field, _, direction = token.rpartition("-")
    directions = {"asc": ASCENDING, "desc": DESCENDING}
    if direction not in directions:
        return default
    for option in [default, *SORT_OPTIONS]:
        if option.field == field and option.direction == directions[direction]:
            return option
    return default


def parse_page(value: Union[str, int, None]) -> int:
    try:
        page = int(value)
    except (TypeError, ValueError):
        return 1
    return max(page, 1)


class CursorCache:
    """Page -> cursor map for one (filters, sort) ordering at a time.

    One user's requests share it across worker threads, so every access holds
    the lock. Moving to a different ordering drops the previous cursors.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._key: Optional[Hashable] = None
        self._cursors: Dict[int, Cursor] = {}

    def pages(self, key: Hashable) -> Dict[int, Cursor]:
        with self._lock:
            return dict(self._cursors) if key == self._key else {}

    def remember(self, key: Hashable, page: int, cursor: Cursor):
        with self._lock:
            if key != self._key:
                self._key = key
                self._cursors = {}
            self._cursors[page] = cursor

    def clear(self):
        with self._lock:
            self._key = None
            self._cursors = {}


class CursorPaginator:
    """Pages of one (filters, sort) result ordering, with a page -> cursor cache.

    Documents missing the sort field (or holding null) sort before every value
    ascending and after every value descending, the way the store orders them.
    """

    def __init__(self, collection, filters: Dict[str, Any], sort: SortOption, page_size: int,
                 cache: Optional[CursorCache] = None):
        self.collection = collection
        self.filters = dict(filters)
        self.sort = sort
        self.page_size = page_size
        self.cache = cache if cache is not None else CursorCache()
        self.key = (tuple(sorted(self.filters.items())), sort.token, page_size)

    @property
    def cached_pages(self) -> List[int]:
        return sorted(self.cache.pages(self.key))

    def count(self) -> int:
        return self.collection.count_documents(self.filters)

    def fetch(self, page: int) -> List[dict]:
        cursors = self.cache.pages(self.key)
        if page <= 1:
            docs = self._query(None)
        elif page - 1 in cursors:
            docs = self._query(cursors[page - 1])
        else:
            docs = self._replay_to(page, cursors)
        self._remember(max(page, 1), docs)
        return docs

    def _replay_to(self, page: int, cursors: Dict[int, Cursor]) -> List[dict]:
        # resume from the nearest cached page below the target, page 1 when cold
        start = max((p for p in cursors if p < page - 1), default=0)
        after = cursors.get(start)
        for current in range(start + 1, page):
            docs = self._query(after)
            if not docs:
                break
            self._remember(current, docs)
            after = self._cursor_of(docs)
        return self._query(after)

    def _cursor_of(self, docs: List[dict]) -> Cursor:
        last = docs[-1]
        return last.get(self.sort.field), last["_id"]

    def _remember(self, page: int, docs: List[dict]):
        if docs:
            self.cache.remember(self.key, page, self._cursor_of(docs))

    def _keyset(self, after: Cursor) -> Dict[str, Any]:
        field = self.sort.field
        value, last_id = after
        ascending = self.sort.direction == ASCENDING
        op = "$gt" if ascending else "$lt"
        if value is None:
            branches = [{field: None, "_id": {op: last_id}}]
            if ascending:
                branches.append({field: {"$ne": None}})
        else:
            branches = [{field: {op: value}}, {field: value, "_id": {op: last_id}}]
            if not ascending:
                branches.append({field: None})
        return {"$or": branches}

    def _query(self, after: Optional[Cursor]) -> List[dict]:
        query = dict(self.filters)
        if after is not None:
            keyset = self._keyset(after)
            query = {"$and": [query, keyset]} if query else keyset
        cursor = (
            self.collection.find(query)
            .sort([(self.sort.field, self.sort.direction), ("_id", self.sort.direction)])
            .limit(self.page_size)
        )
        return list(cursor)


class BrowseSession:
    """What one user's listing keeps between requests: its cursors and last URL state."""

    def __init__(self):
        self.cursors = CursorCache()
        self._lock = threading.Lock()
        self._params: Dict[str, str] = {}

    def last_params(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._params)

    def remember(self, params: Mapping[str, str]):
        with self._lock:
            self._params = dict(params)


class CatalogView(BaseModel):
    mode: str
    items: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    total_pages: int = 0
    page: int = 1
    page_size: int = PRODUCTS_PER_PAGE
    category: str = ALL_CATEGORIES
    categories: List[str] = Field(default_factory=lambda: [ALL_CATEGORIES])
    sort: str = DEFAULT_SORT.token
    sort_options: List[Dict[str, str]] = Field(default_factory=list)
    search_query: str = ""
    show_pagination: bool = False
    query_params: Dict[str, str] = Field(default_factory=dict)
    url: str = "/products"
    scroll_to_top: bool = False
    clear_search_params: Optional[Dict[str, str]] = None
    error: Optional[str] = None


class CatalogBrowser:
    """State of one product listing: category, sort, page and search text.

    A browser serves one request at a time. Requests from the same user share
    only a ``BrowseSession``, whose cursor cache belongs to the current
    (category, sort) pair and is dropped whenever either changes.
    """

    def __init__(self, db, search_index: Optional[ProductSearchIndex] = None, page_size: int = PRODUCTS_PER_PAGE,
                 active_only: bool = True, default_sort: SortOption = DEFAULT_SORT, path: str = "/products",
                 cursor_cache: Optional[CursorCache] = None):
        self.collection = collection(db, PRODUCTS)
        self.cursor_cache = cursor_cache if cursor_cache is not None else CursorCache()
        self.search_index = search_index or ProductSearchIndex(db)
        self.page_size = page_size
        self.active_only = active_only
        self.default_sort = default_sort
        self.path = path

        self.category = ALL_CATEGORIES
        self.sort = default_sort
        self.page = 1
        self.search_query = ""

        self.categories = [ALL_CATEGORIES]
        self._categories_loaded = False
        self._paginator: Optional[CursorPaginator] = None

        self.products: List[dict] = []
        self.total = 0
        self.search_hits: List[SearchHit] = []
        self.loading = False
        self.error: Optional[str] = None
        self.scroll_to_top = False

    @classmethod
    def for_request(cls, db, session: BrowseSession, params: Mapping[str, Any], **options) -> "CatalogBrowser":
        """A browser for one request, moved from the user's previous URL state to ``params``."""
        browser = cls(db, cursor_cache=session.cursors, **options)
        browser._restore(session.last_params())
        browser.apply_params(params)
        session.remember(browser.query_params())
        return browser

    @property
    def base_filters(self) -> Dict[str, Any]:
        return {"status": "active"} if self.active_only else {}

    @property
    def filters(self) -> Dict[str, Any]:
        filters = self.base_filters
        if self.category != ALL_CATEGORIES:
            filters["category"] = self.category
        return filters

    @property
    def is_search_mode(self) -> bool:
        return bool(self.search_query.strip())

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    @property
    def paginator(self) -> CursorPaginator:
        if self._paginator is None:
            self._paginator = CursorPaginator(self.collection, self.filters, self.sort, self.page_size,
                                               cache=self.cursor_cache)
        return self._paginator

    def invalidate_cursors(self):
        self._paginator = None

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def set_category(self, category: str):
        self.scroll_to_top = False
        if category != self.category:
            self.invalidate_cursors()
            self.category = category
            self.page = 1

    def set_sort(self, sort: Union[SortOption, str]):
        self.scroll_to_top = False
        if isinstance(sort, str):
            sort = parse_sort(sort, self.default_sort)
        if sort != self.sort:
            self.invalidate_cursors()
            self.sort = sort
            self.page = 1

    def set_page(self, page: int):
        self.scroll_to_top = False
        page = max(int(page), 1)
        if page != self.page:
            self.page = page
            self.scroll_to_top = True

    def set_search(self, text: str):
        self.scroll_to_top = False
        self.search_query = text
        if text.strip():
            self.page = 1

    def clear_search(self):
        self.scroll_to_top = False
        self.search_query = ""
        self.search_hits = []

    def apply_params(self, params: Mapping[str, Any]):
        """Seed state from URL query parameters (a load or deep link)."""
        category = params.get("category") or ALL_CATEGORIES
        sort = parse_sort(params.get("sort"), self.default_sort)
        page = parse_page(params.get("page"))
        search = (params.get("q") or "").strip()
        if search:
            page = 1

        page_only = category == self.category and sort == self.sort and search == self.search_query.strip()
        if category != self.category or sort != self.sort:
            self.invalidate_cursors()
        self.scroll_to_top = page_only and page != self.page

        self.category = category
        self.sort = sort
        self.page = page
        self.search_query = search
        if not search:
            self.search_hits = []
        self._categories_loaded = False

    def _restore(self, params: Mapping[str, Any]):
        self.category = params.get("category") or ALL_CATEGORIES
        self.sort = parse_sort(params.get("sort"), self.default_sort)
        self.page = parse_page(params.get("page"))
        self.search_query = params.get("q") or ""

    def query_params(self) -> Dict[str, str]:
        """URL parameters for the current state, omitting every default."""
        params: Dict[str, str] = {}
        if self.search_query.strip():
            params["q"] = self.search_query.strip()
        if self.category != ALL_CATEGORIES:
            params["category"] = self.category
        if self.page > 1:
            params["page"] = str(self.page)
        if self.sort != self.default_sort:
            params["sort"] = self.sort.token
        return params

    def url(self) -> str:
        params = self.query_params()
        return f"{self.path}?{urlencode(params)}" if params else self.path

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_categories(self, refresh: bool = False) -> List[str]:
        if self._categories_loaded and not refresh:
            return self.categories
        try:
            found = {
                doc["category"]
                for doc in self.collection.find(self.base_filters, {"category": 1})
                if doc.get("category")
            }
        except PyMongoError:
            logger.exception("Error fetching categories")
            return self.categories
        self.categories = [ALL_CATEGORIES, *sorted(found, key=str.casefold)]
        self._categories_loaded = True
        return self.categories

    def load(self) -> CatalogView:
        self.load_categories()
        if self.is_search_mode:
            self._load_search()
        else:
            self._load_browse()
        return self.view()

    def run_search(self, text: str) -> SearchResult:
        filters = {"status": "active"} if self.active_only and SEARCH_SERVER_SIDE_STATUS_FILTER else None
        result = self.search_index.search(text, hits_per_page=SEARCH_HITS_PER_PAGE, filters=filters)
        hits = filter_active(result.hits) if self.active_only else result.hits
        return SearchResult(hits=hits, nb_hits=result.nb_hits, nb_pages=result.nb_pages, page=result.page)

    def _load_browse(self):
        self.loading = True
        self.error = None
        try:
            paginator = self.paginator
            self.total = paginator.count()
            self.products = [doc_to_public(doc) for doc in paginator.fetch(self.page)]
        except PyMongoError:
            logger.exception("Error fetching products (category=%s, sort=%s, page=%d)",
                             self.category, self.sort.token, self.page)
            self.error = "Products could not be loaded. Showing the last results."
        finally:
            self.loading = False

    def _load_search(self):
        self.loading = True
        self.error = None
        try:
            self.search_hits = self.run_search(self.search_query).hits
        finally:
            self.loading = False

    def view(self) -> CatalogView:
        params = self.query_params()
        view = CatalogView(
            mode="search" if self.is_search_mode else "browse",
            page=self.page,
            page_size=self.page_size,
            category=self.category,
            categories=list(self.categories),
            sort=self.sort.token,
            sort_options=[{"label": o.label, "token": o.token} for o in SORT_OPTIONS],
            search_query=self.search_query,
            query_params=params,
            url=self.url(),
            scroll_to_top=self.scroll_to_top,
            error=self.error,
        )
        if self.is_search_mode:
            view.items = [hit.to_product_card() for hit in self.search_hits]
            view.total = len(self.search_hits)
            view.clear_search_params = {k: v for k, v in params.items() if k != "q"}
        else:
            view.items = list(self.products)
            view.total = self.total
            view.total_pages = self.total_pages
            view.show_pagination = self.total_pages > 1
        return view


def featured_products(db, limit: int = FEATURED_PRODUCTS_LIMIT) -> List[dict]:
    cursor = db[PRODUCTS].find({"status": "active", "featured": True}).limit(limit)
    return [doc_to_public(doc) for doc in cursor]


def get_product_by_slug(db, slug: str, active_only: bool = True) -> Optional[dict]:
    query: Dict[str, Any] = {"slug": slug}
    if active_only:
        query["status"] = "active"
    return doc_to_public(db[PRODUCTS].find_one(query))
