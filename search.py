"""
Product search adapter.

The search index is queried by free text over name, sku and category and
returns a fixed projection of product attributes. The index is not trusted to
be in sync with product status, so callers filter hits with ``filter_active``.
"""
import asyncio
import logging
import math
import re
from typing import Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from config import SEARCH_DEBOUNCE_SECONDS, SEARCH_INDEX_NAME

logger = logging.getLogger(__name__)

SEARCHABLE_ATTRIBUTES = ("name", "sku", "category")
ATTRIBUTES_TO_RETRIEVE = (
    "name",
    "sku",
    "category",
    "slug",
    "images",
    "wholesale_price",
    "retail_price",
    "has_box_option",
    "box_wholesale_price",
    "inventory",
    "status",
)


class SearchHit(BaseModel):
    id: str
    name: str = ""
    sku: str = ""
    category: str = ""
    slug: str = ""
    images: List[str] = Field(default_factory=list)
    wholesale_price: Optional[int] = None
    retail_price: Optional[int] = None
    has_box_option: Optional[bool] = None
    box_wholesale_price: Optional[int] = None
    inventory: Optional[int] = None
    status: Optional[str] = None

    def to_product_card(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "sku": self.sku,
            "category": self.category,
            "wholesale_price": self.wholesale_price or 0,
            "retail_price": self.retail_price or 0,
            "has_box_option": bool(self.has_box_option),
            "box_wholesale_price": self.box_wholesale_price,
            "images": self.images or [],
            "inventory": self.inventory or 0,
            "status": self.status or "active",
        }


class SearchResult(BaseModel):
    hits: List[SearchHit] = Field(default_factory=list)
    nb_hits: int = 0
    nb_pages: int = 0
    page: int = 0


def filter_active(hits: List[SearchHit]) -> List[SearchHit]:
    # hits without a status predate status indexing and count as active
    return [hit for hit in hits if hit.status == "active" or not hit.status]


class ProductSearchIndex:
    def __init__(self, db, index_name: str = SEARCH_INDEX_NAME):
        self.index = db[index_name]
        self.index_name = index_name

    def search(self, query: str, hits_per_page: int = 20, page: int = 0,
               filters: Optional[Dict[str, object]] = None) -> SearchResult:
        if not query or not query.strip():
            return SearchResult()

        pattern = re.escape(query.strip())
        text_match = {"$or": [{attr: {"$regex": pattern, "$options": "i"}} for attr in SEARCHABLE_ATTRIBUTES]}
        mongo_query = {"$and": [text_match, dict(filters)]} if filters else text_match
        projection = {attr: 1 for attr in ATTRIBUTES_TO_RETRIEVE}

        try:
            nb_hits = self.index.count_documents(mongo_query)
            cursor = (
                self.index.find(mongo_query, projection)
                .sort([("name", 1), ("_id", 1)])
                .skip(page * hits_per_page)
                .limit(hits_per_page)
            )
            hits = [
                SearchHit(id=str(doc.pop("_id")), **{k: v for k, v in doc.items() if v is not None})
                for doc in cursor
            ]
        except PyMongoError:
            logger.exception("Search on index %r failed for query %r", self.index_name, query)
            return SearchResult()

        return SearchResult(
            hits=hits,
            nb_hits=nb_hits,
            nb_pages=math.ceil(nb_hits / hits_per_page) if hits_per_page else 0,
            page=page,
        )


ResultCallback = Callable[[str, SearchResult], Awaitable[None]]


class SearchDebouncer:
    """Trailing debounce over a blocking search function.

    Every ``submit`` restarts the timer and takes a new sequence number. A
    result is delivered only if its sequence number is still the latest, so a
    slow earlier search can never overwrite a faster later one.
    """

    def __init__(self, search: Callable[[str], SearchResult], on_results: ResultCallback,
                 delay: float = SEARCH_DEBOUNCE_SECONDS):
        self._search = search
        self._on_results = on_results
        self.delay = delay
        self._sequence = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Future] = set()

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def pending(self) -> bool:
        return self._timer is not None or bool(self._tasks)

    def submit(self, text: str) -> int:
        self._sequence += 1
        sequence = self._sequence
        self._cancel_timer()
        if not text.strip():
            self._spawn(self._deliver(sequence, text, SearchResult()))
            return sequence
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._fire, sequence, text)
        return sequence

    def close(self):
        self._cancel_timer()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, sequence: int, text: str):
        self._timer = None
        self._spawn(self._run(sequence, text))

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, sequence: int, text: str):
        result = await asyncio.to_thread(self._search, text)
        await self._deliver(sequence, text, result)

    async def _deliver(self, sequence: int, text: str, result: SearchResult):
        if sequence != self._sequence:
            logger.debug("Discarding stale search #%d for %r", sequence, text)
            return
        try:
            await self._on_results(text, result)
        except Exception:
            logger.exception("Delivering search results for %r failed", text)
