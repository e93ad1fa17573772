import logging
import os
import sys

# ----------------------------------------------------------------------------
# Auth (tokens are issued by the hosted identity provider)
# ----------------------------------------------------------------------------

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE") or None

# ----------------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------------

PRODUCTS_PER_PAGE = int(os.getenv("PRODUCTS_PER_PAGE", "16"))
ADMIN_PRODUCTS_PER_PAGE = int(os.getenv("ADMIN_PRODUCTS_PER_PAGE", "16"))
FEATURED_PRODUCTS_LIMIT = 4

# "Newest/Oldest First" historically sorted on sku; set to "sku" to restore that.
NEWEST_SORT_FIELD = os.getenv("NEWEST_SORT_FIELD", "created_at")

SEARCH_INDEX_NAME = os.getenv("SEARCH_INDEX_NAME", "products")
SEARCH_HITS_PER_PAGE = int(os.getenv("SEARCH_HITS_PER_PAGE", "16"))
SEARCH_DEBOUNCE_SECONDS = float(os.getenv("SEARCH_DEBOUNCE_SECONDS", "0.3"))
SEARCH_SERVER_SIDE_STATUS_FILTER = os.getenv("SEARCH_SERVER_SIDE_STATUS_FILTER", "false").lower() in ("1", "true", "yes")

# ----------------------------------------------------------------------------
# Store / notifications
# ----------------------------------------------------------------------------

STORE_NAME = os.getenv("STORE_NAME", "Lucky Bee Press")
OWNER_EMAIL = os.getenv("OWNER_EMAIL", "orders@luckybeepress.com")
ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "LBP")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging():
    """Configure the root logger once for the API process and the worker."""
    root = logging.getLogger()
    root.setLevel(LOG_LEVEL)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"))
        root.addHandler(handler)
