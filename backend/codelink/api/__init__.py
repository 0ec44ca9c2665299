"""API routers for CodeLink."""

from codelink.api.linkage import router as linkage_router
from codelink.api.search import router as search_router

__all__ = [
    "linkage_router",
    "search_router",
]
