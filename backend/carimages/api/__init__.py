from .images import router as images_router
from .links import router as links_router

__all__ = [
    "images_router",
    "links_router",
]
