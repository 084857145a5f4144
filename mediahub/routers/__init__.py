# Routers package
from . import images_router
from . import admin_images_router

__all__ = [
    "images_router",
    "admin_images_router",
]
