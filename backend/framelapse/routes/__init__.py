"""
API route modules.
"""

from framelapse.routes.projects import router as projects_router
from framelapse.routes.frames import router as frames_router

__all__ = [
    "projects_router",
    "frames_router",
]
