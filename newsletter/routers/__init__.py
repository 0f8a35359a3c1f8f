"""
API routers package
"""

from newsletter.routers.newsletters import router as newsletters_router
