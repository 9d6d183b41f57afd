"""
Threadline API Routes Package.

Route handlers organized by domain. Import routers from here for
registration with the FastAPI app.

Example:
    from api.routes import contacts_router, messages_router

    app.include_router(contacts_router)
    app.include_router(messages_router)
"""

from api.routes.contacts import router as contacts_router
from api.routes.messages import router as messages_router


__all__ = [
    "contacts_router",
    "messages_router",
]
