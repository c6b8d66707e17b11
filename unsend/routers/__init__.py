"""HTTP routers. Handlers translate requests; the Relay does the work."""

from unsend.routers.files import create_files_router
from unsend.routers.transport import create_transport_router

__all__ = ["create_files_router", "create_transport_router"]
