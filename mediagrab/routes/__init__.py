from .api import api_router
from .tunnel import tunnel_router

__all__ = ["api_router", "tunnel_router"]
