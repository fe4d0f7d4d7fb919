from .memory import router as memory_router
from .settings import router as settings_router

__all__ = ["memory_router", "settings_router"]
