from .hubs import router

__all__ = ["router"]
