from keypool_app.routers.admin_api import router as admin_router

__all__ = ["admin_router"]
