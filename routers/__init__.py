from .activity_api import router as activity_api_router
from .borrows_api import router as borrows_api_router
from .inventory_api import router as inventory_api_router
from .requests_api import router as requests_api_router

ALL_ROUTERS = (
    inventory_api_router,
    requests_api_router,
    borrows_api_router,
    activity_api_router,
)
