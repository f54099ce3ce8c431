from fastapi import APIRouter

from linkpreview.api.open_graph.routes import router as open_graph_router

router = APIRouter()
router.include_router(open_graph_router)
