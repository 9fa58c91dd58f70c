from fastapi import APIRouter

from utils.response_wrapper import response_wrapper
from .views import health, list_static_chunks, serve_chunk

router = APIRouter()

router.get("/")(health)
router.get("/chunks")(response_wrapper(list_static_chunks))
router.get("/chunks/{script_id}")(serve_chunk)
