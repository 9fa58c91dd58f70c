from fastapi import APIRouter

from utils.response_wrapper import response_wrapper
from .views import audit_chunks, delete_chunk, list_chunks, put_chunk, retrieve_chunk, upload_chunk

router = APIRouter()

router.get("/api/v1/admin/audit")(response_wrapper(audit_chunks, 'Audit completed'))
router.post("/api/v1/chunks", status_code=201)(response_wrapper(upload_chunk, 'Chunk stored successfully'))
router.get("/api/v1/chunks")(response_wrapper(list_chunks))
# :path lets traversal attempts reach name validation instead of the router
router.put("/api/v1/chunks/{name:path}", status_code=201)(response_wrapper(put_chunk, 'Chunk stored successfully'))
router.get("/api/v1/chunks/{name:path}")(response_wrapper(retrieve_chunk))
router.delete("/api/v1/chunks/{name:path}")(response_wrapper(delete_chunk, 'Chunk deleted successfully'))
