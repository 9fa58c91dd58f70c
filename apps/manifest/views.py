from fastapi import Request
from fastapi.responses import FileResponse, PlainTextResponse

from apps.context import get_context
from config.settings import CACHE_CONTROL


async def health(request: Request):
    return PlainTextResponse('Chunk Server is up')


async def list_static_chunks(request: Request):
    return await get_context(request).resolver.list_static_files()


async def serve_chunk(request: Request, script_id: str):
    path = await get_context(request).resolver.resolve(script_id)
    # hashed filenames never change content, so clients may cache forever
    return FileResponse(path, headers={'Cache-Control': CACHE_CONTROL})
