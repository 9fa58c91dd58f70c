from typing import Optional

from fastapi import File, Form, Request, UploadFile
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from apps.chunks.schema import AuditReportOut, ChunkOut
from apps.context import get_context
from config.settings import STREAM_BLOCK_SIZE


async def _iter_upload(upload: UploadFile):
    while True:
        block = await upload.read(STREAM_BLOCK_SIZE)
        if not block:
            break
        yield block


async def upload_chunk(request: Request,
                       file: UploadFile = File(...),
                       name: Optional[str] = Form(None)):
    """Multipart upload; ``name`` defaults to the uploaded filename."""
    store = get_context(request).require_store()
    chunk_name = name if name is not None else (file.filename or '')
    record = await store.put(chunk_name, _iter_upload(file), file.content_type)
    return ChunkOut.model_validate(record)


async def put_chunk(request: Request, name: str):
    """Raw-body upload; the request's Content-Type is recorded as declared."""
    store = get_context(request).require_store()
    record = await store.put(name, request.stream(), request.headers.get('content-type'))
    return ChunkOut.model_validate(record)


async def list_chunks(request: Request):
    store = get_context(request).require_store()
    return [ChunkOut.model_validate(record) for record in await store.list()]


async def retrieve_chunk(request: Request, name: str):
    store = get_context(request).require_store()
    chunk = await store.get(name)
    return StreamingResponse(
        chunk.iter_bytes(),
        media_type=chunk.media_type,
        headers={'Content-Length': str(chunk.record.size)},
        # closes the file even if streaming never starts
        background=BackgroundTask(chunk.aclose),
    )


async def delete_chunk(request: Request, name: str):
    store = get_context(request).require_store()
    await store.delete(name)
    return {'name': name}


async def audit_chunks(request: Request):
    store = get_context(request).require_store()
    return AuditReportOut.model_validate(await store.audit())
