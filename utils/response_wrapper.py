import functools
from typing import Any, Callable

from fastapi.encoders import jsonable_encoder
from starlette.responses import Response


def response_wrapper(func: Callable[..., Any], message: str = 'Success') -> Callable[..., Any]:
    """Wrap a view's return value in the ``{"message": ..., "data": ...}`` envelope.

    Views that build their own Response (file and byte streams) pass through
    untouched. ``functools.wraps`` keeps the view's signature visible to
    FastAPI's dependency injection.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        result = await func(*args, **kwargs)
        if isinstance(result, Response):
            return result
        return {'message': message, 'data': jsonable_encoder(result)}

    return wrapper
