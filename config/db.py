"""Tortoise ORM setup for the chunk registry."""
from typing import Optional

from fastapi import FastAPI
from tortoise import Tortoise, connections
from tortoise.contrib.fastapi import RegisterTortoise

from config.logging_config import get_logger
from config.settings import DATABASE_URL

logger = get_logger(__name__)

MODELS_MODULES = ['apps.chunks.models']

# Server backends get a bounded pool unless the URL sets one.
DEFAULT_POOL_MAXSIZE = 5


def _with_pool_bound(database_url: str) -> str:
    if not database_url.startswith(('postgres://', 'postgresql://', 'asyncpg://', 'psycopg://')):
        return database_url
    if 'maxsize=' in database_url:
        return database_url
    sep = '&' if '?' in database_url else '?'
    return f'{database_url}{sep}maxsize={DEFAULT_POOL_MAXSIZE}'


def build_tortoise_config(database_url: str) -> dict:
    return {
        'connections': {'default': _with_pool_bound(database_url)},
        'apps': {
            'models': {
                'models': MODELS_MODULES,
                'default_connection': 'default',
            },
        },
    }


def _require_url(database_url: Optional[str]) -> str:
    url = database_url or DATABASE_URL
    if not url:
        raise ValueError('No database URL configured')
    return url


def register_db(app: FastAPI, database_url: Optional[str] = None) -> RegisterTortoise:
    """Tortoise lifecycle bound to the application; use as ``async with`` inside the lifespan.

    Connections opened here stay visible to request handlers, which run in
    tasks other than the lifespan's.
    """
    url = _require_url(database_url)
    logger.info("Registering registry database: %s", url)
    return RegisterTortoise(app, config=build_tortoise_config(url), generate_schemas=True)


async def init_db(database_url: Optional[str] = None, generate_schemas: bool = True) -> None:
    """Initialise Tortoise in the current task, for scripts and tests outside the app."""
    url = _require_url(database_url)
    await Tortoise.init(config=build_tortoise_config(url))
    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)
    logger.info("Registry database initialised: %s", url)


async def close_db() -> None:
    await connections.close_all()
    logger.info("Registry database connections closed")
