# -*- coding: utf-8 -*-

# RelayGate
# Based on kiro-openai-gateway by Jwadow (https://github.com/Jwadow/kiro-openai-gateway)
# Original Copyright (C) 2025 Jwadow
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
RelayGate - unified OpenAI / Claude Messages gateway.

Application entry point. Creates FastAPI app and connects routes.

Usage:
    uvicorn main:app --host 0.0.0.0 --port 8000
    or directly:
    python main.py
"""

import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from loguru import logger

from relay_gateway.adaptors.registry import get_adaptor
from relay_gateway.apitype import APIType
from relay_gateway.config import APP_DESCRIPTION, APP_TITLE, APP_VERSION, LOG_LEVEL, settings
from relay_gateway.exceptions import RelayError, relay_exception_handler, validation_exception_handler
from relay_gateway.http_client import close_global_http_client
from relay_gateway.pricing import global_pricing_manager
from relay_gateway.redis_manager import redis_manager
from relay_gateway.routes import router
from relay_gateway.signature_cache import RedisSignatureBackend, get_signature_cache


# --- Loguru Configuration ---
logger.remove()
logger.add(
    sys.stderr,
    level=LOG_LEVEL,
    colorize=True,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


# --- Configuration Validation ---
def validate_configuration() -> None:
    """
    Logs the configured channel and warns about settings that will make
    every relayed request fail.
    """
    if get_adaptor(settings.channel_type) is None:
        logger.warning(f"CHANNEL_TYPE={settings.channel_type} has no adaptor, relay endpoints will fail")
        return

    try:
        channel = APIType(settings.channel_type).name.lower()
    except ValueError:
        channel = str(settings.channel_type)
    logger.info(f"Serving channel {settings.channel_id} ({channel})")
    if not settings.channel_api_key:
        logger.warning("CHANNEL_API_KEY is not set")


validate_configuration()


# --- Lifespan Manager ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages the application lifecycle.

    Starts:
    - the signature cache sweeper (with the Redis backend when REDIS_URL is set)
    - the global pricing registry
    """
    logger.info("Starting application...")
    app.state.is_shutting_down = False

    cache = get_signature_cache()
    if settings.redis_url:
        await redis_manager.initialize(settings.redis_url)
        if redis_manager.is_available:
            cache.set_backend(RedisSignatureBackend())
    await cache.start_cleanup(settings.signature_cache_cleanup_interval)

    models, adapters = global_pricing_manager.stats()
    logger.info(f"Global pricing registry: {models} models from {adapters} adapters")

    yield

    logger.info("Shutting down application.")
    app.state.is_shutting_down = True
    await cache.stop_cleanup()
    await redis_manager.close()
    await close_global_http_client()


# --- FastAPI application ---
app = FastAPI(
    title=APP_TITLE,
    description=APP_DESCRIPTION,
    version=APP_VERSION,
    lifespan=lifespan
)


# --- Exception handlers ---
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(RelayError, relay_exception_handler)


# --- Routes ---
app.include_router(router)


# --- Entry point ---
if __name__ == "__main__":
    import uvicorn
    logger.info("Starting Uvicorn server...")
    uvicorn.run(app, host="0.0.0.0", port=8000)
