"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import ops
from app.api.errors import install_error_handlers
from app.api.middleware_request_id import RequestIdMiddleware
from app.infra import postgres
from app.infra.redis import redis_client
from app.moderation import configure_postgres as configure_moderation
from app.moderation import router as moderation_router
from app.obs import init as obs_init
from app.obs import install as obs_install
from app.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = await postgres.init_pool()
	if pool is not None:
		configure_moderation(pool, redis_client)
	else:
		logger.warning("no postgres pool; moderation runs on in-memory stores")
	try:
		yield
	finally:
		await postgres.close_pool()


app = FastAPI(title="Moderation API", lifespan=lifespan)
obs_init(app)
install_error_handlers(app)

allow_origins = list(settings.cors_origins())
if not allow_origins and settings.is_dev():
	allow_origins = ["http://localhost:3000"]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)
obs_install(app)
# Added last so it runs first and the request id is set before instrumentation.
app.add_middleware(RequestIdMiddleware)

app.include_router(ops.router)
app.include_router(moderation_router, tags=["moderation"])
