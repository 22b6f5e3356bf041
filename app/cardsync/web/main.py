from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cardsync import __version__
from cardsync.core.config import AppConfig, load_config
from cardsync.sync.db import init_db
from cardsync.web.api import router as api_router, start_runtime, stop_runtime
from cardsync.web.security import ControlApiAllowlist, resolve_allowed_nets

logger = logging.getLogger("web")


def build_app(cfg: AppConfig | None = None, *, with_runtime: bool = True) -> FastAPI:
    """Control API app; the lifespan owns the supervisor, scheduler and watcher.

    `with_runtime=False` serves the routes without touching AnkiConnect.
    """
    cfg = cfg or load_config()
    init_db(cfg.database.path)

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        if with_runtime:
            start_runtime(cfg)
        try:
            yield
        finally:
            if with_runtime:
                await stop_runtime()

    api = FastAPI(title="cardsync control API", version=__version__, lifespan=lifespan)
    api.add_middleware(ControlApiAllowlist, allowed_nets=resolve_allowed_nets(cfg.web_allowed_nets))
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    from cardsync.core.logging_setup import setup_logging

    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file)
    logger.info(
        "control_api_starting host=%s port=%s anki=%s",
        cfg.web_bind_host,
        cfg.web_port,
        cfg.ankiconnect.endpoint,
    )

    uvicorn.run(
        build_app(cfg),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
