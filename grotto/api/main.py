"""FastAPI app for the grotto daemon."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from grotto.daemon import process
from grotto.daemon.registry import SessionRegistry
from grotto.lib import config

from . import live, sessions

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = SessionRegistry(settings=config.settings())
    app.state.registry = registry
    process.write_pid()
    restored = await registry.load_persisted()
    if restored:
        logger.info(f"Restored {restored} session(s)")
    try:
        yield
    finally:
        await registry.close()
        process.remove_pid()


app = FastAPI(title="Grotto daemon", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions.router)
app.include_router(live.router)


@app.get("/health", response_class=PlainTextResponse)
async def health():
    return "ok"


def main(host: str | None = None, port: int | None = None):
    import uvicorn

    settings = config.settings()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "grotto.api.main:app",
        host=host or settings.host,
        port=port or settings.port,
        access_log=False,
    )


if __name__ == "__main__":
    main()
