import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from newsreader.aggregator import FeedAggregator
from newsreader.config import settings
from newsreader.database import make_engine
from newsreader.governor import FetchGovernor
from newsreader.routes.articles import router
from newsreader.store import ArticleStore
from newsreader.translation import TranslationGateway

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _log_cache_change(changed: bool):
    if changed:
        logger.debug("Article cache changed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    logger.info("Opening article cache...")
    store = ArticleStore(make_engine(settings.DATABASE_URL))
    store.initialize()  # a broken database only means starting with an empty cache
    store.updates.subscribe(_log_cache_change)

    client = httpx.AsyncClient(
        follow_redirects=True,
        headers={"User-Agent": settings.USER_AGENT},
        timeout=settings.HTTP_TIMEOUT,
    )
    app.state.aggregator = FeedAggregator(
        store=store,
        governor=FetchGovernor(store),
        translator=TranslationGateway.from_settings(client),
        client=client,
    )

    yield

    # --- Shutdown ---
    logger.info("Closing HTTP client...")
    await client.aclose()


app = FastAPI(
    title="German News Reader API",
    description="German news feeds, cached and translated to English.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)
