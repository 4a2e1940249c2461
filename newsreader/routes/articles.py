import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from newsreader.aggregator import FeedAggregator
from newsreader.schemas import Article, CacheStatus, FeedResponse, TranslationStatus

logger = logging.getLogger(__name__)

router = APIRouter()


def get_aggregator(request: Request) -> FeedAggregator:
    """FastAPI dependency returning the aggregator built in the app lifespan."""
    return request.app.state.aggregator


def paginate(articles: List[Article], page: int, limit: int, unable_to_load: bool) -> FeedResponse:
    start = (page - 1) * limit
    end = start + limit
    return FeedResponse(
        articles=articles[start:end],
        total_results=len(articles),
        has_more=end < len(articles),
        page=page,
        unable_to_load=unable_to_load,
    )


@router.get("/articles", response_model=FeedResponse)
async def list_articles(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    aggregator: FeedAggregator = Depends(get_aggregator),
):
    """
    Return one page of the feed, translated articles first.
    Served from the cache while the fetch window is closed.
    """
    result = await aggregator.fetch_all()
    logger.info(f"[/articles] Returning page {page} of {len(result.articles)} articles")
    return paginate(result.articles, page, limit, result.unable_to_load)


@router.post("/refresh", response_model=FeedResponse)
async def refresh(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    aggregator: FeedAggregator = Depends(get_aggregator),
):
    """Clear every cache and fetch all sources now, bypassing the fetch interval."""
    result = await aggregator.refresh_all()
    logger.info(f"[/refresh] Refreshed {len(result.articles)} articles")
    return paginate(result.articles, page, limit, result.unable_to_load)


@router.post("/articles/{article_id}/translate", response_model=Article)
async def translate_article(article_id: str, aggregator: FeedAggregator = Depends(get_aggregator)):
    """Translate (or retranslate) one cached article and return it."""
    article = aggregator.find_cached(article_id)
    if article is None:
        raise HTTPException(status_code=404, detail=f"Article '{article_id}' is not cached")
    return await aggregator.translate_one(article)


@router.get("/cache/status", response_model=CacheStatus)
def cache_status(aggregator: FeedAggregator = Depends(get_aggregator)):
    return aggregator.cache_status()


@router.get("/translation/status", response_model=TranslationStatus)
def translation_status(aggregator: FeedAggregator = Depends(get_aggregator)):
    return aggregator.translator.get_status()
