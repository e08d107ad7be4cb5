import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from urllib.parse import urlparse

import aio_pika
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import (
    CACHE_MAX_ENTRIES,
    CACHE_TTL_MS,
    CORS_ALLOW_ORIGINS,
    FALLBACK_PROXY,
    FALLBACK_TTL_MS,
    FETCH_WORKERS,
    LOG_LEVEL,
    MAX_RETRIES,
    PORT,
    PREVIEW_QUEUE_ENABLED,
    RABBITMQ_URL,
    REQUEST_TIMEOUT,
    USER_AGENT,
)
from models.preview import ErrorResponse, MetadataRecord
from services.cache import MetadataCache
from services.language import is_supported_lang

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("ogp-service")

PREVIEW_JOBS_QUEUE = "preview_jobs"
PREVIEW_RESULTS_QUEUE = "preview_results"


def job_result(url_id, record: MetadataRecord) -> dict:
    return {
        "urlId": url_id,
        "title": record.title,
        "description": record.description,
        "image": record.image,
        "favicon": record.favicon,
        "siteName": record.site_name,
        "isFallback": record.is_fallback,
        "fetchedAt": datetime.now(timezone.utc).isoformat(),
    }


async def consume_preview_jobs(cache: MetadataCache):
    retry_interval = 2.0
    while True:
        try:
            connection = await aio_pika.connect_robust(RABBITMQ_URL)
            async with connection:
                channel = await connection.channel()
                jobs_queue = await channel.declare_queue(PREVIEW_JOBS_QUEUE, durable=True)
                await channel.declare_queue(PREVIEW_RESULTS_QUEUE, durable=True)

                logger.info("Connected to RabbitMQ, consuming preview jobs")

                async with jobs_queue.iterator() as queue_iter:
                    async for message in queue_iter:
                        async with message.process():
                            data = json.loads(message.body)
                            url_id = data["urlId"]
                            record = await cache.get(data["originalUrl"], data.get("lang"))
                            if record is None:
                                logger.warning("Preview job without a URL skipped", extra={"urlId": url_id})
                                continue

                            await channel.default_exchange.publish(
                                aio_pika.Message(
                                    body=json.dumps(job_result(url_id, record)).encode(),
                                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                                ),
                                routing_key=PREVIEW_RESULTS_QUEUE,
                            )
                            logger.info("Preview result published", extra={"urlId": url_id})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"RabbitMQ consumer error, retrying in {retry_interval}s: {exc}")
            await asyncio.sleep(retry_interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    cache = app.state.metadata_cache
    task = asyncio.create_task(consume_preview_jobs(cache)) if PREVIEW_QUEUE_ENABLED else None
    yield
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    cache.close()


app = FastAPI(title="OGP Service", version="1.0.0", lifespan=lifespan)
app.state.metadata_cache = MetadataCache(
    ttl=CACHE_TTL_MS / 1000,
    fallback_ttl=FALLBACK_TTL_MS / 1000,
    max_entries=CACHE_MAX_ENTRIES,
    user_agent=USER_AGENT,
    proxy_template=FALLBACK_PROXY,
    max_retries=MAX_RETRIES,
    timeout=REQUEST_TIMEOUT,
    fetch_workers=FETCH_WORKERS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def error_body(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


def get_metadata_cache(request: Request) -> MetadataCache:
    return request.app.state.metadata_cache


def _is_valid_url(url: str) -> bool:
    try:
        result = urlparse(url)
        return result.scheme in ("http", "https") and bool(result.hostname)
    except ValueError:
        return False


@app.get(
    "/",
    response_model=MetadataRecord,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
@app.get("/preview", response_model=MetadataRecord, include_in_schema=False)
async def get_preview(
    url: str | None = Query(None, description="The URL to fetch metadata for"),
    lang: str | None = Query(None, description="Language used for Accept-Language (en or ja)"),
    user_agent: str | None = Header(None),
    cache: MetadataCache = Depends(get_metadata_cache),
):
    if not url:
        raise HTTPException(status_code=400, detail="Missing `url` query parameter")
    if not _is_valid_url(url):
        raise HTTPException(status_code=400, detail="Invalid url")
    if lang is not None and not is_supported_lang(lang):
        raise HTTPException(status_code=400, detail=f"Unsupported `lang` parameter: {lang}")

    try:
        record = await cache.get(url, lang, user_agent)
    except Exception:
        logger.exception(f"Failed to fetch OGP for {url}")
        raise HTTPException(status_code=500, detail="Failed to fetch OGP")
    if record is None:
        raise HTTPException(status_code=400, detail="Invalid url")

    max_age = int(cache.fallback_ttl if record.is_fallback else cache.ttl)
    return JSONResponse(
        record.model_dump(by_alias=True),
        headers={"Cache-Control": f"public, max-age={max_age}"},
    )


@app.get("/health")
def health(cache: MetadataCache = Depends(get_metadata_cache)):
    return {"status": "ok", "cache": cache.stats()}


@app.get("/ready")
def ready():
    return {"status": "ready"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT, log_level=LOG_LEVEL.lower())
