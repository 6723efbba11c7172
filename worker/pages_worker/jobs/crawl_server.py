"""HTTP entrypoint that triggers page crawls (Cloud Run friendly)."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict

from flask import Flask, jsonify, request

from pages_worker.core.config import ConfigError, CrawlInput, get_settings
from pages_worker.jobs.crawl import run_crawl_job

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
# Crawls run one at a time.
_executor = ThreadPoolExecutor(max_workers=1)


@app.get("/")
def root() -> Any:
    """Liveness probe for load balancers hitting the bare host."""
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; only reads env-based settings."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": settings.worker_port,
                "max_concurrency": settings.max_concurrency,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/crawl")
def enqueue_crawl() -> Any:
    """
    Validate a crawl input document and queue the crawl.
    Required JSON fields: start_urls
    Optional: every other crawl input field (section toggles, limits, dates, language...)
    """
    payload: Dict[str, Any] = request.get_json(silent=True) or {}

    try:
        crawl_input = CrawlInput.from_dict(payload)
    except ConfigError as exc:
        return jsonify({"error": str(exc)}), 400

    logger.info("Queueing crawl of %d start URLs", len(crawl_input.start_urls))
    _executor.submit(_run_job_safe, crawl_input)

    return jsonify({"data": {"status": "queued", "start_urls": len(crawl_input.start_urls)}}), 202


def _run_job_safe(crawl_input: CrawlInput) -> None:
    try:
        path = run_crawl_job(crawl_input)
        logger.info("Crawl job finished, dataset at %s", path)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Crawl job failed: %s", exc)


def main() -> None:
    """Bind on the PORT injected by Cloud Run, falling back to WORKER_PORT locally."""
    env_port = os.getenv("PORT")
    port = int(env_port or get_settings().worker_port)
    logger.info("Crawl server listening on 0.0.0.0:%d (PORT=%s)", port, env_port)

    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
