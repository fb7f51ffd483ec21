from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any

from opentelemetry import trace

from quote_approval.core.config import Settings, get_settings
from quote_approval.core.telemetry import (
    configure_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from quote_approval.engine.verifier import QuoteVerifier
from quote_approval.jobs.verify_quote import execute_verify_quote
from quote_approval.services.fetcher import HttpDocumentFetcher
from quote_approval.services.repository import (
    PostgresRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    get_repository,
)
from quote_approval.services.resolver import RepositoryIdentityResolver
from quote_approval.services.signing import AccountSigningAuthFactory

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_quote_verifier(settings: Settings, repository: PostgresRepository) -> QuoteVerifier:
    resolver = RepositoryIdentityResolver(repository, local_domain=settings.local_domain)
    auth_factory = AccountSigningAuthFactory(
        repository,
        resolver,
        instance_actor_username=settings.instance_actor_username,
    )
    return QuoteVerifier(
        fetcher=HttpDocumentFetcher.from_settings(settings, auth_factory=auth_factory),
        resolver=resolver,
        writer=repository,
    )


async def process_verification_requests(
    requests: list[dict[str, Any]],
    *,
    repository: PostgresRepository,
    verifier: QuoteVerifier,
) -> None:
    for request in requests:
        with tracer.start_as_current_span("worker.verify_quote") as request_span:
            request_span.set_attribute("verification_request.id", request["id"])
            try:
                result = await execute_verify_quote(request, repository=repository, verifier=verifier)
            except Exception as exc:
                logger.exception("quote verification failed for request id=%s", request["id"])
                await _complete_request(
                    repository,
                    request["id"],
                    status="failed",
                    error_json={"error": str(exc), "error_type": type(exc).__name__},
                )
                continue

            await _complete_request(repository, request["id"], status="done", result_json=result)


async def _complete_request(repository: PostgresRepository, request_id: str, **kwargs: Any) -> None:
    try:
        await repository.complete_verification_request(request_id, **kwargs)
    except (RepositoryConflictError, RepositoryNotFoundError) as exc:
        # Lease lost; the request was requeued and will run again.
        logger.warning("verification request result discarded id=%s error=%s", request_id, exc)


async def run_worker(worker_id: str = "quote-verifier") -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    repository = get_repository()
    verifier = build_quote_verifier(settings, repository)

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        requeued = await repository.requeue_expired_requests(limit=settings.lease_reaper_batch_size)
                        if requeued:
                            logger.info("requeued expired verification requests: %s", requeued)
                        last_reap_at = now

                    requests = await repository.claim_verification_requests(
                        locked_by=worker_id,
                        limit=settings.claim_batch_size,
                        lease_seconds=settings.claim_lease_seconds,
                    )
                    if not requests:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    await process_verification_requests(requests, repository=repository, verifier=verifier)

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)
        await repository.close()


if __name__ == "__main__":
    asyncio.run(run_worker())
