"""dispatcher.py — Cache -> primary -> fallback tiers policy for digest requests."""
from __future__ import annotations

from typing import Any, Optional, Sequence

from digest_failover.config import (
    FALLBACK_ATTEMPT_INTERVAL_SECONDS,
    FALLBACK_CLEANUP_DELAY_SECONDS,
    FALLBACK_DNS_NAME,
    FALLBACK_IMAGE_ID,
    FALLBACK_INSTANCE_TYPE,
    FALLBACK_LOAD_BALANCER_NAME,
    FALLBACK_MAX_ATTEMPTS,
    FALLBACK_SECOND_IMAGE_ID,
    FALLBACK_SECOND_INSTANCE_TYPE,
    FALLBACK_WAIT_FOR_DEGRADATION,
    PRIMARY_ATTEMPT_INTERVAL_SECONDS,
    PRIMARY_MAX_ATTEMPTS,
    PRIMARY_SERVER_ADDRESS,
    SERVICE_CONTEXT,
    SERVICE_PATH,
    logger,
)
from digest_failover.errors import RetryExhaustedError, ServiceError, TransportError
from digest_failover.fallback import Fallback
from digest_failover.models import FallbackSetupParams, SendingParams
from digest_failover.sender import RetryingSender
from digest_failover.url_cache import ServiceUrlCache

__all__ = ["DigestController", "_default_fallback_tiers"]


def _default_fallback_tiers() -> tuple:
    """Fallback tiers from the environment, smallest instance first."""
    tiers = [
        FallbackSetupParams(
            label="fallback",
            instance_type=FALLBACK_INSTANCE_TYPE,
            image_id=FALLBACK_IMAGE_ID,
            service_context_path=SERVICE_CONTEXT,
            service_path=SERVICE_PATH,
            wait_for_degradation_signal=FALLBACK_WAIT_FOR_DEGRADATION,
            load_balancer_name=FALLBACK_LOAD_BALANCER_NAME,
            dns_name=FALLBACK_DNS_NAME,
        )
    ]
    if FALLBACK_SECOND_INSTANCE_TYPE:
        tiers.append(
            FallbackSetupParams(
                label="fallback-large",
                instance_type=FALLBACK_SECOND_INSTANCE_TYPE,
                image_id=FALLBACK_SECOND_IMAGE_ID,
                service_context_path=SERVICE_CONTEXT,
                service_path=SERVICE_PATH,
                load_balancer_name=FALLBACK_LOAD_BALANCER_NAME,
                dns_name=FALLBACK_DNS_NAME,
            )
        )
    return tuple(tiers)


class DigestController:
    """Serves one digest request, healing primary outages with fallback instances.

    Order of attempts for every request:

    1. the URL cached for the logical service path, sent once;
    2. the primary service, retried ``primary_attempts`` times;
    3. each fallback tier in turn: provision an instance, retry against it,
       cache its URL and schedule its teardown after ``cleanup_delay``.

    ``execute`` raises only ``ServiceError`` (or a subclass).
    """

    def __init__(
        self,
        sender: RetryingSender,
        fallback: Fallback,
        cache: ServiceUrlCache,
        *,
        primary_address: str = PRIMARY_SERVER_ADDRESS,
        service_context: str = SERVICE_CONTEXT,
        service_path: str = SERVICE_PATH,
        primary_attempts: int = PRIMARY_MAX_ATTEMPTS,
        primary_interval: float = PRIMARY_ATTEMPT_INTERVAL_SECONDS,
        fallback_attempts: int = FALLBACK_MAX_ATTEMPTS,
        fallback_interval: float = FALLBACK_ATTEMPT_INTERVAL_SECONDS,
        cleanup_delay: float = FALLBACK_CLEANUP_DELAY_SECONDS,
        fallback_tiers: Optional[Sequence[FallbackSetupParams]] = None,
    ) -> None:
        self._sender = sender
        self._fallback = fallback
        self._cache = cache
        self._primary_address = primary_address
        self._service_context = service_context
        self._service_path = service_path
        self._primary_attempts = primary_attempts
        self._primary_interval = primary_interval
        self._fallback_attempts = fallback_attempts
        self._fallback_interval = fallback_interval
        self._cleanup_delay = cleanup_delay
        self._fallback_tiers = tuple(fallback_tiers) if fallback_tiers is not None else _default_fallback_tiers()

    @property
    def service_full_path(self) -> str:
        return self._service_context + self._service_path

    @property
    def primary_url(self) -> str:
        return self._primary_address + self.service_full_path

    def execute(self, request: Any) -> Any:
        try:
            return self._execute(request)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(f"digest request failed unexpectedly: {exc}") from exc

    def _execute(self, request: Any) -> Any:
        cached_url = self._cache.get(self.service_full_path)
        if cached_url:
            try:
                return self._sender.send(cached_url, request)
            except TransportError as exc:
                # The delayed cleanup owns the entry; leave it alone.
                logger.warning("cached service url %s failed, falling through: %s", cached_url, exc)

        try:
            return self._sender.try_sending(
                self.primary_url,
                request,
                self._sending_params(self._primary_attempts, self._primary_interval),
            )
        except RetryExhaustedError as exc:
            logger.error("primary digest service exhausted: %s", exc)
            last_error: BaseException = exc

        for tier in self._fallback_tiers:
            try:
                return self._execute_on_fallback(tier, request)
            except ServiceError as exc:
                logger.error("fallback tier '%s' failed: %s", tier.label, exc)
                last_error = exc

        raise ServiceError(
            f"digest request could not be served by primary or {len(self._fallback_tiers)} fallback tier(s): "
            f"{last_error}"
        ) from last_error

    def _execute_on_fallback(self, tier: FallbackSetupParams, request: Any) -> Any:
        handle = self._fallback.perform(tier)
        try:
            response = self._sender.try_sending(
                handle.service_url,
                request,
                self._sending_params(self._fallback_attempts, self._fallback_interval),
            )
        except RetryExhaustedError as exc:
            handle.cleanup()
            raise ServiceError(f"fallback instance {handle.instance_id} did not serve the request: {exc}") from exc
        except Exception:
            handle.cleanup()
            raise

        self._cache.put(tier.service_full_path, handle.service_url)
        handle.schedule_cleanup(self._cleanup_delay)
        logger.info(
            "[INFO] request served by fallback instance %s, cleanup in %ss",
            handle.instance_id,
            self._cleanup_delay,
        )
        return response

    def _sending_params(self, attempts: int, interval: float) -> SendingParams:
        return SendingParams(
            max_attempts=attempts,
            attempt_interval=interval,
            on_attempt_failure=lambda message: logger.info("[INFO] %s", message),
        )
