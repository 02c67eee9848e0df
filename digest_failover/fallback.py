"""fallback.py — Provision, health-check and tear down a fallback digest instance.

One ``Fallback.perform`` call walks the stages

    idle -> waiting_for_degradation_signal (optional) -> provisioning
         -> waiting_for_instance_ready -> attached_to_load_balancer
         -> waiting_for_healthy -> ready

and hands the caller an ``InstanceHandle``. Any failure before ``ready``
terminates whatever was launched before the error leaves this module.
"""
from __future__ import annotations

import http.client
import threading
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from digest_failover.aws_clients import _error_code, _get_ec2, _get_elb
from digest_failover.config import (
    DEGRADATION_POLL_SECONDS,
    DEGRADATION_TIMEOUT_SECONDS,
    FALLBACK_APP_PORT,
    FALLBACK_IAM_INSTANCE_PROFILE_ARN,
    FALLBACK_KEY_NAME,
    FALLBACK_NAME_TAG,
    FALLBACK_SECURITY_GROUP_IDS,
    FALLBACK_TAG_MANAGED_BY_VALUE,
    HEALTH_CHECK_MAX_CONSECUTIVE_ERRORS,
    HEALTH_CHECK_PATH,
    HEALTH_CHECK_POLL_SECONDS,
    HEALTH_CHECK_TIMEOUT_SECONDS,
    HTTP_TIMEOUT_SECONDS,
    INSTANCE_READY_POLL_SECONDS,
    INSTANCE_READY_TIMEOUT_SECONDS,
    logger,
)
from digest_failover.degradation import DegradationSignal
from digest_failover.errors import ProvisioningError, ServiceError
from digest_failover.models import FallbackSetupParams
from digest_failover.scheduler import PollScheduler
from digest_failover.serialization import _emit_structured_observability
from digest_failover.url_cache import ServiceUrlCache

__all__ = [
    "Fallback",
    "InstanceHandle",
    "_STAGE_ATTACHED_TO_LOAD_BALANCER",
    "_STAGE_FAILED",
    "_STAGE_IDLE",
    "_STAGE_PROVISIONING",
    "_STAGE_READY",
    "_STAGE_WAITING_FOR_DEGRADATION_SIGNAL",
    "_STAGE_WAITING_FOR_HEALTHY",
    "_STAGE_WAITING_FOR_INSTANCE_READY",
]

_STAGE_IDLE = "idle"
_STAGE_WAITING_FOR_DEGRADATION_SIGNAL = "waiting_for_degradation_signal"
_STAGE_PROVISIONING = "provisioning"
_STAGE_WAITING_FOR_INSTANCE_READY = "waiting_for_instance_ready"
_STAGE_ATTACHED_TO_LOAD_BALANCER = "attached_to_load_balancer"
_STAGE_WAITING_FOR_HEALTHY = "waiting_for_healthy"
_STAGE_READY = "ready"
_STAGE_FAILED = "failed"

_TERMINAL_INSTANCE_STATES = {"terminated", "shutting-down", "stopping", "stopped"}


class InstanceHandle:
    """A ready fallback instance and the obligation to tear it down."""

    def __init__(
        self,
        fallback: "Fallback",
        params: FallbackSetupParams,
        instance_id: str,
        app_url: str,
        load_balancer_name: Optional[str],
    ) -> None:
        self._fallback = fallback
        self.params = params
        self.instance_id = instance_id
        self.app_url = app_url
        self.load_balancer_name = load_balancer_name
        self._lock = threading.Lock()
        self._cleaned_up = False
        self._cleanup_scheduled = False

    @property
    def service_url(self) -> str:
        return self.app_url + self.params.service_path

    def cleanup(self) -> str:
        """Deregister and terminate the instance now; later calls are no-ops."""
        with self._lock:
            if self._cleaned_up:
                return "skipped"
            self._cleaned_up = True
        state = self._fallback._teardown(self.instance_id, self.load_balancer_name)
        if state == "termination_failed":
            with self._lock:
                self._cleaned_up = False
        return state

    def schedule_cleanup(self, after_seconds: float) -> bool:
        """Arrange teardown ``after_seconds`` from now. Honoured once per handle."""
        with self._lock:
            if self._cleanup_scheduled or self._cleaned_up:
                logger.warning(
                    "cleanup for fallback instance %s already arranged, ignoring", self.instance_id
                )
                return False
            self._cleanup_scheduled = True

        if after_seconds <= 0:
            self._expire()
            return True
        self._fallback._scheduler.delay(
            self._expire,
            after_seconds,
            label=f"fallback cleanup {self.instance_id}",
        )
        return True

    def _expire(self) -> None:
        self._fallback._cache.remove(self.params.service_full_path, expected=self.service_url)
        self.cleanup()


class Fallback:
    def __init__(
        self,
        scheduler: PollScheduler,
        cache: ServiceUrlCache,
        signal: DegradationSignal,
        *,
        ec2: Any = None,
        elb: Any = None,
        urlopen: Optional[Callable[..., Any]] = None,
        key_name: Optional[str] = FALLBACK_KEY_NAME,
        security_group_ids: Sequence[str] = FALLBACK_SECURITY_GROUP_IDS,
        iam_instance_profile_arn: Optional[str] = FALLBACK_IAM_INSTANCE_PROFILE_ARN,
        app_port: int = FALLBACK_APP_PORT,
        http_timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self._scheduler = scheduler
        self._cache = cache
        self._signal = signal
        self._ec2_client = ec2
        self._elb_client = elb
        self._urlopen = urlopen or urllib.request.urlopen
        self._key_name = key_name
        self._security_group_ids = list(security_group_ids or ())
        self._iam_instance_profile_arn = iam_instance_profile_arn
        self._app_port = app_port
        self._http_timeout = http_timeout

    def _ec2(self):
        return self._ec2_client or _get_ec2()

    def _elb(self):
        return self._elb_client or _get_elb()

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def perform(self, params: FallbackSetupParams) -> InstanceHandle:
        stage = _STAGE_IDLE
        instance_id: Optional[str] = None
        attached_load_balancer: Optional[str] = None
        started = time.perf_counter()
        try:
            if params.wait_for_degradation_signal:
                stage = self._enter(params, _STAGE_WAITING_FOR_DEGRADATION_SIGNAL)
                self._wait_for_degradation_signal(params)

            stage = self._enter(params, _STAGE_PROVISIONING)
            instance_id = self._launch_instance(params)
            self._tag_instance(instance_id, params)

            stage = self._enter(params, _STAGE_WAITING_FOR_INSTANCE_READY, instance_id)
            self._wait_for_instance_ready(instance_id, params)
            instance = self._describe_instance(instance_id)

            stage = self._enter(params, _STAGE_ATTACHED_TO_LOAD_BALANCER, instance_id)
            if params.load_balancer_name:
                attached_load_balancer = params.load_balancer_name
                self._attach_to_load_balancer(instance_id, params.load_balancer_name)

            stage = self._enter(params, _STAGE_WAITING_FOR_HEALTHY, instance_id)
            app_url = self._build_app_url(instance, params)
            self._wait_until_healthy(app_url, params)

            stage = self._enter(
                params,
                _STAGE_READY,
                instance_id,
                latency_ms=int((time.perf_counter() - started) * 1000),
                extra={"app_url": app_url},
            )
            return InstanceHandle(self, params, instance_id, app_url, attached_load_balancer)
        except Exception as exc:
            self._enter(
                params,
                _STAGE_FAILED,
                instance_id,
                latency_ms=int((time.perf_counter() - started) * 1000),
                error_code=type(exc).__name__,
                extra={"failed_stage": stage},
            )
            logger.error("fallback '%s' failed at stage '%s': %s", params.label, stage, exc)
            if instance_id:
                self._teardown(instance_id, attached_load_balancer)
            if isinstance(exc, ServiceError):
                raise
            message = f"fallback '{params.label}' failed at stage '{stage}': {exc}"
            if isinstance(exc, (BotoCoreError, ClientError)):
                raise ProvisioningError(message) from exc
            raise ServiceError(message) from exc

    def _enter(
        self,
        params: FallbackSetupParams,
        stage: str,
        instance_id: Optional[str] = None,
        *,
        latency_ms: Optional[int] = None,
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload: Dict[str, Any] = {"stage": stage, "instance_id": str(instance_id or "")}
        if extra:
            payload.update(extra)
        _emit_structured_observability(
            component="fallback",
            event="stage_transition",
            target=params.label,
            latency_ms=latency_ms,
            error_code=error_code,
            extra=payload,
        )
        return stage

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _wait_for_degradation_signal(self, params: FallbackSetupParams) -> None:
        def _probe() -> Optional[bool]:
            if self._signal.consume():
                logger.info("[INFO] degradation signal has just arrived")
                return True
            return None

        self._scheduler.poll_until(
            _probe,
            DEGRADATION_POLL_SECONDS,
            DEGRADATION_TIMEOUT_SECONDS,
            label=f"{params.label}: degradation signal",
        )

    def _launch_instance(self, params: FallbackSetupParams) -> str:
        kwargs: Dict[str, Any] = {
            "ImageId": params.image_id,
            "InstanceType": params.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
        }
        if self._key_name:
            kwargs["KeyName"] = self._key_name
        if self._security_group_ids:
            kwargs["SecurityGroupIds"] = list(self._security_group_ids)
        if self._iam_instance_profile_arn:
            kwargs["IamInstanceProfile"] = {"Arn": self._iam_instance_profile_arn}
        try:
            response = self._ec2().run_instances(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise ProvisioningError(f"run_instances failed for '{params.label}': {exc}") from exc

        instances = response.get("Instances") or []
        if not instances:
            raise ProvisioningError("run_instances returned no instances")
        instance_id = str(instances[0].get("InstanceId") or "")
        if not instance_id:
            raise ProvisioningError("run_instances returned an instance without InstanceId")
        logger.info(
            "[INFO] launched fallback instance %s (%s, %s)",
            instance_id,
            params.instance_type,
            params.image_id,
        )
        return instance_id

    def _tag_instance(self, instance_id: str, params: FallbackSetupParams) -> None:
        tags = [
            {"Key": "Name", "Value": f"{FALLBACK_NAME_TAG} ({params.label})"},
            {"Key": "digest-failover:managed-by", "Value": FALLBACK_TAG_MANAGED_BY_VALUE},
            {"Key": "digest-failover:tier", "Value": params.label},
        ]
        try:
            self._ec2().create_tags(Resources=[instance_id], Tags=tags)
        except (BotoCoreError, ClientError) as exc:
            raise ProvisioningError(f"create_tags failed for {instance_id}: {exc}") from exc

    def _wait_for_instance_ready(self, instance_id: str, params: FallbackSetupParams) -> Dict[str, Any]:
        def _probe() -> Optional[Dict[str, Any]]:
            try:
                response = self._ec2().describe_instance_status(
                    InstanceIds=[instance_id],
                    IncludeAllInstances=True,
                )
            except ClientError as exc:
                if _error_code(exc) == "InvalidInstanceID.NotFound":
                    return None
                raise
            statuses = response.get("InstanceStatuses") or []
            if not statuses:
                return None
            status = statuses[0]
            state = str((status.get("InstanceState") or {}).get("Name") or "").lower()
            if state in _TERMINAL_INSTANCE_STATES:
                raise ProvisioningError(
                    f"fallback instance {instance_id} entered state '{state}' before readiness"
                )
            return status if _is_ready(status) else None

        return self._scheduler.poll_until(
            _probe,
            INSTANCE_READY_POLL_SECONDS,
            INSTANCE_READY_TIMEOUT_SECONDS,
            label=f"{params.label}: instance {instance_id} status checks",
        )

    def _describe_instance(self, instance_id: str) -> Dict[str, Any]:
        response = self._ec2().describe_instances(InstanceIds=[instance_id])
        reservations = response.get("Reservations") or []
        if not reservations or not (reservations[0].get("Instances") or []):
            raise ProvisioningError(f"describe_instances returned nothing for {instance_id}")
        return reservations[0]["Instances"][0]

    def _attach_to_load_balancer(self, instance_id: str, load_balancer_name: str) -> None:
        self._elb().register_instances_with_load_balancer(
            LoadBalancerName=load_balancer_name,
            Instances=[{"InstanceId": instance_id}],
        )
        logger.info("[INFO] instance %s registered with load balancer %s", instance_id, load_balancer_name)

    def _build_app_url(self, instance: Dict[str, Any], params: FallbackSetupParams) -> str:
        if params.dns_name:
            server = params.dns_name
        else:
            public_ip = instance.get("PublicIpAddress")
            if not public_ip:
                raise ProvisioningError(
                    f"fallback instance {instance.get('InstanceId')} has no public address"
                )
            server = f"{public_ip}:{self._app_port}"
        return f"http://{server}{params.service_context_path}"

    def _wait_until_healthy(self, app_url: str, params: FallbackSetupParams) -> int:
        health_url = app_url + HEALTH_CHECK_PATH
        consecutive_errors = 0

        def _probe() -> Optional[int]:
            nonlocal consecutive_errors
            try:
                status = self._http_status(health_url)
            except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
                consecutive_errors += 1
                logger.error(
                    "health check attempt (%d) against %s failed: %s",
                    consecutive_errors,
                    health_url,
                    exc,
                )
                if consecutive_errors > HEALTH_CHECK_MAX_CONSECUTIVE_ERRORS:
                    raise ProvisioningError(
                        f"health check against {health_url} failed "
                        f"{consecutive_errors} times in a row: {exc}"
                    ) from exc
                return None
            consecutive_errors = 0
            logger.info("[INFO] health check response code of %s received for %s", status, health_url)
            return status if status == 200 else None

        return self._scheduler.poll_until(
            _probe,
            HEALTH_CHECK_POLL_SECONDS,
            HEALTH_CHECK_TIMEOUT_SECONDS,
            label=f"{params.label}: health check {health_url}",
        )

    def _http_status(self, url: str) -> int:
        req = urllib.request.Request(url, method="GET")
        try:
            with self._urlopen(req, timeout=self._http_timeout) as resp:
                return int(resp.getcode())
        except urllib.error.HTTPError as exc:
            return int(exc.code)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _teardown(self, instance_id: str, load_balancer_name: Optional[str]) -> str:
        if load_balancer_name:
            try:
                self._elb().deregister_instances_from_load_balancer(
                    LoadBalancerName=load_balancer_name,
                    Instances=[{"InstanceId": instance_id}],
                )
                logger.info(
                    "[INFO] instance %s deregistered from load balancer %s",
                    instance_id,
                    load_balancer_name,
                )
            except (BotoCoreError, ClientError) as exc:
                logger.warning(
                    "failed deregistering %s from load balancer %s: %s",
                    instance_id,
                    load_balancer_name,
                    exc,
                )

        try:
            self._ec2().terminate_instances(InstanceIds=[instance_id])
            state = "terminated"
        except ClientError as exc:
            if _error_code(exc) == "InvalidInstanceID.NotFound":
                state = "already_terminated"
            else:
                state = "termination_failed"
                logger.error("failed terminating fallback instance %s: %s", instance_id, exc)
        except BotoCoreError as exc:
            state = "termination_failed"
            logger.error("failed terminating fallback instance %s: %s", instance_id, exc)

        _emit_structured_observability(
            component="fallback",
            event="teardown",
            target=instance_id,
            error_code="" if state != "termination_failed" else state,
            extra={"cleanup_state": state, "load_balancer": load_balancer_name or ""},
        )
        return state


def _is_ready(status: Dict[str, Any]) -> bool:
    instance_status = str((status.get("InstanceStatus") or {}).get("Status") or "").lower()
    system_status = str((status.get("SystemStatus") or {}).get("Status") or "").lower()
    return instance_status == "ok" and system_status == "ok"
