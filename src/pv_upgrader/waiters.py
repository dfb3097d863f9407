from __future__ import annotations

import time
from typing import Callable, TypeVar

import structlog
from kubernetes import client

from .backoff import BackoffConfig, ExponentialBackoff, PermanentError, RetryTimeoutError, retry_notify
from .k8s import CacheTypeError, ClusterGateway, ResourceNotFoundError

POD_PHASE_RUNNING = "Running"
T = TypeVar("T")


class WaitTimeoutError(TimeoutError):
    def __init__(self, message: str, *, last_seen: object | None = None) -> None:
        super().__init__(message)
        self.last_seen = last_seen


class ConditionNotMetError(RuntimeError):
    """Signals the poller that the observed state has not reached its target yet."""


class ResourceStateWaiter:
    """Polls cluster state until a PV, PVC or pod reaches the state a workflow step depends on.

    PV and PVC conditions are evaluated against the gateway's local stores, which
    are kept current by a watch. Pod conditions use live API reads because pod
    state changes too quickly for the cache to be trusted.
    """

    def __init__(
        self,
        gateway: ClusterGateway,
        backoff_config: BackoffConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.backoff_config = backoff_config
        self._clock = clock
        self._sleep = sleep
        self.logger = structlog.get_logger().bind(component="resource_state_waiter")

    def wait_for_pv_disappearance(self, name: str, max_elapsed_time: float) -> None:
        def check() -> None:
            try:
                self.gateway.get_cached_pv(name)
            except ResourceNotFoundError:
                return
            except CacheTypeError as error:
                raise PermanentError(str(error)) from error
            raise ConditionNotMetError(f"PV {name} still exists")

        def notify(_: Exception, increment: float) -> None:
            self.logger.debug("PV not yet fully deleted, waiting.", pv=name, increment=increment)

        try:
            self._poll(check, max_elapsed_time, notify)
        except RetryTimeoutError as error:
            raise WaitTimeoutError(
                f"PV {name} was not fully deleted after {max_elapsed_time:3.2f} seconds"
            ) from error

    def wait_for_deleted_pv(self, name: str, max_elapsed_time: float) -> client.V1PersistentVolume | None:
        """Wait until a PV is gone or carries a deletion timestamp.

        Returns None when the PV disappeared and the PV itself when it is still
        present with a deletion timestamp, which happens when a finalizer pins it.
        On timeout the raised WaitTimeoutError exposes the last PV seen.
        """
        last_seen: client.V1PersistentVolume | None = None

        def check() -> client.V1PersistentVolume | None:
            nonlocal last_seen
            last_seen = None
            try:
                pv = self.gateway.get_cached_pv(name)
            except ResourceNotFoundError:
                return None
            except CacheTypeError as error:
                raise PermanentError(str(error)) from error
            last_seen = pv
            if pv.metadata.deletion_timestamp is None:
                raise ConditionNotMetError(f"PV {name} deletion timestamp not set")
            return pv

        def notify(_: Exception, increment: float) -> None:
            self.logger.debug("PV not yet deleted, waiting.", pv=name, increment=increment)

        try:
            return self._poll(check, max_elapsed_time, notify)
        except RetryTimeoutError as error:
            raise WaitTimeoutError(
                f"PV {name} was not deleted after {max_elapsed_time:3.2f} seconds",
                last_seen=last_seen,
            ) from error

    def wait_for_pvc_phase(
        self,
        pvc: client.V1PersistentVolumeClaim,
        phase: str,
        max_elapsed_time: float,
    ) -> client.V1PersistentVolumeClaim:
        name = pvc.metadata.name
        namespace = pvc.metadata.namespace

        def check() -> client.V1PersistentVolumeClaim:
            try:
                latest = self.gateway.get_cached_pvc(name, namespace)
            except CacheTypeError as error:
                raise PermanentError(str(error)) from error
            current_phase = latest.status.phase if latest.status else None
            if current_phase != phase:
                raise ConditionNotMetError(f"PVC {namespace}/{name} not yet {phase}")
            return latest

        def notify(_: Exception, increment: float) -> None:
            self.logger.debug(f"PVC not yet {phase}, waiting.", name=name, namespace=namespace, increment=increment)

        try:
            return self._poll(check, max_elapsed_time, notify)
        except RetryTimeoutError as error:
            raise WaitTimeoutError(
                f"PVC {namespace}/{name} was not {phase} after {max_elapsed_time:3.2f} seconds"
            ) from error

    def wait_for_deleted_or_non_running_pod(
        self,
        name: str,
        namespace: str,
        max_elapsed_time: float,
    ) -> client.V1Pod | None:
        pod_label = f"{namespace}/{name}"

        def check() -> client.V1Pod | None:
            try:
                pod = self.gateway.get_pod(name, namespace)
            except ResourceNotFoundError:
                self.logger.info("Pod not found.", pod=pod_label)
                return None

            if pod is None:
                raise ConditionNotMetError(f"Kubernetes API returned nothing for pod {pod_label}")
            phase = pod.status.phase if pod.status else None
            if phase == POD_PHASE_RUNNING:
                raise ConditionNotMetError(f"pod {pod_label} phase is {phase}")
            self.logger.info(f"Pod phase is {phase}.", pod=pod_label)
            return pod

        def notify(_: Exception, increment: float) -> None:
            self.logger.debug("Pod not yet deleted, waiting.", pod=name, namespace=namespace, increment=increment)

        try:
            return self._poll(check, max_elapsed_time, notify)
        except RetryTimeoutError as error:
            raise WaitTimeoutError(
                f"pod {pod_label} was not deleted or non-Running after {max_elapsed_time:3.2f} seconds"
            ) from error

    def _poll(
        self,
        check: Callable[[], T],
        max_elapsed_time: float,
        notify: Callable[[Exception, float], None],
    ) -> T:
        backoff = ExponentialBackoff(self.backoff_config, max_elapsed_time, clock=self._clock)
        return retry_notify(check, backoff, notify, sleep=self._sleep)
