from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import copy

import structlog
from kubernetes import client
from structlog.stdlib import BoundLogger

from .config import CSI_PROVISIONER, LEGACY_PROVISIONER, AppConfig
from .converter import build_csi_persistent_volume, legacy_source_kinds
from .k8s import (
    ANN_BIND_COMPLETED,
    ANN_DYNAMICALLY_PROVISIONED,
    FINALIZER_PV_PROTECTION,
    ClusterGateway,
)
from .models import (
    MIGRATION_TYPE_CSI,
    VOLUME_STATE_ONLINE,
    UpgradeResult,
    UpgradeStage,
    UpgradeVolumeRequest,
    VolumeRecord,
)
from .registry import VolumeRegistry
from .waiters import ResourceStateWaiter

PV_PHASE_BOUND = "Bound"
PVC_PHASE_BOUND = "Bound"
PVC_PHASE_LOST = "Lost"
SUPPORTED_MIGRATION_TYPES = frozenset({MIGRATION_TYPE_CSI})


@dataclass(frozen=True)
class UpgradeSettings:
    csi_driver: str = CSI_PROVISIONER
    legacy_provisioner: str = LEGACY_PROVISIONER
    pv_delete_wait_seconds: float = 30.0
    pvc_phase_wait_seconds: float = 30.0
    pod_delete_wait_seconds: float = 60.0

    @classmethod
    def from_app_config(cls, config: AppConfig) -> UpgradeSettings:
        return cls(
            csi_driver=config.csi_driver,
            legacy_provisioner=config.legacy_provisioner,
            pv_delete_wait_seconds=config.pv_delete_wait_seconds,
            pvc_phase_wait_seconds=config.pvc_phase_wait_seconds,
            pod_delete_wait_seconds=config.pod_delete_wait_seconds,
        )


class UpgradeStageError(RuntimeError):
    def __init__(self, *, stage: UpgradeStage, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage.value} stage failed: {normalized_reason}")
        self.stage = stage


@dataclass
class _UpgradeProgress:
    stage: UpgradeStage = UpgradeStage.VALIDATING
    namespace: str | None = None
    pvc_name: str | None = None


class PersistentVolumeUpgrader:
    """Converts a bound NFS/iSCSI PV into a CSI PV of the same name.

    The sequence is strictly forward: once the legacy PV is deleted nothing is
    restored on failure, and the cluster is left in whatever state the last
    completed step produced. Callers must not run two upgrades of the same
    volume at once.
    """

    def __init__(
        self,
        *,
        registry: VolumeRegistry,
        gateway: ClusterGateway,
        waiter: ResourceStateWaiter,
        settings: UpgradeSettings | None = None,
    ) -> None:
        self.registry = registry
        self.gateway = gateway
        self.waiter = waiter
        self.settings = settings or UpgradeSettings()
        self.logger: BoundLogger = structlog.get_logger().bind(component="pv_upgrade")

    def run(self, request: UpgradeVolumeRequest) -> UpgradeResult:
        started_at = _utc_now_iso()
        progress = _UpgradeProgress()
        status = "failed"
        failed_stage: str | None = None
        message = ""
        try:
            self._upgrade(request, progress)
            status = "success"
        except UpgradeStageError as error:
            failed_stage = error.stage.value
            message = str(error)

        return UpgradeResult(
            volume=request.volume,
            status=status,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            pv_name=request.volume,
            namespace=progress.namespace,
            pvc_name=progress.pvc_name,
            failed_stage=failed_stage,
            message=message,
        )

    def upgrade_volume(self, request: UpgradeVolumeRequest) -> VolumeRecord:
        return self._upgrade(request, _UpgradeProgress())

    def _upgrade(self, request: UpgradeVolumeRequest, progress: _UpgradeProgress) -> VolumeRecord:
        log = self.logger.bind(volume=request.volume, type=request.type)
        log.info("PV upgrade: workflow started.")

        volume, pv, pvc, owned_pods = self._validate(request, progress, log)
        pvc_label = f"{pvc.metadata.namespace}/{pvc.metadata.name}"
        log = log.bind(pv=pv.metadata.name, pvc=pvc_label)

        # TODO: mark the registry record as upgrading once the registry exposes a writable state.

        progress.stage = UpgradeStage.DELETING_LEGACY_PV
        try:
            self.delete_pv_for_upgrade(pv)
        except Exception as error:  # pylint: disable=broad-except
            raise self._stage_error(log, progress.stage, "could not delete the PV", error) from error
        log.info("PV upgrade: PV deleted.")

        progress.stage = UpgradeStage.AWAITING_PVC_LOST
        try:
            lost_pvc = self.waiter.wait_for_pvc_phase(pvc, PVC_PHASE_LOST, self.settings.pvc_phase_wait_seconds)
        except Exception as error:  # pylint: disable=broad-except
            raise self._stage_error(log, progress.stage, "PVC did not reach the Lost state", error) from error
        log.info("PV upgrade: PVC reached the Lost state.")

        progress.stage = UpgradeStage.DELETING_OWNED_PODS
        for pod_name in owned_pods:
            try:
                self.gateway.delete_pod(pod_name, pvc.metadata.namespace)
            except Exception as error:  # pylint: disable=broad-except
                raise self._stage_error(
                    log.bind(pod=pod_name), progress.stage, "could not delete a pod using the PV", error
                ) from error
            log.info("PV upgrade: owned pod deleted.", pod=pod_name)

        progress.stage = UpgradeStage.AWAITING_PODS_TERMINAL
        for pod_name in owned_pods:
            try:
                self.waiter.wait_for_deleted_or_non_running_pod(
                    pod_name,
                    pvc.metadata.namespace,
                    self.settings.pod_delete_wait_seconds,
                )
            except Exception as error:  # pylint: disable=broad-except
                raise self._stage_error(log.bind(pod=pod_name), progress.stage, "unexpected pod status", error) from error
            log.info("PV upgrade: pod deleted or non-Running.", pod=pod_name)

        progress.stage = UpgradeStage.STRIPPING_BIND_ANNOTATION
        try:
            unbound_pvc = self.remove_pvc_bind_completed_annotation(lost_pvc)
        except Exception as error:  # pylint: disable=broad-except
            raise self._stage_error(
                log, progress.stage, "could not remove bind-completed annotation from PVC", error
            ) from error
        log.info("PV upgrade: removed bind-completed annotation from PVC.")

        progress.stage = UpgradeStage.CREATING_CSI_PV
        try:
            csi_pv = self.gateway.create_pv(
                build_csi_persistent_volume(pv, volume, driver=self.settings.csi_driver)
            )
        except Exception as error:  # pylint: disable=broad-except
            raise self._stage_error(
                log, progress.stage, "could not create the CSI version of the PV being upgraded", error
            ) from error
        log.info("PV upgrade: created CSI version of PV.", driver=self.settings.csi_driver)

        progress.stage = UpgradeStage.AWAITING_PVC_BOUND
        try:
            self.waiter.wait_for_pvc_phase(unbound_pvc, PVC_PHASE_BOUND, self.settings.pvc_phase_wait_seconds)
        except Exception as error:  # pylint: disable=broad-except
            raise self._stage_error(log, progress.stage, "PVC did not reach the Bound state", error) from error
        log.info("PV upgrade: PVC bound.", csi_pv=csi_pv.metadata.name if csi_pv and csi_pv.metadata else None)

        progress.stage = UpgradeStage.DONE
        log.info("PV upgrade: workflow completed.")
        return volume

    def _validate(
        self,
        request: UpgradeVolumeRequest,
        progress: _UpgradeProgress,
        log: BoundLogger,
    ) -> tuple[VolumeRecord, client.V1PersistentVolume, client.V1PersistentVolumeClaim, list[str]]:
        stage = UpgradeStage.VALIDATING

        if request.type not in SUPPORTED_MIGRATION_TYPES:
            raise self._stage_error(log, stage, f"unsupported upgrade type '{request.type}'")

        try:
            volume = self.registry.get_volume(request.volume)
        except Exception as error:  # pylint: disable=broad-except
            raise self._stage_error(log, stage, "could not find the volume to upgrade", error) from error
        log.info("PV upgrade: volume found.")

        if volume.state != VOLUME_STATE_ONLINE:
            raise self._stage_error(
                log.bind(state=volume.state), stage, "volume to be upgraded must be in online state"
            )
        log.debug("PV upgrade: volume is online.")

        try:
            pv = self.gateway.get_cached_pv(request.volume)
        except Exception as error:  # pylint: disable=broad-except
            raise self._stage_error(log, stage, "could not find the PV to upgrade", error) from error
        log = log.bind(pv=pv.metadata.name)
        log.debug("PV upgrade: PV found in cache.")

        kinds = legacy_source_kinds(pv)
        if len(kinds) != 1:
            raise self._stage_error(
                log.bind(sources=list(kinds)), stage, "PV to be upgraded must be of type NFS or iSCSI"
            )
        log.debug(f"PV upgrade: volume is {kinds[0]}.")

        pv_phase = pv.status.phase if pv.status else None
        if pv_phase != PV_PHASE_BOUND:
            raise self._stage_error(log.bind(phase=pv_phase), stage, "PV must be bound to a PVC")
        log.debug("PV upgrade: PV state is Bound.")

        annotations = pv.metadata.annotations or {}
        if annotations.get(ANN_DYNAMICALLY_PROVISIONED) != self.settings.legacy_provisioner:
            raise self._stage_error(
                log.bind(provisioner=self.settings.legacy_provisioner),
                stage,
                f"PV must have been provisioned by {self.settings.legacy_provisioner}",
            )
        log.debug("PV upgrade: PV was provisioned by the legacy provisioner.")

        claim_ref = pv.spec.claim_ref
        if claim_ref is None or not claim_ref.name or not claim_ref.namespace:
            raise self._stage_error(log, stage, "PV does not reference a PVC")
        progress.namespace = claim_ref.namespace
        progress.pvc_name = claim_ref.name
        pvc_label = f"{claim_ref.namespace}/{claim_ref.name}"
        log = log.bind(pvc=pvc_label)

        try:
            pvc = self.gateway.get_cached_pvc(claim_ref.name, claim_ref.namespace)
        except Exception as error:  # pylint: disable=broad-except
            raise self._stage_error(log, stage, "could not find the PVC bound to the PV", error) from error
        log.debug("PV upgrade: PVC found in cache.")

        pvc_phase = pvc.status.phase if pvc.status else None
        if pvc_phase != PVC_PHASE_BOUND:
            raise self._stage_error(log.bind(phase=pvc_phase), stage, "PVC must be Bound")

        try:
            owned_pods, naked_pods = self.get_pods_for_pvc(pvc)
        except Exception as error:  # pylint: disable=broad-except
            raise self._stage_error(log, stage, "could not check for pods using the PV", error) from error
        if naked_pods:
            raise self._stage_error(
                log,
                stage,
                f"one or more naked pods are using the PV ({','.join(naked_pods)}); "
                "shut down these pods manually and try again",
            )
        if owned_pods:
            log.info("PV upgrade: one or more owned pods are using the PV.", pods=",".join(owned_pods))
        else:
            log.info("PV upgrade: no owned pods are using the PV.")

        finalizers = pv.metadata.finalizers or []
        if finalizers and finalizers != [FINALIZER_PV_PROTECTION]:
            raise self._stage_error(
                log.bind(finalizers=finalizers),
                stage,
                f"PV has a finalizer other than {FINALIZER_PV_PROTECTION}",
            )

        return volume, pv, pvc, owned_pods

    def delete_pv_for_upgrade(self, pv: client.V1PersistentVolume) -> None:
        """Delete a PV, clearing any finalizers that keep it from going away.

        A PV that already carries a deletion timestamp (left over from an earlier,
        interrupted run) is not deleted again; only its finalizers are removed.
        Returns once the PV is gone from the cache.
        """
        name = pv.metadata.name
        wait_seconds = self.settings.pv_delete_wait_seconds

        if pv.metadata.deletion_timestamp is None:
            self.gateway.delete_pv(name)
            deleted_pv = self.waiter.wait_for_deleted_pv(name, wait_seconds)
            if deleted_pv is not None and deleted_pv.metadata.finalizers:
                self.remove_pv_finalizers(deleted_pv)
        elif pv.metadata.finalizers:
            self.remove_pv_finalizers(pv)

        self.waiter.wait_for_pv_disappearance(name, wait_seconds)

    def remove_pv_finalizers(self, pv: client.V1PersistentVolume) -> client.V1PersistentVolume:
        pv_clone = copy.deepcopy(pv)
        pv_clone.metadata.finalizers = []
        patched_pv = self.gateway.patch_pv(pv, pv_clone)
        self.logger.info("PV upgrade: removed finalizers from PV.", pv=pv.metadata.name)
        return patched_pv

    def remove_pvc_bind_completed_annotation(
        self,
        pvc: client.V1PersistentVolumeClaim,
    ) -> client.V1PersistentVolumeClaim:
        pvc_clone = copy.deepcopy(pvc)
        pvc_clone.metadata.annotations = {
            key: value for key, value in (pvc.metadata.annotations or {}).items() if key != ANN_BIND_COMPLETED
        }
        return self.gateway.patch_pvc(pvc, pvc_clone)

    def get_pods_for_pvc(self, pvc: client.V1PersistentVolumeClaim) -> tuple[list[str], list[str]]:
        """Split the pods mounting ``pvc`` into (owned, naked) pod names."""
        owned_pods: list[str] = []
        naked_pods: list[str] = []
        for pod in self.gateway.list_pods(pvc.metadata.namespace):
            volumes = pod.spec.volumes if pod.spec else None
            if not any(
                volume.persistent_volume_claim is not None
                and volume.persistent_volume_claim.claim_name == pvc.metadata.name
                for volume in volumes or []
            ):
                continue
            if any(ref.controller for ref in pod.metadata.owner_references or []):
                owned_pods.append(pod.metadata.name)
            else:
                naked_pods.append(pod.metadata.name)
        return owned_pods, naked_pods

    def _stage_error(
        self,
        log: BoundLogger,
        stage: UpgradeStage,
        message: str,
        error: Exception | None = None,
    ) -> UpgradeStageError:
        if error is None:
            log.error(f"PV upgrade: {message}.", stage=stage.value)
            return UpgradeStageError(stage=stage, reason=message)
        log.error(f"PV upgrade: {message}.", stage=stage.value, error=_error_message(error))
        return UpgradeStageError(stage=stage, reason=f"{message}: {_error_message(error)}")


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
