from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

VOLUME_STATE_ONLINE = "online"
MIGRATION_TYPE_CSI = "csi"


@dataclass(frozen=True)
class VolumeRecord:
    name: str
    internal_name: str
    backend_uuid: str
    protocol: str
    state: str
    display_name: str | None = None


@dataclass(frozen=True)
class UpgradeVolumeRequest:
    volume: str
    type: str = MIGRATION_TYPE_CSI


class UpgradeStage(str, Enum):
    VALIDATING = "validating"
    DELETING_LEGACY_PV = "deleting_legacy_pv"
    AWAITING_PVC_LOST = "awaiting_pvc_lost"
    DELETING_OWNED_PODS = "deleting_owned_pods"
    AWAITING_PODS_TERMINAL = "awaiting_pods_terminal"
    STRIPPING_BIND_ANNOTATION = "stripping_bind_annotation"
    CREATING_CSI_PV = "creating_csi_pv"
    AWAITING_PVC_BOUND = "awaiting_pvc_bound"
    DONE = "done"


@dataclass(frozen=True)
class UpgradeResult:
    volume: str
    status: str
    started_at: str
    finished_at: str
    pv_name: str | None = None
    namespace: str | None = None
    pvc_name: str | None = None
    failed_stage: str | None = None
    message: str = ""
