from __future__ import annotations

import copy

from kubernetes import client

from .k8s import ANN_DYNAMICALLY_PROVISIONED
from .models import VolumeRecord

LEGACY_SOURCE_NFS = "nfs"
LEGACY_SOURCE_ISCSI = "iscsi"


def legacy_source_kinds(pv: client.V1PersistentVolume) -> tuple[str, ...]:
    spec = pv.spec
    if spec is None:
        return ()
    kinds: list[str] = []
    if spec.nfs is not None:
        kinds.append(LEGACY_SOURCE_NFS)
    if spec.iscsi is not None:
        kinds.append(LEGACY_SOURCE_ISCSI)
    return tuple(kinds)


def build_csi_volume_attributes(volume: VolumeRecord) -> dict[str, str]:
    return {
        "backendUUID": volume.backend_uuid,
        "name": volume.name,
        "internalName": volume.internal_name,
        "protocol": volume.protocol,
    }


def build_csi_persistent_volume(
    pv: client.V1PersistentVolume,
    volume: VolumeRecord,
    *,
    driver: str,
) -> client.V1PersistentVolume:
    """Convert an NFS or iSCSI PV into its CSI equivalent without touching the cluster.

    The PV name doubles as the CSI volume handle, so the claim reference of the
    bound PVC stays valid. Attributes come from the volume record only; values
    embedded in the legacy source (server, path, portal) are not carried over.
    """
    kinds = legacy_source_kinds(pv)
    if len(kinds) != 1:
        raise ValueError(f"PV {pv.metadata.name} must carry exactly one NFS or iSCSI source, found {list(kinds)}")

    fs_type = ""
    if kinds[0] == LEGACY_SOURCE_NFS:
        read_only = bool(pv.spec.nfs.read_only)
    else:
        read_only = bool(pv.spec.iscsi.read_only)
        fs_type = pv.spec.iscsi.fs_type or ""

    csi_pv = copy.deepcopy(pv)
    csi_pv.metadata.resource_version = None
    csi_pv.metadata.uid = None
    csi_pv.metadata.creation_timestamp = None
    csi_pv.metadata.deletion_timestamp = None
    csi_pv.metadata.deletion_grace_period_seconds = None
    csi_pv.metadata.managed_fields = None
    csi_pv.status = None
    csi_pv.spec.nfs = None
    csi_pv.spec.iscsi = None
    csi_pv.spec.csi = client.V1CSIPersistentVolumeSource(
        driver=driver,
        volume_handle=pv.metadata.name,
        read_only=read_only,
        fs_type=fs_type,
        volume_attributes=build_csi_volume_attributes(volume),
    )

    annotations = dict(csi_pv.metadata.annotations or {})
    annotations[ANN_DYNAMICALLY_PROVISIONED] = driver
    csi_pv.metadata.annotations = annotations
    return csi_pv
