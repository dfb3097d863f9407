from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from .backoff import BackoffConfig

CSI_PROVISIONER = "csi.trident.netapp.io"
LEGACY_PROVISIONER = "netapp.io/trident"


@dataclass(frozen=True)
class AppConfig:
    metadata_db_path: Path = Path(os.getenv("NPVU_METADATA_DB_PATH", "./data/upgrades.db"))
    registry_path: Path = Path(os.getenv("NPVU_REGISTRY_PATH", "./data/volumes.yaml"))
    csi_driver: str = os.getenv("NPVU_CSI_DRIVER", CSI_PROVISIONER)
    legacy_provisioner: str = os.getenv("NPVU_LEGACY_PROVISIONER", LEGACY_PROVISIONER)
    backoff_initial_interval: float = float(os.getenv("NPVU_BACKOFF_INITIAL_INTERVAL", "1.0"))
    backoff_randomization_factor: float = float(os.getenv("NPVU_BACKOFF_RANDOMIZATION_FACTOR", "0.1"))
    backoff_multiplier: float = float(os.getenv("NPVU_BACKOFF_MULTIPLIER", "1.414"))
    backoff_max_interval: float = float(os.getenv("NPVU_BACKOFF_MAX_INTERVAL", "5.0"))
    pv_delete_wait_seconds: float = float(os.getenv("NPVU_PV_DELETE_WAIT_SECONDS", "30"))
    pvc_phase_wait_seconds: float = float(os.getenv("NPVU_PVC_PHASE_WAIT_SECONDS", "30"))
    pod_delete_wait_seconds: float = float(os.getenv("NPVU_POD_DELETE_WAIT_SECONDS", "60"))
    cache_sync_timeout_seconds: float = float(os.getenv("NPVU_CACHE_SYNC_TIMEOUT_SECONDS", "10"))
    log_level: str = os.getenv("NPVU_LOG_LEVEL", "INFO")

    def backoff(self) -> BackoffConfig:
        return BackoffConfig(
            initial_interval=self.backoff_initial_interval,
            randomization_factor=self.backoff_randomization_factor,
            multiplier=self.backoff_multiplier,
            max_interval=self.backoff_max_interval,
        )


def ensure_directories(config: AppConfig) -> None:
    config.metadata_db_path.parent.mkdir(parents=True, exist_ok=True)
