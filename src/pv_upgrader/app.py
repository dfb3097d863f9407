from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, MutableMapping
import os

import streamlit as st
import yaml
from kubernetes import client

from pv_upgrader.cache import ObjectStore, StoreReflector, cluster_scoped_key, namespaced_key
from pv_upgrader.config import AppConfig, ensure_directories
from pv_upgrader.converter import legacy_source_kinds
from pv_upgrader.k8s import (
    ClusterGateway,
    KubernetesAuthenticationError,
    KubernetesClients,
    list_context_names,
    list_upgrade_candidates,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from pv_upgrader.logging_config import setup_logging
from pv_upgrader.metadata import UpgradeHistoryStore
from pv_upgrader.models import UpgradeResult, UpgradeStage, UpgradeVolumeRequest
from pv_upgrader.registry import RegistryLoadError, StaticVolumeRegistry
from pv_upgrader.upgrade import PersistentVolumeUpgrader, UpgradeSettings
from pv_upgrader.waiters import ResourceStateWaiter

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}

_STAGE_HINTS: dict[str, str] = {
    UpgradeStage.VALIDATING.value: (
        "Nothing was changed. Fix the reported precondition (volume state, PV type, naked pods, "
        "finalizers) and run the upgrade again."
    ),
    UpgradeStage.DELETING_LEGACY_PV.value: (
        "Check RBAC for deleting and patching persistentvolumes. Rerunning is safe: a PV already marked "
        "for deletion is not deleted twice."
    ),
    UpgradeStage.AWAITING_PVC_LOST.value: (
        "The legacy PV is gone. Inspect the PVC events and the PV controller before rerunning."
    ),
    UpgradeStage.DELETING_OWNED_PODS.value: (
        "The PVC is Lost. Delete the remaining pods that mount it manually, then finish the upgrade by hand."
    ),
    UpgradeStage.AWAITING_PODS_TERMINAL.value: (
        "Inspect pod events; a pod stuck in Running usually has a hung volume unmount on its node."
    ),
    UpgradeStage.STRIPPING_BIND_ANNOTATION.value: (
        "Remove the pv.kubernetes.io/bind-completed annotation from the PVC manually."
    ),
    UpgradeStage.CREATING_CSI_PV.value: (
        "Verify RBAC allows persistentvolume creation and that no PV with the same name still exists."
    ),
    UpgradeStage.AWAITING_PVC_BOUND.value: (
        "The CSI PV exists. Confirm the CSI driver is running and inspect the PVC events."
    ),
}


@dataclass(frozen=True)
class ClusterSession:
    clients: KubernetesClients
    gateway: ClusterGateway
    reflectors: tuple[StoreReflector, ...]


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "session": None,
        "last_upgrade_result": None,
        "selected_volume": None,
        "logging_configured": False,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _configure_logging_once(state: MutableMapping[str, Any], log_level: str) -> None:
    # Streamlit reruns main() on every widget interaction.
    if state.get("logging_configured"):
        return
    setup_logging(log_level)
    state["logging_configured"] = True


def _kubeconfig_context_options(kubeconfig_path_input: str) -> list[str]:
    """Context names from the kubeconfig at the given path, or [] when unreadable."""
    kubeconfig_path = Path(kubeconfig_path_input.strip()).expanduser()
    if not kubeconfig_path_input.strip() or not kubeconfig_path.is_file():
        return []
    try:
        return list_context_names(str(kubeconfig_path))
    except KubernetesAuthenticationError:
        return []


def _build_candidate_rows(
    pvs: list[client.V1PersistentVolume],
    last_success_map: dict[str, str] | None = None,
) -> list[dict[str, str]]:
    last_success_map = last_success_map or {}
    rows: list[dict[str, str]] = []
    for pv in pvs:
        claim_ref = pv.spec.claim_ref if pv.spec else None
        claim = f"{claim_ref.namespace}/{claim_ref.name}" if claim_ref and claim_ref.name else "unbound"
        capacity = (pv.spec.capacity or {}).get("storage") if pv.spec else None
        rows.append(
            {
                "pv": pv.metadata.name,
                "source": ",".join(legacy_source_kinds(pv)) or "unknown",
                "phase": pv.status.phase if pv.status and pv.status.phase else "Unknown",
                "pvc": claim,
                "capacity": capacity or "unknown",
                "storage_class": (pv.spec.storage_class_name if pv.spec else None) or "unknown",
                "last_successful_upgrade_at": last_success_map.get(pv.metadata.name, "never"),
            }
        )
    return rows


def _actionable_next_step(message: str, failed_stage: str | None) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    hint = _STAGE_HINTS.get(failed_stage or "")
    if hint:
        return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect Kubernetes events and application logs for more detail."


def _build_result_rows(results: list[UpgradeResult]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for result in results:
        actionable_message = "Upgrade completed successfully."
        if result.status != "success":
            actionable_message = _actionable_next_step(result.message, result.failed_stage)

        rows.append(
            {
                "volume": result.volume,
                "pvc": f"{result.namespace}/{result.pvc_name}" if result.pvc_name else "",
                "status": result.status,
                "failed_stage": result.failed_stage or "",
                "finished_at": result.finished_at,
                "message": result.message,
                "actionable_message": actionable_message,
            }
        )
    return rows


def _build_history_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    rendered_rows: list[dict[str, str]] = []
    for row in rows:
        status = str(row.get("status", ""))
        message = str(row.get("message", "") or "")
        failed_stage = str(row.get("failed_stage", "") or "")
        actionable_message = "Upgrade completed successfully."
        if status != "success":
            actionable_message = _actionable_next_step(message, failed_stage)

        pvc_name = str(row.get("pvc_name", "") or "")
        rendered_rows.append(
            {
                "volume": str(row.get("volume", "")),
                "pvc": f"{row.get('namespace', '')}/{pvc_name}" if pvc_name else "",
                "status": status,
                "failed_stage": failed_stage,
                "created_at": str(row.get("created_at", "")),
                "message": message,
                "actionable_message": actionable_message,
            }
        )
    return rendered_rows


def _build_workflow_rows(
    *,
    connected: bool,
    candidate_count: int,
    selected: bool,
    upgraded: bool,
) -> list[dict[str, str]]:
    connect_state = "done" if connected else "active"
    discover_state = "done" if candidate_count > 0 else ("active" if connected else "blocked")
    select_state = "done" if selected else ("active" if candidate_count > 0 else "blocked")
    upgrade_state = "done" if upgraded else ("active" if selected else "blocked")

    return [
        {
            "step": "1. Connect",
            "state": _WORKFLOW_STATE_LABELS[connect_state],
            "description": "Authenticate to the cluster and sync the PV/PVC cache.",
        },
        {
            "step": "2. Discover",
            "state": _WORKFLOW_STATE_LABELS[discover_state],
            "description": "List NFS/iSCSI PVs created by the legacy provisioner.",
        },
        {
            "step": "3. Select",
            "state": _WORKFLOW_STATE_LABELS[select_state],
            "description": "Choose the PV to convert.",
        },
        {
            "step": "4. Upgrade",
            "state": _WORKFLOW_STATE_LABELS[upgrade_state],
            "description": "Replace the PV with its CSI equivalent and rebind the PVC.",
        },
    ]


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _default_auth_mode() -> str:
    configured_default = os.getenv("NPVU_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"paste", "pasted", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.exists():
        return f"Kubeconfig path does not exist: {expanded_path}"
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to a file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    required_fields = ("apiVersion", "clusters", "contexts", "users")
    missing_fields = [field for field in required_fields if field not in parsed]
    if missing_fields:
        missing_fields_csv = ", ".join(missing_fields)
        return f"{source_label} is missing required field(s): {missing_fields_csv}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def _start_cluster_session(clients: KubernetesClients, config: AppConfig) -> ClusterSession:
    pv_store = ObjectStore()
    pvc_store = ObjectStore()
    reflectors = (
        StoreReflector(
            clients.core_api.list_persistent_volume,
            pv_store,
            cluster_scoped_key,
            resource="persistentvolumes",
        ),
        StoreReflector(
            clients.core_api.list_persistent_volume_claim_for_all_namespaces,
            pvc_store,
            namespaced_key,
            resource="persistentvolumeclaims",
        ),
    )
    for reflector in reflectors:
        reflector.start()
    for reflector in reflectors:
        if not reflector.wait_for_sync(config.cache_sync_timeout_seconds):
            _stop_cluster_session_reflectors(reflectors)
            raise TimeoutError(
                f"{reflector.resource} cache did not sync within {config.cache_sync_timeout_seconds:3.2f} seconds"
            )

    gateway = ClusterGateway(
        core_api=clients.core_api,
        pv_store=pv_store,
        pvc_store=pvc_store,
        api_client=clients.api_client,
    )
    return ClusterSession(clients=clients, gateway=gateway, reflectors=reflectors)


def _stop_cluster_session_reflectors(reflectors: tuple[StoreReflector, ...]) -> None:
    for reflector in reflectors:
        reflector.stop()


def _disconnect() -> None:
    session: ClusterSession | None = st.session_state.session
    if session is not None:
        _stop_cluster_session_reflectors(session.reflectors)
    st.session_state.connected = False
    st.session_state.session = None
    st.session_state.connection = {}
    st.session_state.last_upgrade_result = None
    st.session_state.selected_volume = None


def main() -> None:
    st.set_page_config(page_title="Nerdy PV Upgrader", layout="wide")
    _initialize_state()

    base_config = AppConfig()
    ensure_directories(base_config)
    _configure_logging_once(st.session_state, base_config.log_level)

    st.title("Nerdy PV Upgrader")
    st.caption("Convert NFS/iSCSI persistent volumes to CSI in place, keeping their claims and data.")

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(_default_auth_mode()),
    )

    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)

    context_options: list[str] = []
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        context_options = _kubeconfig_context_options(kubeconfig_path_input)
    if context_options:
        context = st.sidebar.selectbox(
            "Kubernetes context",
            options=["", *context_options],
            format_func=lambda name: name or "(kubeconfig current context)",
        )
    else:
        context = st.sidebar.text_input(
            "Kubernetes context (optional)",
            value="",
            help=(
                "Ignored for in-cluster service account mode."
                if auth_mode == _AUTH_MODE_IN_CLUSTER
                else "Optional kubeconfig context override."
            ),
        )

    st.sidebar.header("Volume Registry")
    registry_path_input = st.sidebar.text_input("Registry export path", value=str(base_config.registry_path))
    st.sidebar.caption(f"Upgrade history DB (always local): {base_config.metadata_db_path}")

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            _disconnect()
            try:
                kubeconfig_path: str | None = None
                in_cluster = auth_mode == _AUTH_MODE_IN_CLUSTER

                if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                    kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
                elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                    kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

                clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=in_cluster,
                )
                with st.spinner("Syncing PV and PVC cache..."):
                    st.session_state.session = _start_cluster_session(clients, base_config)
                st.session_state.connected = True
                st.session_state.connection = {
                    "auth_mode": auth_mode,
                    "kubeconfig_path": kubeconfig_path,
                    "context": context or None,
                    "in_cluster": in_cluster,
                }
                st.success("Connected to Kubernetes cluster.")
            except Exception as error:  # pylint: disable=broad-except
                _disconnect()
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        _disconnect()

    session: ClusterSession | None = st.session_state.session
    history_store = UpgradeHistoryStore(base_config.metadata_db_path)
    history_store.initialize()

    candidates: list[client.V1PersistentVolume] = []
    if session is not None:
        candidates = list_upgrade_candidates(session.gateway, legacy_provisioner=base_config.legacy_provisioner)

    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            connected=bool(st.session_state.connected and session is not None),
            candidate_count=len(candidates),
            selected=bool(st.session_state.selected_volume),
            upgraded=st.session_state.last_upgrade_result is not None,
        ),
        use_container_width=True,
        hide_index=True,
    )

    if not st.session_state.connected or session is None:
        st.info("Connect to a cluster from the sidebar to list upgradable volumes.")
        return

    st.subheader("Upgrade Candidates")
    if not candidates:
        st.info(f"No NFS/iSCSI PVs provisioned by {base_config.legacy_provisioner} were found.")
    else:
        st.dataframe(
            _build_candidate_rows(candidates, history_store.get_last_success_map()),
            use_container_width=True,
            hide_index=True,
        )
        candidate_names = [pv.metadata.name for pv in candidates]
        selected_volume = st.selectbox("Volume to upgrade", options=candidate_names)
        st.session_state.selected_volume = selected_volume
        st.warning(
            "The legacy PV and every controller-owned pod mounting its claim are deleted during the upgrade. "
            "There is no automatic rollback if a step fails."
        )
        confirmed = st.checkbox(f"I understand, upgrade {selected_volume}")

        if st.button("Upgrade selected volume", disabled=not confirmed):
            try:
                registry = StaticVolumeRegistry.from_yaml_file(Path(registry_path_input))
            except RegistryLoadError as error:
                st.error(str(error))
            else:
                upgrader = PersistentVolumeUpgrader(
                    registry=registry,
                    gateway=session.gateway,
                    waiter=ResourceStateWaiter(session.gateway, base_config.backoff()),
                    settings=UpgradeSettings.from_app_config(base_config),
                )
                with st.spinner(f"Upgrading {selected_volume}..."):
                    result = upgrader.run(UpgradeVolumeRequest(volume=selected_volume))
                history_store.record_result(result)
                st.session_state.last_upgrade_result = result
                if result.status == "success":
                    st.success(f"Volume {selected_volume} now uses {base_config.csi_driver}.")
                else:
                    st.error(_actionable_next_step(result.message, result.failed_stage))

    if st.session_state.last_upgrade_result is not None:
        st.subheader("Latest Upgrade")
        st.dataframe(
            _build_result_rows([st.session_state.last_upgrade_result]),
            use_container_width=True,
            hide_index=True,
        )

    st.subheader("Recent Upgrade History")
    history_rows = _build_history_rows(history_store.get_recent_results(limit=100))
    if history_rows:
        st.dataframe(history_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No upgrade history yet.")


if __name__ == "__main__":
    main()
