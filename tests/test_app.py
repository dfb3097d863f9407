from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock

import pytest
from kubernetes import client

from pv_upgrader.app import (
    _AUTH_MODE_IN_CLUSTER,
    _AUTH_MODE_PASTE_KUBECONFIG,
    _AUTH_MODE_USE_KUBECONFIG_PATH,
    _actionable_next_step,
    _build_candidate_rows,
    _build_history_rows,
    _build_result_rows,
    _build_workflow_rows,
    _configure_logging_once,
    _default_auth_mode,
    _kubeconfig_context_options,
    _start_cluster_session,
    _validate_connection_inputs,
)
from pv_upgrader.config import AppConfig
from pv_upgrader.k8s import KubernetesAuthenticationError, KubernetesClients
from pv_upgrader.models import UpgradeResult


def _legacy_pv() -> client.V1PersistentVolume:
    return client.V1PersistentVolume(
        metadata=client.V1ObjectMeta(name="pv1"),
        spec=client.V1PersistentVolumeSpec(
            capacity={"storage": "5Gi"},
            storage_class_name="gold",
            claim_ref=client.V1ObjectReference(namespace="apps", name="db-data"),
            nfs=client.V1NFSVolumeSource(server="10.0.0.1", path="/trident_db"),
        ),
        status=client.V1PersistentVolumeStatus(phase="Bound"),
    )


def _failed_result(*, failed_stage: str, message: str) -> UpgradeResult:
    return UpgradeResult(
        volume="pv1",
        status="failed",
        started_at="2026-02-23T10:00:00+00:00",
        finished_at="2026-02-23T10:01:00+00:00",
        pv_name="pv1",
        namespace="apps",
        pvc_name="db-data",
        failed_stage=failed_stage,
        message=message,
    )


def _valid_kubeconfig_content() -> str:
    return """
apiVersion: v1
clusters:
  - name: dev
    cluster:
      server: https://example.invalid
contexts:
  - name: dev
    context:
      cluster: dev
      user: dev
users:
  - name: dev
    user:
      token: abc
current-context: dev
"""


def test_build_candidate_rows_with_bound_nfs_pv_returns_source_claim_and_last_upgrade() -> None:
    rows = _build_candidate_rows([_legacy_pv()], {"pv1": "2026-02-23T11:01:00+00:00"})

    assert rows == [
        {
            "pv": "pv1",
            "source": "nfs",
            "phase": "Bound",
            "pvc": "apps/db-data",
            "capacity": "5Gi",
            "storage_class": "gold",
            "last_successful_upgrade_at": "2026-02-23T11:01:00+00:00",
        }
    ]


def test_build_candidate_rows_with_missing_optional_fields_returns_unknown_defaults() -> None:
    pv = client.V1PersistentVolume(metadata=client.V1ObjectMeta(name="pv2"), spec=client.V1PersistentVolumeSpec())

    rows = _build_candidate_rows([pv])

    assert rows[0]["source"] == "unknown"
    assert rows[0]["phase"] == "Unknown"
    assert rows[0]["pvc"] == "unbound"
    assert rows[0]["capacity"] == "unknown"
    assert rows[0]["storage_class"] == "unknown"
    assert rows[0]["last_successful_upgrade_at"] == "never"


def test_build_result_rows_with_failed_stage_includes_actionable_next_step() -> None:
    rows = _build_result_rows(
        [
            _failed_result(
                failed_stage="validating",
                message="validating stage failed: one or more naked pods are using the PV (debug)",
            )
        ]
    )

    assert len(rows) == 1
    assert rows[0]["status"] == "failed"
    assert rows[0]["pvc"] == "apps/db-data"
    assert "naked pods" in rows[0]["actionable_message"]
    assert "Nothing was changed" in rows[0]["actionable_message"]


def test_build_result_rows_with_pvc_lost_timeout_includes_recovery_hint() -> None:
    rows = _build_result_rows(
        [
            _failed_result(
                failed_stage="awaiting_pvc_lost",
                message="awaiting_pvc_lost stage failed: PVC did not reach the Lost state",
            )
        ]
    )

    assert "The legacy PV is gone" in rows[0]["actionable_message"]


def test_actionable_next_step_with_unknown_stage_falls_back_to_generic_hint() -> None:
    assert _actionable_next_step("boom", "unknown_stage") == (
        "boom | Next step: Inspect Kubernetes events and application logs for more detail."
    )
    assert _actionable_next_step("  ", "validating") == "No follow-up action required."


def test_build_history_rows_with_success_and_failure_sets_expected_actionable_messages() -> None:
    rows = _build_history_rows(
        [
            {
                "volume": "pv1",
                "namespace": "apps",
                "pvc_name": "db-data",
                "status": "success",
                "failed_stage": None,
                "message": "",
                "created_at": "2026-02-23T11:01:00+00:00",
            },
            {
                "volume": "pv2",
                "namespace": None,
                "pvc_name": None,
                "status": "failed",
                "failed_stage": "validating",
                "message": "validating stage failed: could not find the volume to upgrade",
                "created_at": "2026-02-23T12:01:00+00:00",
            },
        ]
    )

    assert rows[0]["actionable_message"] == "Upgrade completed successfully."
    assert rows[0]["pvc"] == "apps/db-data"
    assert rows[1]["pvc"] == ""
    assert rows[1]["failed_stage"] == "validating"
    assert "Next step:" in rows[1]["actionable_message"]


def test_build_workflow_rows_with_connection_selection_and_upgrade_completed_marks_steps_done() -> None:
    rows = _build_workflow_rows(connected=True, candidate_count=3, selected=True, upgraded=True)

    assert [row["state"] for row in rows] == ["Done", "Done", "Done", "Done"]


def test_build_workflow_rows_without_connection_blocks_later_steps() -> None:
    rows = _build_workflow_rows(connected=False, candidate_count=0, selected=False, upgraded=False)

    assert [row["state"] for row in rows] == ["Ready", "Waiting", "Waiting", "Waiting"]


def test_validate_connection_inputs_with_pasted_mode_and_missing_content_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="",
    )

    assert error == "Paste kubeconfig content before connecting."


def test_validate_connection_inputs_with_existing_kubeconfig_path_returns_none(tmp_path: Path) -> None:
    kubeconfig_path = tmp_path / "config"
    kubeconfig_path.write_text(_valid_kubeconfig_content())

    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_USE_KUBECONFIG_PATH,
        kubeconfig_path_input=str(kubeconfig_path),
        kubeconfig_text_input="",
    )

    assert error is None


def test_validate_connection_inputs_with_kubeconfig_path_directory_returns_error(tmp_path: Path) -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_USE_KUBECONFIG_PATH,
        kubeconfig_path_input=str(tmp_path),
        kubeconfig_text_input="",
    )

    assert error == f"Kubeconfig path must point to a file: {tmp_path}"


def test_validate_connection_inputs_with_pasted_invalid_yaml_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="apiVersion: v1\nclusters: [",
    )

    assert error == "Pasted kubeconfig must be valid YAML: ParserError."


def test_validate_connection_inputs_with_pasted_missing_contexts_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="""
apiVersion: v1
clusters: []
users: []
""",
    )

    assert error == "Pasted kubeconfig is missing required field(s): contexts."


def test_validate_connection_inputs_with_incluster_mode_without_pod_environment_returns_error(monkeypatch) -> None:
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.setattr("pv_upgrader.app.Path.exists", lambda self: False)

    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_IN_CLUSTER,
        kubeconfig_path_input="",
        kubeconfig_text_input="",
    )

    assert "In-cluster service account mode requires Kubernetes pod environment variables" in str(error)


def test_default_auth_mode_prefers_env_override_then_incluster_detection(monkeypatch) -> None:
    monkeypatch.delenv("NPVU_DEFAULT_AUTH_MODE", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.setattr("pv_upgrader.app.Path.exists", lambda self: False)
    assert _default_auth_mode() == _AUTH_MODE_USE_KUBECONFIG_PATH

    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.96.0.1")
    monkeypatch.setattr(
        "pv_upgrader.app.Path.exists",
        lambda self: str(self) == "/var/run/secrets/kubernetes.io/serviceaccount/token",
    )
    assert _default_auth_mode() == _AUTH_MODE_IN_CLUSTER

    monkeypatch.setenv("NPVU_DEFAULT_AUTH_MODE", "paste")
    assert _default_auth_mode() == _AUTH_MODE_PASTE_KUBECONFIG


def test_start_cluster_session_with_unsynced_cache_stops_reflectors_and_raises(monkeypatch) -> None:
    reflector = Mock()
    reflector.resource = "persistentvolumes"
    reflector.wait_for_sync.return_value = False
    monkeypatch.setattr("pv_upgrader.app.StoreReflector", Mock(return_value=reflector))
    clients = KubernetesClients(api_client=Mock(), core_api=Mock())

    with pytest.raises(TimeoutError, match="persistentvolumes cache did not sync within 0.50 seconds"):
        _start_cluster_session(clients, AppConfig(cache_sync_timeout_seconds=0.5))

    assert reflector.start.call_count == 2
    assert reflector.stop.call_count == 2


def test_start_cluster_session_with_synced_caches_builds_gateway(monkeypatch) -> None:
    reflector = Mock()
    reflector.wait_for_sync.return_value = True
    monkeypatch.setattr("pv_upgrader.app.StoreReflector", Mock(return_value=reflector))
    core_api = Mock()
    api_client = Mock()

    session = _start_cluster_session(KubernetesClients(api_client=api_client, core_api=core_api), AppConfig())

    assert session.gateway.core_api is core_api
    assert session.gateway.api_client is api_client
    assert len(session.reflectors) == 2
    reflector.stop.assert_not_called()


def test_kubeconfig_context_options_with_valid_kubeconfig_returns_context_names(tmp_path: Path) -> None:
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text(_valid_kubeconfig_content(), encoding="utf-8")

    assert _kubeconfig_context_options(str(kubeconfig)) == ["dev"]


def test_kubeconfig_context_options_with_missing_file_skips_context_listing(monkeypatch, tmp_path: Path) -> None:
    list_context_names = Mock()
    monkeypatch.setattr("pv_upgrader.app.list_context_names", list_context_names)

    assert _kubeconfig_context_options(str(tmp_path / "missing")) == []
    assert _kubeconfig_context_options("  ") == []
    list_context_names.assert_not_called()


def test_kubeconfig_context_options_with_unreadable_kubeconfig_returns_empty_list(monkeypatch, tmp_path: Path) -> None:
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text("not: [valid", encoding="utf-8")
    monkeypatch.setattr(
        "pv_upgrader.app.list_context_names",
        Mock(side_effect=KubernetesAuthenticationError("Unable to list kubeconfig contexts")),
    )

    assert _kubeconfig_context_options(str(kubeconfig)) == []


def test_configure_logging_once_with_repeated_reruns_sets_up_logging_a_single_time(monkeypatch) -> None:
    setup_logging = Mock()
    monkeypatch.setattr("pv_upgrader.app.setup_logging", setup_logging)
    state: dict[str, object] = {"logging_configured": False}

    _configure_logging_once(state, "debug")
    _configure_logging_once(state, "debug")
    _configure_logging_once(state, "debug")

    setup_logging.assert_called_once_with("debug")
    assert state["logging_configured"] is True
