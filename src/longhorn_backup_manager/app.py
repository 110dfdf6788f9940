from __future__ import annotations

from datetime import UTC, datetime
import os
from pathlib import Path

import streamlit as st
import yaml

from longhorn_backup_manager.catalog import BackupCatalog, format_timestamp
from longhorn_backup_manager.config import AppConfig, ensure_directories
from longhorn_backup_manager.confirmation import always_confirm
from longhorn_backup_manager.errors import BackupManagerError
from longhorn_backup_manager.inventory import InventoryTracker
from longhorn_backup_manager.k8s import ClusterGateway, load_kubernetes_clients, persist_kubeconfig_content
from longhorn_backup_manager.logging_utils import configure_logging
from longhorn_backup_manager.models import (
    STATE_COMPLETED,
    BackupRecord,
    EnrolledVolume,
    OffsiteAuditResult,
    ReconcileReport,
    RestorePlan,
)
from longhorn_backup_manager.offsite import OffsiteSyncAuditor, RcloneClient
from longhorn_backup_manager.reconcile import EnrollmentReconciler
from longhorn_backup_manager.restore import RestorePlanner, build_restore_manifest

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "gateway": None,
        "enrolled": [],
        "backups_by_volume": {},
        "reconcile_report": None,
        "restore_plan": None,
        "audit_results": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _reset_state() -> None:
    st.session_state.enrolled = []
    st.session_state.backups_by_volume = {}
    st.session_state.reconcile_report = None
    st.session_state.restore_plan = None
    st.session_state.audit_results = []


def _latest_completed(records: list[BackupRecord]) -> BackupRecord | None:
    completed = [record for record in records if record.state == STATE_COMPLETED]
    return completed[-1] if completed else None


def _build_inventory_rows(
    enrolled: list[EnrolledVolume],
    backups_by_volume: dict[str, list[BackupRecord]],
) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for volume in enrolled:
        records = backups_by_volume.get(volume.volume_id or "", [])
        latest = _latest_completed(records)
        rows.append(
            {
                "namespace": volume.namespace,
                "pvc": volume.claim_name,
                "volume": volume.volume_id or "unbound",
                "tier": volume.tier,
                "enrolled_at": volume.enrolled_at or "unknown",
                "backups": str(len(records)) if volume.volume_id else "N/A",
                "latest_completed": latest.id if latest else "none",
                "latest_completed_at": (format_timestamp(latest.created_at) or "never") if latest else "never",
            }
        )
    return rows


def _build_reconcile_rows(report: ReconcileReport) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    action = "would change" if report.dry_run else "changed"
    for binding in report.applied:
        rows.append(
            {
                "volume": binding.volume_id,
                "jobs": ", ".join(sorted(binding.job_names)) or "(none)",
                "result": action,
                "detail": "",
            }
        )
    for binding in report.unchanged:
        rows.append(
            {
                "volume": binding.volume_id,
                "jobs": ", ".join(sorted(binding.job_names)) or "(none)",
                "result": "unchanged",
                "detail": "",
            }
        )
    for failure in report.failures:
        rows.append({"volume": failure.volume_id, "jobs": "", "result": "failed", "detail": failure.reason})
    for volume in report.pending:
        rows.append(
            {
                "volume": "unbound",
                "jobs": "",
                "result": "pending",
                "detail": f"{volume.namespace}/{volume.claim_name} is not bound yet",
            }
        )
    return rows


def _build_plan_rows(plan: RestorePlan) -> list[dict[str, str]]:
    return [
        {"field": "target", "value": f"{plan.target_namespace}/{plan.target_claim_name}"},
        {"field": "backup", "value": f"{plan.source_backup_id} ({plan.backup_state})"},
        {"field": "volume", "value": plan.source_volume_id or "unknown"},
        {"field": "size", "value": f"{plan.size} (from {plan.size_source})"},
        {"field": "storage_class", "value": plan.storage_class},
        {"field": "requires_replace", "value": "yes" if plan.requires_replace else "no"},
        {"field": "requires_confirmation", "value": "yes" if plan.requires_confirmation else "no"},
    ]


def _build_audit_rows(results: list[OffsiteAuditResult]) -> list[dict[str, str]]:
    return [
        {
            "volume": result.volume_id,
            "status": "in sync" if result.in_sync else "drift",
            "missing_offsite": ", ".join(sorted(result.missing_backup_ids)),
            "extra_offsite": ", ".join(sorted(result.extra_backup_ids)),
        }
        for result in results
    ]


def _build_workflow_rows(
    *,
    connected: bool,
    enrolled_count: int,
    reconciled: bool,
    planned: bool,
    audited: bool,
) -> list[dict[str, str]]:
    connect_state = "done" if connected else "active"
    inventory_state = "done" if enrolled_count > 0 else ("active" if connected else "blocked")
    reconcile_state = "done" if reconciled else ("active" if enrolled_count > 0 else "blocked")
    restore_state = "done" if planned else ("active" if enrolled_count > 0 else "blocked")
    audit_state = "done" if audited else ("active" if connected else "blocked")

    return [
        {
            "step": "1. Connect",
            "state": _WORKFLOW_STATE_LABELS[connect_state],
            "description": "Authenticate to the cluster from the sidebar.",
        },
        {
            "step": "2. Inventory",
            "state": _WORKFLOW_STATE_LABELS[inventory_state],
            "description": "Load enrolled PVCs and their Longhorn backups.",
        },
        {
            "step": "3. Reconcile",
            "state": _WORKFLOW_STATE_LABELS[reconcile_state],
            "description": "Preview or apply recurring-job selector changes.",
        },
        {
            "step": "4. Restore plan",
            "state": _WORKFLOW_STATE_LABELS[restore_state],
            "description": "Pick a PVC and backup, then review the restore manifest.",
        },
        {
            "step": "5. Offsite audit",
            "state": _WORKFLOW_STATE_LABELS[audit_state],
            "description": "Compare primary backups with the encrypted offsite copy.",
        },
    ]


def _label_for_volume(volume: EnrolledVolume) -> str:
    return f"{volume.namespace}/{volume.claim_name} | tier={volume.tier} | volume={volume.volume_id or 'unbound'}"


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
    configured_default = os.getenv("LBM_DEFAULT_AUTH_MODE", "").strip().lower()
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


def _auth_mode_guidance(auth_mode: str) -> str:
    if auth_mode == _AUTH_MODE_IN_CLUSTER:
        return (
            "Primary mode when the dashboard runs inside the cluster. Uses the pod ServiceAccount, which needs "
            "read access to PVCs and the longhorn.io volumes, backups, and backupvolumes resources."
        )
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return "Use for local runs against a homelab cluster. Provide a readable kubeconfig file path."
    return (
        "Use only for short-lived troubleshooting. Paste a full kubeconfig with apiVersion, clusters, "
        "contexts, and users."
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


def _load_inventory(tracker: InventoryTracker, catalog: BackupCatalog) -> None:
    enrolled = tracker.list_enrolled()
    st.session_state.enrolled = enrolled
    st.session_state.backups_by_volume = {
        volume.volume_id: catalog.list_backups(volume.volume_id) for volume in enrolled if volume.volume_id
    }


def main() -> None:
    st.set_page_config(page_title="Longhorn Backup Manager", layout="wide")
    _initialize_state()

    config = AppConfig()
    ensure_directories(config)
    configure_logging(config.log_level, file_path=config.log_file)

    st.title("Longhorn Backup Manager")
    st.caption("Track enrolled PVCs, reconcile backup schedules, plan restores, and audit the offsite copy.")
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            connected=bool(st.session_state.connected and st.session_state.gateway is not None),
            enrolled_count=len(st.session_state.enrolled),
            reconciled=st.session_state.reconcile_report is not None,
            planned=st.session_state.restore_plan is not None,
            audited=bool(st.session_state.audit_results),
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio("Authentication", options=auth_options, index=auth_options.index(_default_auth_mode()))
    st.sidebar.caption(_auth_mode_guidance(auth_mode))
    context = st.sidebar.text_input("Kubernetes context (optional)", value="")

    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)
    st.sidebar.caption(f"Longhorn namespace: {config.longhorn_namespace}")

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            try:
                kubeconfig_path: str | None = None
                if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                    kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
                elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                    kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

                clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=auth_mode == _AUTH_MODE_IN_CLUSTER,
                )
                st.session_state.gateway = ClusterGateway(
                    clients,
                    longhorn_namespace=config.longhorn_namespace,
                    request_timeout_seconds=config.request_timeout_seconds,
                )
                st.session_state.connected = True
                _reset_state()
                st.success("Connected to Kubernetes cluster.")
            except Exception as error:  # pylint: disable=broad-except
                st.session_state.connected = False
                st.session_state.gateway = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.gateway = None
        _reset_state()

    if not st.session_state.connected or st.session_state.gateway is None:
        st.info("Connect to a cluster from the sidebar to load the backup inventory.")
        return

    gateway: ClusterGateway = st.session_state.gateway
    catalog = BackupCatalog(gateway)
    reconciler = EnrollmentReconciler(gateway, catalog=catalog)
    tracker = InventoryTracker(gateway, config, reconciler=reconciler)

    st.subheader("Enrolled Volumes")
    if st.button("Refresh inventory"):
        with st.spinner("Reading enrolled PVCs and Longhorn backups..."):
            try:
                _load_inventory(tracker, catalog)
                if not st.session_state.enrolled:
                    st.warning(f"No PVCs carry the {config.enabled_label}=true label.")
            except BackupManagerError as error:
                st.error(str(error))

    enrolled: list[EnrolledVolume] = st.session_state.enrolled
    if not enrolled:
        st.info("Click 'Refresh inventory' to load enrolled PVCs.")
    else:
        st.dataframe(
            _build_inventory_rows(enrolled, st.session_state.backups_by_volume),
            use_container_width=True,
            hide_index=True,
        )

        st.subheader("Schedule Reconciliation")
        columns = st.columns(2)
        if columns[0].button("Preview changes"):
            try:
                st.session_state.reconcile_report = reconciler.reconcile(tracker.list_enrolled(), dry_run=True)
            except BackupManagerError as error:
                st.error(str(error))
        if columns[1].button("Apply changes"):
            try:
                st.session_state.reconcile_report = reconciler.reconcile(tracker.list_enrolled())
            except BackupManagerError as error:
                st.error(str(error))
        report: ReconcileReport | None = st.session_state.reconcile_report
        if report is not None:
            st.dataframe(_build_reconcile_rows(report), use_container_width=True, hide_index=True)
            if report.failures:
                st.error(f"{len(report.failures)} volume(s) could not be reconciled.")

        st.subheader("Restore Planner")
        labels = [_label_for_volume(volume) for volume in enrolled]
        label_to_volume = dict(zip(labels, enrolled, strict=False))
        selected_label = st.selectbox("PVC to restore", options=labels)
        selected = label_to_volume[selected_label]
        records = st.session_state.backups_by_volume.get(selected.volume_id or "", [])
        backup_options = ["(latest Completed)"] + [f"{record.id} [{record.state}]" for record in reversed(records)]
        backup_choice = st.selectbox("Backup", options=backup_options)
        new_name = st.text_input("Restore as (optional new PVC name)", value="")
        size_override = st.text_input("Size override (optional, e.g. 20Gi)", value="")
        storage_class = st.text_input("Storage class", value=config.default_storage_class)

        if st.button("Plan restore"):
            planner = RestorePlanner(gateway, catalog, config, confirm=always_confirm)
            explicit = None if backup_choice == backup_options[0] else backup_choice.split(" [", 1)[0]
            try:
                st.session_state.restore_plan = planner.plan(
                    selected.namespace,
                    selected.claim_name,
                    explicit_backup_id=explicit,
                    override_size=size_override or None,
                    storage_class=storage_class or None,
                    new_name=new_name.strip() or None,
                )
            except (BackupManagerError, ValueError) as error:
                st.session_state.restore_plan = None
                st.error(str(error))

        plan: RestorePlan | None = st.session_state.restore_plan
        if plan is not None:
            st.dataframe(_build_plan_rows(plan), use_container_width=True, hide_index=True)
            if plan.requires_confirmation:
                st.warning(f"Backup state is '{plan.backup_state}', not 'Completed'. Data may be partial.")
            if plan.requires_replace:
                st.warning("The target PVC already exists; applying requires deleting it or choosing a new name.")
            manifest = build_restore_manifest(plan, restored_at=datetime.now(tz=UTC), label_prefix=config.label_prefix)
            st.code(yaml.safe_dump(manifest, sort_keys=False), language="yaml")
            st.caption("Dry run only. Apply with: lbm restore <namespace> <pvc> [backup] ...")

    st.subheader("Offsite Audit")
    st.caption(f"Remote: {config.offsite_remote} | grace period: {config.offsite_grace_seconds}s")
    if st.button("Run offsite audit"):
        auditor = OffsiteSyncAuditor(
            catalog,
            RcloneClient(config_path=config.rclone_config_path),
            remote=config.offsite_remote,
            grace_seconds=config.offsite_grace_seconds,
        )
        volume_ids = {volume.volume_id for volume in enrolled if volume.volume_id}
        with st.spinner("Listing the offsite copy..."):
            try:
                volume_ids.update(record.volume_id for record in catalog.list_all() if record.volume_id)
                st.session_state.audit_results = auditor.audit(volume_ids)
            except BackupManagerError as error:
                st.error(str(error))
    if st.session_state.audit_results:
        st.dataframe(_build_audit_rows(st.session_state.audit_results), use_container_width=True, hide_index=True)


if __name__ == "__main__":
    main()
