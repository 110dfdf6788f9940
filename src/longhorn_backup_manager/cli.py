"""Typer CLI entrypoint."""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
import sys
from typing import Iterator, Optional

import typer
import yaml

from .catalog import BackupCatalog, format_timestamp
from .config import AppConfig, ensure_directories
from .confirmation import Confirm, always_confirm
from .errors import BackupManagerError, ConfirmationDeclinedError, PartialFailureError
from .index import build_backup_index, write_backup_index
from .inventory import InventoryTracker
from .k8s import ClusterGateway, KubernetesAuthenticationError, load_kubernetes_clients
from .logging_utils import configure_logging
from .models import ReconcileReport
from .notify import NotificationEvent, Notifier, build_notifier
from .offsite import OffsiteSyncAuditor, RcloneClient, group_offsite_backups
from .reconcile import EnrollmentReconciler
from .restore import OUTCOME_BOUND, RestorePlanner, build_restore_manifest

app = typer.Typer(help="Longhorn backup enrollment, inventory, restore and offsite audit", no_args_is_help=True)
offsite_app = typer.Typer(help="Offsite (rclone) copy commands", no_args_is_help=True)
app.add_typer(offsite_app, name="offsite")

_RULE = "=" * 42


@dataclass(frozen=True)
class CliState:
    config: AppConfig
    kubeconfig: str | None
    context: str | None
    in_cluster: bool


@dataclass(frozen=True)
class Services:
    config: AppConfig
    gateway: ClusterGateway
    catalog: BackupCatalog
    reconciler: EnrollmentReconciler
    tracker: InventoryTracker
    planner: RestorePlanner
    notifier: Notifier


def _build_gateway(state: CliState) -> ClusterGateway:
    clients = load_kubernetes_clients(
        kubeconfig_path=state.kubeconfig,
        context=state.context,
        in_cluster=state.in_cluster,
    )
    return ClusterGateway(
        clients,
        longhorn_namespace=state.config.longhorn_namespace,
        request_timeout_seconds=state.config.request_timeout_seconds,
    )


def _build_sync_tool(config: AppConfig) -> RcloneClient:
    return RcloneClient(config_path=config.rclone_config_path)


def _confirmer(assume_yes: bool) -> Confirm:
    if assume_yes:
        return always_confirm
    return lambda prompt: typer.confirm(prompt, default=False)


def _services(ctx: typer.Context, *, assume_yes: bool = False) -> Services:
    state: CliState = ctx.obj
    confirm = _confirmer(assume_yes)
    gateway = _build_gateway(state)
    catalog = BackupCatalog(gateway)
    reconciler = EnrollmentReconciler(gateway, catalog=catalog, confirm=confirm)
    return Services(
        config=state.config,
        gateway=gateway,
        catalog=catalog,
        reconciler=reconciler,
        tracker=InventoryTracker(gateway, state.config, reconciler=reconciler),
        planner=RestorePlanner(gateway, catalog, state.config, confirm=confirm),
        notifier=build_notifier(state.config.notify_webhook_url, timeout_seconds=state.config.notify_timeout_seconds),
    )


@contextmanager
def _reported_errors() -> Iterator[None]:
    try:
        yield
    except BackupManagerError as error:
        typer.secho(f"ERROR: {error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=error.exit_code) from error
    except (KubernetesAuthenticationError, ValueError) as error:
        typer.secho(f"ERROR: {error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from error


@app.callback()
def main_callback(
    ctx: typer.Context,
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Kubeconfig path (default search path)"),
    context: Optional[str] = typer.Option(None, "--context", help="Kubeconfig context override"),
    in_cluster: bool = typer.Option(False, "--in-cluster", help="Use the pod service account"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LBM_LOG_LEVEL"),
) -> None:
    with _reported_errors():
        config = AppConfig()
        ensure_directories(config)
    configure_logging(log_level or config.log_level, file_path=config.log_file)
    ctx.obj = CliState(config=config, kubeconfig=kubeconfig, context=context, in_cluster=in_cluster)


@app.command("enroll")
def enroll(
    ctx: typer.Context,
    namespace: str = typer.Argument(..., help="PVC namespace"),
    claim: str = typer.Argument(..., help="PVC name"),
    tier: Optional[str] = typer.Argument(None, help="daily (default), weekly, or both"),
) -> None:
    """Add a PVC to the backup schedule."""
    with _reported_errors():
        services = _services(ctx)
        typer.echo(f"Adding PVC {namespace}/{claim} to backup schedule (tier: {tier or services.config.default_tier})...")
        volume = services.tracker.enroll(namespace, claim, tier)

        if volume.volume_id is None:
            typer.echo("WARNING: PVC is not yet bound to a volume. Backup labels added but no volume to configure yet.")
        else:
            typer.echo(f"Longhorn volume: {volume.volume_id}")
            report = services.reconciler.reconcile([volume], volume_ids=[volume.volume_id])
            for failure in report.failures:
                typer.echo(f"NOTE: Could not set recurring jobs on {failure.volume_id}: {failure.reason}")
                typer.echo("Run 'reconcile' later to retry.")

        services.notifier.post(
            NotificationEvent(kind="enrolled", message=f"{namespace}/{claim} enrolled with tier {volume.tier}")
        )
    typer.echo(f"SUCCESS: PVC {namespace}/{claim} added to backup schedule")


@app.command("unenroll")
def unenroll(
    ctx: typer.Context,
    namespace: str = typer.Argument(..., help="PVC namespace"),
    claim: str = typer.Argument(..., help="PVC name"),
    delete_backups: bool = typer.Option(False, "--delete-backups", help="Also delete every backup of the volume"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not prompt for confirmation"),
) -> None:
    """Remove a PVC from the backup schedule. Backups are kept unless --delete-backups."""
    with _reported_errors():
        services = _services(ctx, assume_yes=yes)
        typer.echo(f"Removing PVC {namespace}/{claim} from backup schedule...")
        removed = services.tracker.unenroll(namespace, claim)
        if removed is None:
            typer.echo(f"WARNING: PVC {namespace}/{claim} not found. It may have already been deleted.")
        else:
            services.notifier.post(NotificationEvent(kind="unenrolled", message=f"{namespace}/{claim} unenrolled"))

        if delete_backups:
            if removed is None or not removed.volume_id:
                typer.echo("No volume name found. Cannot delete backups without volume reference.")
            else:
                typer.echo("WARNING: --delete-backups will permanently delete all backups for this PVC!")
                try:
                    deleted = services.reconciler.purge_backups(removed.volume_id)
                except ConfirmationDeclinedError:
                    typer.echo("Backup deletion cancelled. PVC removed from backup schedule but backups preserved.")
                    return
                typer.echo(f"Deleted {len(deleted)} backup(s) for volume {removed.volume_id}.")
                services.notifier.post(
                    NotificationEvent(
                        kind="backups-deleted",
                        message=f"{len(deleted)} backup(s) of {namespace}/{claim} ({removed.volume_id}) deleted",
                    )
                )

    typer.echo(f"SUCCESS: PVC {namespace}/{claim} removed from backup schedule")
    if not delete_backups:
        typer.echo("Note: Existing backups have been preserved.")


@app.command("list")
def list_command(
    ctx: typer.Context,
    namespace: Optional[str] = typer.Argument(None, help="Only this namespace"),
    claim: Optional[str] = typer.Argument(None, help="Only this PVC"),
) -> None:
    """Show enrolled PVCs, their backups, and totals."""
    with _reported_errors():
        services = _services(ctx)
        enrolled = services.tracker.list_enrolled(namespace, claim)

        typer.echo(_RULE)
        typer.echo("Longhorn Backup Inventory")
        typer.echo(_RULE)
        typer.echo("Backed up PVCs:")
        typer.echo(f"{'NAMESPACE':<20} {'PVC':<30} {'VOLUME':<40} {'BACKUPS':<10}")
        for volume in enrolled:
            count = str(len(services.catalog.list_backups(volume.volume_id))) if volume.volume_id else "N/A"
            typer.echo(f"{volume.namespace:<20} {volume.claim_name:<30} {volume.volume_id or 'unbound':<40} {count:<10}")

        owners = {
            item.volume_name: item
            for item in services.gateway.list_claims()
            if item.volume_name
        }
        typer.echo("")
        typer.echo("Backup Details:")
        for summary in services.catalog.list_backup_volumes():
            owner = owners.get(summary.name)
            if namespace and (owner is None or owner.namespace != namespace):
                continue
            if claim and (owner is None or owner.name != claim):
                continue
            typer.echo(f"Volume: {summary.name}")
            typer.echo(f"  PVC: {f'{owner.namespace}/{owner.name}' if owner else '(orphaned/deleted)'}")
            typer.echo(f"  Last Backup: {summary.last_backup_name or 'none'} ({summary.last_backup_at or 'never'})")
            typer.echo("  Backups:")
            for record in services.catalog.list_backups(summary.name):
                typer.echo(
                    f"    {record.id:<40} {format_timestamp(record.created_at) or 'unknown':<22} "
                    f"{format_size(record.size_bytes):<10} {record.state}"
                )

        all_backups = services.catalog.list_all()
        typer.echo("")
        typer.echo("Summary")
        typer.echo(f"Total PVCs with backup enabled: {len(enrolled)}")
        typer.echo(f"Total backup snapshots: {len(all_backups)}")
        typer.echo(f"Total backup size: {format_size(sum(record.size_bytes for record in all_backups))}")


@app.command("restore")
def restore(
    ctx: typer.Context,
    namespace: str = typer.Argument(..., help="Target namespace for the restored PVC"),
    claim: str = typer.Argument(..., help="Original PVC name (used to find backups)"),
    backup_id: Optional[str] = typer.Argument(None, help="Backup to restore (defaults to latest Completed)"),
    new_name: Optional[str] = typer.Option(None, "--new-name", help="Restore to a different PVC name"),
    size: Optional[str] = typer.Option(None, "--size", help="Override storage size (e.g. 10Gi)"),
    storage_class: Optional[str] = typer.Option(None, "--storage-class", help="Override storage class"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the manifest without applying"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not prompt for confirmation"),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Seconds to wait for the PVC to bind"),
) -> None:
    """Restore a PVC from a Longhorn backup."""
    with _reported_errors():
        services = _services(ctx, assume_yes=yes)
        plan = services.planner.plan(
            namespace,
            claim,
            explicit_backup_id=backup_id,
            override_size=size,
            storage_class=storage_class,
            new_name=new_name,
        )

        typer.echo("Restore configuration:")
        typer.echo(f"  Target PVC: {plan.target_namespace}/{plan.target_claim_name}")
        typer.echo(f"  Storage Class: {plan.storage_class}")
        typer.echo(f"  Size: {plan.size} (from {plan.size_source})")
        typer.echo(f"  From Backup: {plan.source_backup_id} (volume {plan.source_volume_id})")
        if plan.requires_confirmation:
            typer.echo(f"WARNING: Backup state is '{plan.backup_state}', not 'Completed'")
        if plan.requires_replace:
            typer.echo(f"WARNING: PVC {plan.target_namespace}/{plan.target_claim_name} already exists!")

        manifest = build_restore_manifest(
            plan,
            restored_at=datetime.now(tz=UTC),
            label_prefix=services.config.label_prefix,
        )
        typer.echo("Generated PVC manifest:")
        typer.echo("---")
        typer.echo(yaml.safe_dump(manifest, sort_keys=False).rstrip())
        typer.echo("---")

        if dry_run:
            typer.echo("DRY RUN: No changes made.")
            return

        try:
            outcome = services.planner.apply(plan, timeout_seconds=timeout)
        except KeyboardInterrupt:
            typer.echo("Interrupted. Any PVC already created is left in place.")
            raise typer.Exit(code=130) from None

        if outcome.status == OUTCOME_BOUND:
            typer.echo(f"SUCCESS: PVC restored! Volume: {outcome.volume_name or 'unknown'}")
        services.notifier.post(
            NotificationEvent(
                kind="restore-applied",
                message=(
                    f"{plan.target_namespace}/{plan.target_claim_name} restored from "
                    f"{plan.source_backup_id} ({outcome.status})"
                ),
            )
        )


@app.command("reconcile")
def reconcile(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Show changes without patching volumes"),
) -> None:
    """Align Longhorn recurring-job selectors with PVC enrollment labels."""
    with _reported_errors():
        services = _services(ctx)
        report = services.reconciler.reconcile(services.tracker.list_enrolled(), dry_run=dry_run)
        _echo_report(report)
        if report.failures:
            raise PartialFailureError(report)


@app.command("audit")
def audit(
    ctx: typer.Context,
    grace_seconds: Optional[int] = typer.Option(None, "--grace-seconds", help="Override LBM_OFFSITE_GRACE_SECONDS"),
    fail_on_drift: bool = typer.Option(False, "--fail-on-drift", help="Exit 1 when drift is found"),
) -> None:
    """Compare primary backups with the offsite copy."""
    with _reported_errors():
        services = _services(ctx)
        volume_ids = {volume.volume_id for volume in services.tracker.list_enrolled() if volume.volume_id}
        volume_ids.update(record.volume_id for record in services.catalog.list_all() if record.volume_id)

        auditor = OffsiteSyncAuditor(
            services.catalog,
            _build_sync_tool(services.config),
            remote=services.config.offsite_remote,
            grace_seconds=services.config.offsite_grace_seconds if grace_seconds is None else grace_seconds,
        )
        results = auditor.audit(volume_ids)

        typer.echo(f"{'VOLUME':<40} {'MISSING':<30} {'EXTRA':<30}")
        for result in results:
            missing = ",".join(sorted(result.missing_backup_ids)) or "-"
            extra = ",".join(sorted(result.extra_backup_ids)) or "-"
            typer.echo(f"{result.volume_id:<40} {missing:<30} {extra:<30}")

        drifted = [result for result in results if not result.in_sync]
        if not drifted:
            typer.echo("Offsite copy is in sync.")
            return
        services.notifier.post(
            NotificationEvent(kind="offsite-drift", message=f"{len(drifted)} volume(s) differ from the offsite copy")
        )
        typer.echo(f"{len(drifted)} volume(s) differ from the offsite copy.")
    if fail_on_drift:
        raise typer.Exit(code=1)


@app.command("index")
def index(
    ctx: typer.Context,
    output: Optional[Path] = typer.Option(None, "--output", help="Override LBM_INDEX_PATH"),
) -> None:
    """Regenerate backup-index.json."""
    with _reported_errors():
        services = _services(ctx)
        document = build_backup_index(services.tracker.list_enrolled(), services.catalog)
        path = write_backup_index(output or services.config.index_path, document)
    typer.echo(f"Wrote {len(document['claims'])} claim(s) to {path}")


@offsite_app.command("list")
def offsite_list(ctx: typer.Context) -> None:
    """List backups held in the offsite copy."""
    state: CliState = ctx.obj
    with _reported_errors():
        tool = _build_sync_tool(state.config)
        tool.check_connection(state.config.offsite_remote)
        entries = tool.list(state.config.offsite_remote)

    grouped = group_offsite_backups(entries)
    typer.echo(f"Available backups in {state.config.offsite_remote}")
    for volume_id in sorted(grouped):
        typer.echo(f"  {volume_id}: {len(grouped[volume_id])} backup(s)")
        for backup_id in sorted(grouped[volume_id]):
            typer.echo(f"    {backup_id}")
    typer.echo(f"Total size: {format_size(sum(entry.size for entry in entries))} in {len(entries)} object(s)")


@offsite_app.command("sync")
def offsite_sync(
    ctx: typer.Context,
    target_dir: Path = typer.Argument(..., help="Local directory to restore backups into"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not prompt for confirmation"),
) -> None:
    """Download and decrypt the offsite copy into a local directory."""
    state: CliState = ctx.obj
    with _reported_errors():
        tool = _build_sync_tool(state.config)
        tool.check_connection(state.config.offsite_remote)
        if target_dir.exists() and any(target_dir.iterdir()):
            if not _confirmer(yes)(f"{target_dir} is not empty; files missing offsite will be removed. Continue?"):
                raise ConfirmationDeclinedError("Offsite sync cancelled.")
        typer.echo(f"Restoring {state.config.offsite_remote} into {target_dir}...")
        tool.sync(state.config.offsite_remote, target_dir)

    typer.echo(f"Backups restored to: {target_dir}")
    typer.echo("Next steps:")
    typer.echo("1. Check backup-index.json for PVC details")
    typer.echo("2. Point the Longhorn backup target at this directory (e.g. nfs://<server>:<path>)")
    typer.echo("3. Restore PVCs with the 'restore' command")


def _echo_report(report: ReconcileReport) -> None:
    verb = "Would set" if report.dry_run else "Set"
    for binding in report.applied:
        jobs = ", ".join(sorted(binding.job_names)) or "(none)"
        typer.echo(f"{verb} {binding.volume_id}: {jobs}")
    for volume in report.pending:
        typer.echo(f"Pending (unbound): {volume.namespace}/{volume.claim_name}")
    for failure in report.failures:
        typer.secho(f"FAILED {failure.volume_id}: {failure.reason}", fg=typer.colors.RED, err=True)
    typer.echo(
        f"{len(report.applied)} changed, {len(report.unchanged)} unchanged, "
        f"{len(report.failures)} failed, {len(report.pending)} pending"
    )


def format_size(size_bytes: int) -> str:
    value = float(size_bytes)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TiB"


def _is_click_error(error: BaseException, name: str) -> bool:
    # typer may raise these from its own bundled click layer.
    return any(cls.__name__ == name for cls in type(error).__mro__)


def main() -> None:
    try:
        code = app(standalone_mode=False)
    except Exception as error:
        if _is_click_error(error, "UsageError"):
            error.show()
            sys.exit(1)
        if _is_click_error(error, "ClickException"):
            error.show()
            sys.exit(error.exit_code)
        if _is_click_error(error, "Abort"):
            typer.echo("Aborted.", err=True)
            sys.exit(1)
        raise
    sys.exit(code or 0)


if __name__ == "__main__":
    main()
