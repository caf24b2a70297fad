"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..extraction_client import ExtractionClient
from ..health import HealthMonitor
from ..lease_queue import LeaseQueue
from ..notify import create_notifier
from ..pipeline import ProcessingPipeline
from ..poller import EML_DIRECTORY, Poller, parse_eml
from ..state_store import StateStore
from .daemon import IntakeDaemon

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Keep HTTP client chatter out of INFO output
    for noisy in ("urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="invoice-intake",
        description="Poll mailboxes, extract invoices and keep the intake pipeline healthy",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init", help="Create config file (if missing) and state database")

    tenant_parser = subparsers.add_parser("add-tenant", help="Register a tenant")
    tenant_parser.add_argument("name", type=str, help="Tenant display name")
    tenant_parser.add_argument("--slug", type=str, default=None, help="URL-safe identifier")

    conn_parser = subparsers.add_parser("add-connection", help="Register a polling connection")
    conn_parser.add_argument("--tenant", type=int, required=True, help="Tenant ID")
    conn_parser.add_argument("--name", type=str, required=True, help="Connection name")
    conn_parser.add_argument(
        "--source-type",
        type=str,
        default=EML_DIRECTORY,
        choices=[EML_DIRECTORY],
        help=f"Source type (default: {EML_DIRECTORY})",
    )
    conn_parser.add_argument("--uri", type=str, required=True, help="Source location")

    process_parser = subparsers.add_parser("process", help="Run one .eml file through the pipeline")
    process_parser.add_argument("eml", type=Path, help="Path to .eml file")
    process_parser.add_argument("--tenant", type=int, required=True, help="Tenant ID")

    poll_parser = subparsers.add_parser("poll", help="Poll active connections once")
    poll_parser.add_argument("--tenant", type=int, default=None, help="Only poll this tenant")

    health_parser = subparsers.add_parser("health-check", help="Run one health sweep")
    health_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    subparsers.add_parser("daemon", help="Poll and sweep continuously until interrupted")

    retry_parser = subparsers.add_parser(
        "retry-dead-letter", help="Reset dead-lettered leases for another attempt"
    )
    retry_group = retry_parser.add_mutually_exclusive_group(required=True)
    retry_group.add_argument(
        "--lease-id",
        type=int,
        action="append",
        dest="lease_ids",
        help="Lease ID to reset (repeatable)",
    )
    retry_group.add_argument("--tenant", type=int, help="Reset all dead letters of a tenant")

    ack_parser = subparsers.add_parser("ack-alert", help="Acknowledge an alert")
    ack_parser.add_argument("alert_id", type=int, help="Alert ID")
    ack_parser.add_argument("--by", type=str, default="cli", help="Who acknowledges")

    status_parser = subparsers.add_parser("status", help="Show per-tenant pipeline health")
    status_parser.add_argument("--tenant", type=int, default=None, help="Only this tenant")
    status_parser.add_argument("--json", action="store_true", help="Print as JSON")

    return parser


def _build_pipeline(config: Config, store: StateStore) -> tuple[ProcessingPipeline, ExtractionClient]:
    client = ExtractionClient(config.extraction)
    pipeline = ProcessingPipeline(
        store,
        client,
        config,
        notifier=create_notifier(config.notification),
        lease_queue=LeaseQueue(store, config),
    )
    return pipeline, client


def cmd_init(config: Config, config_path: Path) -> int:
    """Create config and database."""
    if not config_path.exists():
        create_default_config(config_path)
        print(f"✓ Created default config at {config_path}")
    StateStore(config.state_db_path)
    print(f"✓ State database ready at {config.state_db_path}")
    return 0


def cmd_add_tenant(config: Config, name: str, slug: str | None) -> int:
    store = StateStore(config.state_db_path)
    tenant_id = store.create_tenant(name, slug)
    print(f"✓ Tenant {tenant_id} created: {name}")
    return 0


def cmd_add_connection(
    config: Config, tenant_id: int, name: str, source_type: str, uri: str
) -> int:
    store = StateStore(config.state_db_path)
    if store.get_tenant(tenant_id) is None:
        print(f"❌ Unknown tenant {tenant_id}")
        return 1
    connection_id = store.create_connection(tenant_id, name, source_type, uri)
    print(f"✓ Connection {connection_id} created for tenant {tenant_id}")
    return 0


def cmd_process(config: Config, tenant_id: int, eml_path: Path) -> int:
    """Process a single .eml file (no lease)."""
    store = StateStore(config.state_db_path)
    if store.get_tenant(tenant_id) is None:
        print(f"❌ Unknown tenant {tenant_id}")
        return 1
    try:
        document = parse_eml(eml_path.read_bytes(), eml_path.name)
    except OSError as e:
        print(f"❌ Cannot read {eml_path}: {e}")
        return 1

    pipeline, client = _build_pipeline(config, store)
    try:
        result = pipeline.run(tenant_id, document)
    finally:
        client.close()

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.ok else 1


def cmd_poll(config: Config, tenant_id: int | None) -> int:
    """Poll once."""
    store = StateStore(config.state_db_path)
    pipeline, client = _build_pipeline(config, store)
    poller = Poller(store, config, pipeline, lease_queue=pipeline.lease_queue)
    try:
        results = poller.poll_tenant(tenant_id) if tenant_id is not None else poller.poll_all()
    finally:
        client.close()

    for r in results:
        marker = "✓" if r.ok else "❌"
        line = (
            f"{marker} Connection {r.connection_id}: {r.discovered} discovered, "
            f"{r.processed} processed, {r.failed} failed, {r.skipped} skipped"
        )
        if r.error:
            line += f" ({r.error})"
        print(line)

    if not results:
        print("⚠️  No active connections")
    return 0 if all(r.ok for r in results) else 1


def cmd_health_check(config: Config, as_json: bool) -> int:
    store = StateStore(config.state_db_path)
    monitor = HealthMonitor(store, config, create_notifier(config.notification))
    report = monitor.sweep()

    if as_json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
        return 0

    checks = report.checks
    print("\n🩺 Health Sweep")
    print("=" * 40)
    print(f"  Tenants checked:        {checks['tenants_checked']}")
    print(f"  Healthy / degraded / down: {checks['healthy']} / {checks['degraded']} / {checks['down']}")
    print(f"  Orphans reset:          {checks['orphaned_reset']}")
    print(f"  Dead-lettered:          {checks['dead_letter_promoted']}")
    print(f"  Dead letters total:     {checks['dead_letter_total']}")
    print(f"  Alerts:                 {len(report.alerts)}")
    for alert in report.alerts:
        print(f"    [{alert.severity.value}] {alert.alert_type.value}: {alert.message}")
    print()
    return 0


def cmd_daemon(config: Config) -> int:
    """Run poll + sweep loop."""
    store = StateStore(config.state_db_path)
    pipeline, client = _build_pipeline(config, store)
    poller = Poller(store, config, pipeline, lease_queue=pipeline.lease_queue)
    monitor = HealthMonitor(store, config, pipeline.notifier)

    daemon = IntakeDaemon(
        poller,
        monitor,
        poll_interval_minutes=config.poll_interval_minutes,
        sweep_interval_minutes=config.health.interval_minutes,
    )
    daemon.install_signal_handlers()
    print(
        f"Intake daemon started\n"
        f"  Poll interval: {config.poll_interval_minutes} minutes\n"
        f"  Health sweep interval: {config.health.interval_minutes} minutes"
    )
    try:
        daemon.run()
    finally:
        client.close()
    return 0


def cmd_retry_dead_letter(
    config: Config, lease_ids: list[int] | None, tenant_id: int | None
) -> int:
    store = StateStore(config.state_db_path)
    queue = LeaseQueue(store, config)
    try:
        count = queue.reset_for_retry(lease_ids=lease_ids, tenant_id=tenant_id)
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Reset {count} lease(s) for retry")
    return 0


def cmd_ack_alert(config: Config, alert_id: int, acknowledged_by: str) -> int:
    store = StateStore(config.state_db_path)
    monitor = HealthMonitor(store, config)
    if not monitor.acknowledge_alert(alert_id, acknowledged_by):
        print(f"❌ Alert {alert_id} not found or already acknowledged")
        return 1
    print(f"✓ Alert {alert_id} acknowledged")
    return 0


def cmd_status(config: Config, tenant_id: int | None, as_json: bool) -> int:
    """Show pipeline health snapshot."""
    store = StateStore(config.state_db_path)
    monitor = HealthMonitor(store, config)
    try:
        snapshot = monitor.get_health_snapshot(tenant_id)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    if as_json:
        print(json.dumps(snapshot, indent=2, default=str))
        return 0

    print("\n📊 Pipeline Status")
    print("=" * 40)
    for tenant in snapshot["tenants"]:
        print(f"  [{tenant['tenant_id']}] {tenant['name']}: {tenant['pipeline_status']}")
        print(f"      Queue depth:        {tenant['queue_depth']}")
        print(f"      Dead letters:       {tenant['dead_letter_count']}")
        print(f"      Errors (24h):       {tenant['errors_24h']}")
        print(f"      Last poll:          {tenant['last_successful_poll'] or 'never'}")
        for conn in tenant["connections"]:
            state = conn["last_poll_status"] or "never polled"
            print(
                f"      - {conn['name']}: {state}, "
                f"{conn['consecutive_failures']} consecutive failures"
            )
    unacked = [a for a in snapshot["alerts"] if not a["acknowledged"]]
    print(f"\n  Unacknowledged alerts:  {len(unacked)}")
    for alert in unacked[:10]:
        print(f"    #{alert['id']} [{alert['severity']}] {alert['alert_type']}: {alert['message']}")
    print()
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "init":
        return cmd_init(config, parsed.config)
    elif parsed.command == "add-tenant":
        return cmd_add_tenant(config, parsed.name, parsed.slug)
    elif parsed.command == "add-connection":
        return cmd_add_connection(
            config, parsed.tenant, parsed.name, parsed.source_type, parsed.uri
        )
    elif parsed.command == "process":
        return cmd_process(config, parsed.tenant, parsed.eml)
    elif parsed.command == "poll":
        return cmd_poll(config, parsed.tenant)
    elif parsed.command == "health-check":
        return cmd_health_check(config, parsed.json)
    elif parsed.command == "daemon":
        return cmd_daemon(config)
    elif parsed.command == "retry-dead-letter":
        return cmd_retry_dead_letter(config, parsed.lease_ids, parsed.tenant)
    elif parsed.command == "ack-alert":
        return cmd_ack_alert(config, parsed.alert_id, parsed.by)
    elif parsed.command == "status":
        return cmd_status(config, parsed.tenant, parsed.json)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
