"""capacity-collector CLI.

Commands:
    init        Write a sample capacity-collector.yaml
    validate    Validate the config file and the cluster filters
    render      Show the per-cluster queries a template expands to (no network)
    probe       Check connectivity, backend version and scrape intervals
    collect     Write workload CSV files for one query
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from capacity_collector import __version__
from capacity_collector.config import CONFIG_FILENAME, CollectorConfig, ConfigError, load_config
from capacity_collector.execution.pipeline import FatalConnectivityError
from capacity_collector.filters.registry import NO_SPLIT, FilterError, LabelFilterRegistry
from capacity_collector.log import configure_logging
from capacity_collector.models import ClusterFilterSpec
from capacity_collector.platforms.adapter import PlatformAdapter
from capacity_collector.query.embedding import EmbedderCache, EmbeddingError
from capacity_collector.query.scrape import format_duration
from capacity_collector.session import DEFAULT_CLUSTER, CollectorSession
from capacity_collector.workload.output import EVENT_SUBJECT, METRIC_SUBJECT, csv_header_format
from capacity_collector.workload.providers import ProcessExitEventProvider
from capacity_collector.workload.writer import WorkloadWriter


def _load(config_path: str | None) -> CollectorConfig:
    """Load the config or exit with an error message."""
    try:
        return load_config(config_path)
    except (ConfigError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _session(cfg: CollectorConfig) -> CollectorSession:
    try:
        session = CollectorSession.from_config(cfg)
    except (FilterError, ConfigError, ImportError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    configure_logging(cfg.output_dir, session.cluster_names, cfg.debug)
    return session


config_option = click.option(
    "--config", "config_path", default=None,
    help=f"Path to {CONFIG_FILENAME} (default: auto-discover)",
)


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """capacity-collector: multi-cluster Prometheus workload extraction."""


# --- init command ---


_INIT_CONFIG = """\
# capacity-collector configuration
# Paths are relative to this file.

prometheus:
  url: http://localhost:9090
  # username: collector
  # password_file: ./secrets/password
  # bearer_token_file: ./secrets/token
  # ca_cert: ./secrets/ca.pem
  # sigv4:
  #   region: us-east-1
  data_timeout: 120
  metadata_timeout: 60
  connectivity_error_level: warning

collection:
  interval: days        # days | hours | minutes
  interval_size: 1
  history: 1
  sample_rate: 5        # minutes
  offset: 0
  query_per_cluster: true

# One entry per cluster; identifiers are the labels that tell its series apart.
clusters:
  - name: prod
    identifiers:
      env: prod
  - name: staging
    identifiers:
      env: staging

output_dir: ./data
"""


@cli.command()
@click.argument("directory", default=".")
def init(directory: str) -> None:
    """Write a sample config file."""
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)
    config_file = root / CONFIG_FILENAME
    if config_file.exists():
        click.echo(f"  skip  {CONFIG_FILENAME} (already exists)")
        return
    config_file.write_text(_INIT_CONFIG, encoding="utf-8")
    click.echo(click.style("Created:", fg="green", bold=True))
    click.echo(f"  + {CONFIG_FILENAME}")
    click.echo("\n" + click.style("Next steps:", bold=True))
    click.echo("  capacity-collector validate")
    click.echo("  capacity-collector probe")


# --- validate command ---


@cli.command()
@config_option
def validate(config_path: str | None) -> None:
    """Validate the config file and register the cluster filters."""
    cfg = _load(config_path)
    source = cfg.config_path or "(defaults)"
    click.echo(click.style("OK", fg="green") + f"  config: {source}")

    registry = LabelFilterRegistry()
    try:
        registry.register_all(cfg.clusters or [ClusterFilterSpec(name=DEFAULT_CLUSTER)])
    except FilterError as e:
        click.echo(click.style("FAIL", fg="red") + f"  clusters: {e}")
        sys.exit(1)

    click.echo(
        click.style("OK", fg="green")
        + f"  clusters: {len(registry)} cluster(s) in {len(registry.groups)} group(s)"
    )
    for group in registry.groups:
        names = ",".join(group.label_names) or "(catch-all)"
        click.echo(f"  [{names}] {', '.join(group.cluster_names)}")


# --- render command ---


@cli.command()
@click.argument("query")
@config_option
@click.option("--shared", is_flag=True, help="Render one shared query per group instead of one per cluster")
def render(query: str, config_path: str | None, shared: bool) -> None:
    """Show the queries QUERY expands to, without contacting Prometheus."""
    cfg = _load(config_path)
    registry = LabelFilterRegistry()
    try:
        registry.register_all(cfg.clusters or [ClusterFilterSpec(name=DEFAULT_CLUSTER)])
        embedded = EmbedderCache().embed(query)
    except (FilterError, EmbeddingError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    platform = PlatformAdapter.from_settings(cfg.prometheus)
    for group in registry.groups:
        for cluster, q in group.materialize(embedded, per_cluster=not shared).items():
            label = cluster if cluster != NO_SPLIT else ",".join(group.cluster_names)
            click.echo(f"{label}: {platform.adapt(q)}")


# --- probe command ---


@cli.command()
@config_option
@click.option("--json-output", is_flag=True, help="Output as JSON")
def probe(config_path: str | None, json_output: bool) -> None:
    """Check connectivity, backend version and scrape intervals."""
    cfg = _load(config_path)
    session = _session(cfg)
    try:
        up = session.executor.check_up()
        version = session.executor.prometheus_version()
        tables = {c: session.scrape.exporter_info(c) for c in session.cluster_names}
    except FatalConnectivityError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        data = {
            "platform": str(session.platform.platform) or "unknown",
            "version": version,
            "clusters_up": up,
            "scrape_intervals": {
                cluster: {
                    prefix: {
                        "exporter": info.exporter_name,
                        "job": info.prom_job_name,
                        "interval": format_duration(info.scrape_interval),
                    }
                    for prefix, info in table.items()
                }
                for cluster, table in tables.items()
            },
        }
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Platform: {session.platform.platform or 'unknown'}")
    click.echo(f"Version:  {version or 'unknown'}")
    click.echo(f"Up:       {up}/{len(session.registry)} cluster(s)")
    for cluster, table in tables.items():
        click.echo(f"\n{cluster}:")
        if not table:
            click.echo(
                f"  no exporters detected (using {format_duration(session.scrape.scrape_interval(cluster, ''))})"
            )
        for info in table.values():
            click.echo(
                f"  {info.exporter_name:<20} job={info.prom_job_name:<30} "
                f"{format_duration(info.scrape_interval)}"
            )


# --- collect command ---


@cli.command()
@click.argument("query")
@config_option
@click.option("--file-name", required=True, help="Output file name, without extension")
@click.option("--metric-name", required=True, help="Metric display name in the CSV header")
@click.option("--field", "fields", multiple=True, help="Label to write as a field (repeatable, in order)")
@click.option("--entity-kind", default="cluster", show_default=True, help="Entity kind directory and header")
@click.option("--events", is_flag=True, help="Decode process-exit events packed into sample values")
def collect(
    query: str,
    config_path: str | None,
    file_name: str,
    metric_name: str,
    fields: tuple[str, ...],
    entity_kind: str,
    events: bool,
) -> None:
    """Write workload CSV files for QUERY across all clusters."""
    cfg = _load(config_path)
    if csv_header_format(entity_kind) is None:
        click.echo(f"Error: unknown entity kind: {entity_kind}", err=True)
        sys.exit(1)
    session = _session(cfg)
    writer = WorkloadWriter(session)
    provider = ProcessExitEventProvider(session.collection, session.current_time) if events else None
    subject = EVENT_SUBJECT if events else METRIC_SUBJECT
    try:
        summary = writer.write(file_name, metric_name, query, list(fields), entity_kind, subject, provider)
    except (EmbeddingError, FatalConnectivityError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    for cluster, path in summary.files.items():
        click.echo(f"  + {path} ({summary.rows.get(cluster, 0)} row(s))")
    for cluster in summary.failed:
        click.echo(click.style("FAIL", fg="red") + f"  {cluster}: see {cluster}/log.txt")
    if not summary.files and not summary.failed:
        click.echo("No data found.")
