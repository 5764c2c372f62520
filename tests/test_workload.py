"""Tests for the workload CSV writer, its providers and output helpers."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from capacity_collector.config import CollectionSettings
from capacity_collector.models import QueryRange, Sample
from capacity_collector.workload.output import (
    EVENT_SUBJECT,
    camel_case,
    csv_header_format,
    file_path,
    format_number,
    format_time,
    make_dirs,
    replace_semicolons,
    singular,
    snake_case,
)
from capacity_collector.workload.providers import (
    HistoryRangeProvider,
    ProcessExitEventProvider,
    window_range,
)
from capacity_collector.workload.writer import (
    FieldProvider,
    QueryProcessor,
    WorkloadMetricHolder,
    WorkloadWriter,
)
from fakes import PROD, T0, FakePrometheusClient, make_session, matrix

DAY_START = datetime(2024, 3, 15, tzinfo=UTC)
"""Collection end for the fake sessions: NOW truncated to the day."""

NODE_TEMPLATE = "kube_node_status_capacity{}"
PROD_NODE_QUERY = 'kube_node_status_capacity{env="prod"}'
STAGING_NODE_QUERY = 'kube_node_status_capacity{env="staging"}'


def _read(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8").splitlines()


# --- output helpers ---


class TestOutputHelpers:
    def test_case_conversion(self):
        assert snake_case("Cpu", "utilization") == "cpu_utilization"
        assert snake_case("cpuUtilization") == "cpu_utilization"
        assert camel_case("cpu", "utilization") == "CpuUtilization"
        assert camel_case("node_group", "name") == "NodeGroupName"

    def test_singular(self):
        assert singular("limits") == "limit"
        assert singular("memory") == "memory"

    def test_file_path(self, tmp_path: Path):
        assert file_path(tmp_path, "prod", "node", "cpu_capacity") == tmp_path / "prod" / "node" / "cpu_capacity.csv"

    def test_make_dirs(self, tmp_path: Path):
        make_dirs(tmp_path, ["prod", "staging"], ["node", "container"])
        assert (tmp_path / "prod" / "node").is_dir()
        assert (tmp_path / "staging" / "container").is_dir()

    def test_format_time(self):
        assert format_time(T0) == "2023-11-14T22:13:20Z"
        assert format_time(DAY_START) == "2024-03-15T00:00:00Z"

    @pytest.mark.parametrize("value,expected", [
        (None, ""),
        (-1, ""),
        (float("nan"), ""),
        (float("inf"), ""),
        (3, "3"),
        (1.5, "1.500000"),
    ])
    def test_format_number(self, value, expected: str):
        assert format_number(value) == expected

    def test_replace_semicolons(self):
        assert replace_semicolons("a;b;c") == "a.b.c"


class TestHeaders:
    def test_cluster(self):
        assert csv_header_format("cluster") == "Name,MetricTime,%s\n"

    def test_node(self):
        assert csv_header_format("node") == "ClusterName,NodeName,MetricTime,%s\n"

    def test_container(self):
        assert csv_header_format("container") == (
            "ClusterName,Namespace,EntityName,EntityType,ContainerName,MetricTime,%s\n"
        )

    def test_hpa(self):
        assert csv_header_format("container_hpa").startswith(
            "ClusterName,Namespace,EntityName,EntityType,ContainerName,HpaName,"
        )

    def test_rq(self):
        assert csv_header_format("rq") == "ClusterName,Namespace,RqName,MetricTime,%s\n"

    def test_event_subject(self):
        assert csv_header_format("node", EVENT_SUBJECT) == "ClusterName,NodeName,EventTime,%s\n"

    def test_case_insensitive(self):
        assert csv_header_format("NODE") == csv_header_format("node")

    def test_unknown_kind(self):
        assert csv_header_format("pod") is None


# --- providers ---


class TestProviders:
    def test_window_range(self):
        settings = CollectionSettings()
        qr = window_range(settings, DAY_START, 2, windows=1, step=timedelta(minutes=5))
        assert qr == QueryRange(
            start=DAY_START - timedelta(days=3), end=DAY_START - timedelta(days=2), step=timedelta(minutes=5),
        )

    def test_history_provider(self):
        settings = CollectionSettings(interval="hours", sample_rate=1)
        provider = HistoryRangeProvider(settings, DAY_START)
        qr = provider.calculate_range(0)
        assert qr.start == DAY_START - timedelta(hours=1)
        assert qr.step == timedelta(minutes=1)
        tv = provider.time_and_values(Sample(T0, 0.25))
        assert (tv.time, tv.values, tv.count) == (T0, "0.250000", 1)


class TestProcessExitEventProvider:
    def _provider(self) -> ProcessExitEventProvider:
        provider = ProcessExitEventProvider(CollectionSettings(), DAY_START)
        provider.calculate_range(0)
        return provider

    def test_range_has_no_step(self):
        assert self._provider().calculate_range(0).step is None

    def test_timestamp_times_count(self):
        event_time = int((DAY_START - timedelta(hours=23)).timestamp())
        tv = self._provider().time_and_values(Sample(0.0, 2 * event_time + 0.6371))
        assert tv.time == event_time
        assert tv.values == "137,false"
        assert tv.count == 2

    def test_bare_count_uses_sample_time(self):
        tv = self._provider().time_and_values(Sample(T0, 3.5))
        assert tv.time == T0
        assert tv.values == "0,true"
        assert tv.count == 3

    def test_pid1_with_exit_code(self):
        tv = self._provider().time_and_values(Sample(T0, 1.501))
        assert tv.values == "1,true"
        assert tv.count == 1

    def test_range_required(self):
        provider = ProcessExitEventProvider(CollectionSettings(), DAY_START)
        with pytest.raises(RuntimeError, match="calculate_range"):
            provider.time_and_values(Sample(T0, 1.5))


# --- metric holder and fields ---


class TestMetricHolder:
    def test_names(self):
        holder = WorkloadMetricHolder("cpu", "limits")
        assert holder.file_name == "cpu_limits"
        assert holder.metric_name == "CpuLimits"
        assert holder.name(make_singular=True) == "CpuLimit"
        assert holder.name(file=True) == "cpu_limits"

    def test_override_file_name(self):
        holder = WorkloadMetricHolder("cpu", "limits").override_file_name("limits", "cpu")
        assert holder.file_name == "limits_cpu"
        assert holder.metric_name == "CpuLimits"


class TestFieldProvider:
    def test_fields_in_order(self):
        fp = FieldProvider("prod", ["namespace", "pod"])
        assert fp.fields({"pod": "p", "namespace": "ns", "x": "1"}) == "ns,p"

    def test_missing_label_drops_series(self):
        assert FieldProvider("prod", ["namespace", "pod"]).fields({"pod": "p"}) is None

    def test_convert_can_rewrite_or_veto(self):
        def convert(cluster: str, fields: list[str]) -> tuple[list[str], bool]:
            return [f.upper() for f in fields], fields[0] != "skip"

        fp = FieldProvider("prod", ["node"], convert)
        assert fp.fields({"node": "n1"}) == "N1"
        assert fp.fields({"node": "skip"}) is None


# --- writer ---


class _FullDiskHandle:
    """Wraps an open file; every row write fails."""

    def __init__(self, handle) -> None:
        self._handle = handle
        self.closed = False

    def write(self, text: str) -> int:
        raise OSError(28, "No space left on device")

    def close(self) -> None:
        self._handle.close()
        self.closed = True


class TestWorkloadWriter:
    def _client(self) -> FakePrometheusClient:
        client = FakePrometheusClient()
        client.on(PROD_NODE_QUERY, matrix(
            ({"node": "n1"}, [(T0, 1.0), (T0 + 300, float("nan"))]),
            ({"other": "x"}, [(T0, 9.0)]),
        ))
        return client

    def test_rows_written_newest_window_first(self, tmp_path: Path):
        client = self._client()
        session = make_session(client, output_dir=str(tmp_path), history=2)

        summary = WorkloadWriter(session).write(
            "cpu_capacity", "CpuCapacity", NODE_TEMPLATE, ["node"], "node",
        )

        starts = [c[2]["start"] for c in client.calls if c[0] == "range"]
        assert starts[0] == DAY_START - timedelta(days=1)
        assert starts[-1] == DAY_START - timedelta(days=2)

        path = tmp_path / "prod" / "node" / "cpu_capacity.csv"
        assert summary.files == {"prod": path}
        assert summary.rows == {"prod": 2}
        assert _read(path) == [
            "ClusterName,NodeName,MetricTime,CpuCapacity",
            f"prod,n1,{format_time(T0)},1.000000",
            f"prod,n1,{format_time(T0)},1.000000",
        ]

    def test_no_file_without_data(self, tmp_path: Path):
        session = make_session(self._client(), output_dir=str(tmp_path))
        WorkloadWriter(session).write("cpu_capacity", "CpuCapacity", NODE_TEMPLATE, ["node"], "node")
        assert not (tmp_path / "staging" / "node" / "cpu_capacity.csv").exists()

    def test_existing_file_is_not_overwritten(self, tmp_path: Path):
        client = self._client()
        client.on(STAGING_NODE_QUERY, matrix(({"node": "s1"}, [(T0, 2.0)])))
        existing = tmp_path / "prod" / "node" / "cpu_capacity.csv"
        existing.parent.mkdir(parents=True)
        existing.write_text("keep me\n", encoding="utf-8")
        session = make_session(client, output_dir=str(tmp_path))

        summary = WorkloadWriter(session).write("cpu_capacity", "CpuCapacity", NODE_TEMPLATE, ["node"], "node")

        assert summary.failed == ["prod"]
        assert existing.read_text(encoding="utf-8") == "keep me\n"
        assert _read(tmp_path / "staging" / "node" / "cpu_capacity.csv")[1].startswith("staging,s1,")

    def test_write_error_abandons_only_that_cluster(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        client = self._client()
        client.on(STAGING_NODE_QUERY, matrix(({"node": "s1"}, [(T0, 2.0)])))
        session = make_session(client, output_dir=str(tmp_path))
        handles: dict[str, _FullDiskHandle] = {}
        original_open = WorkloadWriter._open

        def open_full_disk(self, cluster, *args):
            cf = original_open(self, cluster, *args)
            if cluster == "prod":
                cf.handle = handles[cluster] = _FullDiskHandle(cf.handle)
            return cf

        monkeypatch.setattr(WorkloadWriter, "_open", open_full_disk)
        summary = WorkloadWriter(session).write("cpu_capacity", "CpuCapacity", NODE_TEMPLATE, ["node"], "node")

        assert summary.failed == ["prod"]
        assert "prod" not in summary.rows
        staging = tmp_path / "staging" / "node" / "cpu_capacity.csv"
        assert summary.files == {"staging": staging}
        assert _read(staging)[1].startswith("staging,s1,")
        assert handles["prod"].closed
        assert _read(tmp_path / "prod" / "node" / "cpu_capacity.csv") == [
            "ClusterName,NodeName,MetricTime,CpuCapacity",
        ]

    def test_unknown_entity_kind(self, tmp_path: Path):
        client = self._client()
        session = make_session(client, output_dir=str(tmp_path))
        summary = WorkloadWriter(session).write("x", "X", NODE_TEMPLATE, ["node"], "pod")
        assert summary.rows == {}
        assert client.calls == []

    def test_query_variants_share_a_file(self, tmp_path: Path):
        client = self._client()
        client.on('legacy_capacity{env="prod"}', matrix(({"host": "n2"}, [(T0, 4.0)])))
        session = make_session(client, output_dir=str(tmp_path))
        holder = WorkloadMetricHolder("cpu", "capacity")

        WorkloadWriter(session).write_holder(holder, {
            NODE_TEMPLATE: QueryProcessor(["node"]),
            "legacy_capacity{}": QueryProcessor(["host"]),
        }, "node")

        rows = _read(tmp_path / "prod" / "node" / "cpu_capacity.csv")[1:]
        assert [r.split(",")[1] for r in rows] == ["n1", "n2"]

    def test_cluster_entity_has_no_fields(self, tmp_path: Path):
        client = FakePrometheusClient()
        client.on('count(kube_node_info{env="prod"})', matrix(({}, [(T0, 3.0)])))
        session = make_session(client, output_dir=str(tmp_path))

        WorkloadWriter(session).write("node_count", "NodeCount", "count(kube_node_info{})", [], "cluster")

        assert _read(tmp_path / "prod" / "cluster" / "node_count.csv") == [
            "Name,MetricTime,NodeCount",
            f"prod,{format_time(T0)},3.000000",
        ]

    def test_events_written_count_times(self, tmp_path: Path):
        event_time = int((DAY_START - timedelta(hours=23)).timestamp())
        client = FakePrometheusClient()
        client.on("changes(kube_pod_container_status_restarts_total", matrix(
            ({"namespace": "ns", "pod": "p1", "owner_kind": "Deployment", "container": "app"},
             [(T0, 2 * event_time + 0.6371)]),
        ))
        session = make_session(client, clusters=[PROD], output_dir=str(tmp_path))
        provider = ProcessExitEventProvider(session.collection, session.current_time)

        WorkloadWriter(session).write(
            "process_exit",
            "ExitCode,IsPid1",
            "changes(kube_pod_container_status_restarts_total{}[5m])",
            ["namespace", "pod", "owner_kind", "container"],
            "container",
            subject=EVENT_SUBJECT,
            provider=provider,
        )

        lines = _read(tmp_path / "prod" / "container" / "process_exit.csv")
        assert lines[0] == "ClusterName,Namespace,EntityName,EntityType,ContainerName,EventTime,ExitCode,IsPid1"
        assert lines[1:] == [f"prod,ns,p1,Deployment,app,{format_time(float(event_time))},137,false"] * 2
        ranged = [c[2] for c in client.calls if c[0] == "range"]
        assert ranged and ranged[0]["step"] == timedelta(seconds=60)
