"""Unit tests for metrics collection, alert evaluation, health checks and reports."""

import json
from collections import namedtuple

import pytest

from recipedb.config import MonitoringConfig, ThresholdsConfig
from recipedb.monitoring import (
    AlertEvaluator, AlertEvent, AlertSeverity, HealthChecker, HealthStatus,
    JsonLinesStore, MetricsCollector, MonitoringService, ReportGenerator, GB
)

from conftest import FakeCatalog, FakeClock, FakeNotifier, make_snapshot

DiskUsage = namedtuple("DiskUsage", "total used free percent")


class TestMetricsCollector:
    """Test snapshot collection and the bounded history."""

    def test_history_keeps_most_recent_snapshots(self, catalog):
        """History is capped and drops the oldest entries first."""
        catalog.snapshots = [make_snapshot(active=i) for i in range(15)]
        collector = MetricsCollector(catalog, history_size=10)

        for _ in range(15):
            collector.collect()

        assert len(collector.history) == 10
        assert [s.active_connections for s in collector.history] == list(range(5, 15))
        assert collector.latest.active_connections == 14

    def test_collection_failure_is_counted_not_raised(self, catalog):
        """A failing catalog query increments the error counter only."""
        collector = MetricsCollector(catalog)
        catalog.fail_with = RuntimeError("pool exhausted")

        assert collector.collect() is None
        assert collector.errors == 1
        assert len(collector.history) == 0

        catalog.fail_with = None
        assert collector.collect() is not None
        assert collector.counters()['collections'] == 1
        assert collector.counters()['errors'] == 1

    def test_snapshots_are_appended_to_store(self, catalog, temp_directory):
        """Every snapshot is persisted as one JSON line."""
        store = JsonLinesStore(temp_directory / "metrics.jsonl")
        collector = MetricsCollector(catalog, store=store)

        collector.collect()
        collector.collect()

        records = store.read()
        assert len(records) == 2
        assert records[0]['active_connections'] == 10

    def test_summary(self, catalog):
        """Summary averages connections over the history."""
        catalog.snapshots = [make_snapshot(active=4), make_snapshot(active=8, slow=2)]
        collector = MetricsCollector(catalog)
        assert collector.summary() == {}

        collector.collect()
        collector.collect()
        summary = collector.summary()

        assert summary['current_connections'] == 8
        assert summary['avg_connections'] == 6
        assert summary['slow_queries'] == 2

    def test_recent(self, catalog):
        catalog.snapshots = [make_snapshot(active=i) for i in range(6)]
        collector = MetricsCollector(catalog)
        for _ in range(6):
            collector.collect()

        assert [s.active_connections for s in collector.recent(3)] == [3, 4, 5]


class TestAlertEvaluator:
    """Test threshold rules and cooldown suppression."""

    def test_no_alerts_below_thresholds(self, notifier, clock):
        evaluator = AlertEvaluator(notifier, clock=clock)

        assert evaluator.evaluate(make_snapshot(active=50)) == []
        assert notifier.alerts == []

    def test_connection_usage_alert(self, notifier, clock):
        """Usage above the percentage threshold raises a warning."""
        evaluator = AlertEvaluator(notifier, clock=clock)

        sent = evaluator.evaluate(make_snapshot(active=95))

        assert len(sent) == 1
        assert sent[0].type == 'high_connection_usage'
        assert sent[0].severity == AlertSeverity.WARNING
        assert sent[0].value == pytest.approx(95.0)
        title, details = notifier.alerts[0]
        assert title == 'high_connection_usage'
        assert details['level'] == 'warning'
        assert details['threshold'] == 80.0

    def test_usage_at_threshold_does_not_alert(self, notifier, clock):
        evaluator = AlertEvaluator(notifier, clock=clock)
        assert evaluator.evaluate(make_snapshot(active=80)) == []

    def test_repeated_breach_alerts_once_within_cooldown(self, notifier, clock):
        """Connections 10, 95, 95 one minute apart dispatch a single alert."""
        evaluator = AlertEvaluator(notifier, clock=clock)

        for active in (10, 95, 95):
            evaluator.evaluate(make_snapshot(active=active))
            clock.advance(60)

        assert len(notifier.alerts) == 1

    def test_suppression_ignores_magnitude(self, notifier, clock):
        """Alerts of one type and severity suppress each other whatever their value."""
        evaluator = AlertEvaluator(notifier, clock=clock)

        evaluator.evaluate(make_snapshot(active=85))
        clock.advance(10)
        evaluator.evaluate(make_snapshot(active=100))

        assert len(notifier.alerts) == 1
        assert notifier.alerts[0][1]['value'] == pytest.approx(85.0)

    def test_alert_resent_after_cooldown(self, notifier, clock):
        evaluator = AlertEvaluator(notifier, cooldown_seconds=3600, clock=clock)

        evaluator.evaluate(make_snapshot(slow=3))
        clock.advance(3599)
        evaluator.evaluate(make_snapshot(slow=3))
        assert len(notifier.alerts) == 1

        clock.advance(1)
        evaluator.evaluate(make_snapshot(slow=3))
        assert len(notifier.alerts) == 2

    def test_different_types_do_not_suppress_each_other(self, notifier, clock):
        evaluator = AlertEvaluator(notifier, clock=clock)

        sent = evaluator.evaluate(make_snapshot(active=90, slow=1, size_bytes=2 * GB))

        assert [e.type for e in sent] == ['high_connection_usage', 'slow_queries', 'large_database']
        assert sent[2].severity == AlertSeverity.INFO

    def test_history_is_bounded(self, notifier, clock):
        """The oldest alert keys are evicted once the history is full."""
        evaluator = AlertEvaluator(notifier, history_size=2, clock=clock)

        for alert_type in ('a', 'b', 'c'):
            evaluator.process(AlertEvent(type=alert_type, severity=AlertSeverity.WARNING,
                                         message=alert_type, value=1))

        assert list(evaluator.history) == ['b_warning', 'c_warning']
        # 'a' was evicted, so it is no longer suppressed
        assert evaluator.process(AlertEvent(type='a', severity=AlertSeverity.WARNING,
                                            message='a', value=1))

    def test_custom_thresholds(self, notifier, clock):
        thresholds = ThresholdsConfig(max_connections_percent=50, connection_limit=20)
        evaluator = AlertEvaluator(notifier, thresholds=thresholds, clock=clock)

        sent = evaluator.evaluate(make_snapshot(active=11))

        assert sent[0].value == pytest.approx(55.0)


class TestJsonLinesStore:
    """Test append-only persistence with rotation."""

    def test_append_and_read(self, temp_directory):
        store = JsonLinesStore(temp_directory / "nested" / "log.jsonl")
        store.append({'n': 1})
        store.append({'n': 2})

        assert store.read() == [{'n': 1}, {'n': 2}]
        assert store.read(limit=1) == [{'n': 2}]

    def test_read_zero_limit(self, temp_directory):
        store = JsonLinesStore(temp_directory / "log.jsonl")
        store.append({'n': 1})

        assert store.read(limit=0) == []

    def test_read_missing_file(self, temp_directory):
        assert JsonLinesStore(temp_directory / "missing.jsonl").read() == []

    def test_rotation(self, temp_directory):
        """Files past max_bytes are rotated and old generations dropped."""
        path = temp_directory / "log.jsonl"
        record = {'payload': 'x' * 50}
        line_size = len(json.dumps(record)) + 1
        store = JsonLinesStore(path, max_bytes=line_size * 2, backup_count=2)

        for _ in range(8):
            store.append(record)

        assert path.exists()
        assert (temp_directory / "log.jsonl.1").exists()
        assert (temp_directory / "log.jsonl.2").exists()
        assert not (temp_directory / "log.jsonl.3").exists()
        assert path.stat().st_size <= line_size * 2


class TestHealthChecker:
    """Test the health check batch."""

    @pytest.fixture(autouse=True)
    def healthy_disk(self, monkeypatch):
        monkeypatch.setattr("recipedb.monitoring.psutil.disk_usage",
                            lambda path: DiskUsage(100 * GB, 40 * GB, 60 * GB, 40.0))

    def test_all_checks_healthy(self, catalog, notifier, temp_directory):
        store = JsonLinesStore(temp_directory / "health-checks.jsonl")
        checker = HealthChecker(catalog, notifier, store=store, disk_path=str(temp_directory))

        results = checker.run()

        assert [r.name for r in results] == ['database_connectivity', 'table_accessibility', 'disk_space']
        assert all(r.healthy for r in results)
        assert notifier.alerts == []
        assert len(store.read()) == 1
        assert checker.latest['checks'][2]['details'].startswith("40.0% used")

    def test_replication_reported_when_available(self, notifier):
        checker = HealthChecker(FakeCatalog(replicas=2), notifier)

        names = [r.name for r in checker.run()]

        assert 'replication_status' in names

    def test_failed_check_alerts_with_unhealthy_results(self, notifier):
        """A raising check is reported unhealthy and the batch still completes."""
        checker = HealthChecker(FakeCatalog(reachable=False), notifier)

        results = checker.run()

        assert results[0].status == HealthStatus.UNHEALTHY
        assert "connection refused" in results[0].details
        assert results[1].healthy
        title, details = notifier.alerts[0]
        assert title == 'Health Check Failed'
        assert [d['name'] for d in details] == ['database_connectivity']

    def test_empty_schema_is_unhealthy(self, notifier):
        checker = HealthChecker(FakeCatalog(tables=0), notifier)

        results = {r.name: r for r in checker.run()}

        assert not results['table_accessibility'].healthy

    def test_disk_over_threshold(self, catalog, notifier, monkeypatch):
        monkeypatch.setattr("recipedb.monitoring.psutil.disk_usage",
                            lambda path: DiskUsage(100 * GB, 90 * GB, 10 * GB, 90.0))
        checker = HealthChecker(catalog, notifier, disk_threshold_percent=85)

        results = {r.name: r for r in checker.run()}

        assert not results['disk_space'].healthy
        assert len(notifier.alerts) == 1


class TestReportGenerator:
    """Test hourly report files and the daily report email."""

    def test_hourly_report_written(self, catalog, notifier, temp_directory):
        collector = MetricsCollector(catalog)
        collector.collect()
        reports = ReportGenerator(catalog, collector, notifier, str(temp_directory / "reports"))

        path = reports.hourly_report()

        assert path.name.startswith("hourly-") and path.suffix == ".json"
        data = json.loads(path.read_text())
        assert data['period'] == 'hour'
        assert data['summary']['current_connections'] == 10

    def test_hourly_report_failure_is_logged(self, notifier, temp_directory):
        class BrokenCatalog(FakeCatalog):
            def performance_stats(self):
                raise RuntimeError("stats unavailable")

        catalog = BrokenCatalog()
        reports = ReportGenerator(catalog, MetricsCollector(catalog), notifier, str(temp_directory))

        assert reports.hourly_report() is None

    def test_daily_report_sent(self, catalog, notifier, temp_directory):
        reports = ReportGenerator(catalog, MetricsCollector(catalog), notifier, str(temp_directory))

        report = reports.daily_report()

        assert report['period'] == 'day'
        assert notifier.reports == [report]


class TestMonitoringService:
    """Test the wiring used by the scheduler and the API."""

    @pytest.fixture
    def service(self, catalog, notifier, temp_directory, monkeypatch):
        monkeypatch.setattr("recipedb.monitoring.psutil.disk_usage",
                            lambda path: DiskUsage(100 * GB, 10 * GB, 90 * GB, 10.0))
        config = MonitoringConfig(
            data_dir=str(temp_directory / "monitoring"),
            reports_dir=str(temp_directory / "reports"),
            api_history_size=3,
        )
        return MonitoringService(catalog, notifier, config, clock=FakeClock())

    def test_collect_metrics_evaluates_alerts(self, service, catalog, notifier, temp_directory):
        catalog.snapshots = [make_snapshot(active=99)]

        snapshot = service.collect_metrics()

        assert snapshot.active_connections == 99
        assert notifier.alerts[0][0] == 'high_connection_usage'
        assert (temp_directory / "monitoring" / "metrics.jsonl").exists()

    def test_get_metrics_limits_history(self, service):
        for _ in range(5):
            service.collect_metrics()

        metrics = service.get_metrics()

        assert len(metrics['history']) == 3
        assert metrics['current']['collections'] == 5
        assert metrics['summary']['current_connections'] == 10

    def test_get_health_before_first_check(self, service):
        assert service.get_health() == {'timestamp': None, 'checks': []}

    def test_check_health_persists(self, service, temp_directory):
        service.check_health()

        assert len(service.get_health()['checks']) == 3
        assert (temp_directory / "monitoring" / "health-checks.jsonl").exists()

    def test_performance_report(self, service):
        report = service.get_performance_report()

        assert report['period'] == 'hour'
        assert 'uptime_seconds' in report
