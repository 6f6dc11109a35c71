"""Monitoring Module for RecipeDB

This module polls PostgreSQL system views for connection, query, size and
lock counters, evaluates the latest snapshot against static thresholds and
hands alerts to the email notifier.

Ownership: ``MetricsCollector`` owns the metrics history and
``AlertEvaluator`` owns the alert history. Both live in memory only and start
empty on every process start.
"""

import json
import logging
import os
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

import psutil
from sqlalchemy import text
from sqlalchemy.engine import Engine

from .config import MonitoringConfig, RecipeDBConfig, ThresholdsConfig
from .database import DatabaseManager
from .notifier import EmailNotifier

GB = 1024 ** 3


class HealthStatus(Enum):
    """Health status levels."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class AlertSeverity(Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MetricsSnapshot:
    """One point-in-time measurement of database counters."""
    timestamp: datetime
    active_connections: int = 0
    idle_connections: int = 0
    active_queries: int = 0
    total_queries: int = 0
    total_query_time_ms: float = 0.0
    slow_queries: int = 0
    database_size_bytes: int = 0
    locks: Dict[str, int] = field(default_factory=dict)

    @property
    def database_size_gb(self) -> float:
        return self.database_size_bytes / GB

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data


@dataclass
class HealthCheckResult:
    """Result of a single named health check."""
    name: str
    status: HealthStatus
    timestamp: datetime
    details: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'status': self.status.value,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class AlertEvent:
    """A threshold violation found in a snapshot."""
    type: str
    severity: AlertSeverity
    message: str
    value: float
    threshold: Optional[float] = None
    timestamp: datetime = field(default_factory=_now)

    @property
    def key(self) -> str:
        # The value is deliberately not part of the key: alerts of one
        # type and severity suppress each other within the cooldown window
        # whatever their magnitude.
        return f"{self.type}_{self.severity.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'level': self.severity.value,
            'message': self.message,
            'value': self.value,
            'threshold': self.threshold,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class AlertHistoryEntry:
    """Last time an alert with ``key`` was dispatched (epoch seconds)."""
    key: str
    last_sent: float


class JsonLinesStore:
    """Append-only JSON-lines file with size based rotation.

    When the active file grows past ``max_bytes`` it is renamed to ``.1``,
    existing rotated files shift up by one and files beyond
    ``backup_count`` are removed.
    """

    def __init__(self, path, max_bytes: int = 5242880, backup_count: int = 5):
        self.path = Path(path)
        self.max_bytes = max_bytes
        self.backup_count = backup_count

    def _rotated(self, index: int) -> Path:
        return self.path.with_name(f"{self.path.name}.{index}")

    def _rotate(self) -> None:
        if self.backup_count <= 0:
            self.path.unlink(missing_ok=True)
            return
        self._rotated(self.backup_count).unlink(missing_ok=True)
        for index in range(self.backup_count - 1, 0, -1):
            source = self._rotated(index)
            if source.exists():
                source.replace(self._rotated(index + 1))
        self.path.replace(self._rotated(1))

    def append(self, record: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record, default=str) + "\n"
        if self.path.exists() and self.path.stat().st_size + len(line) > self.max_bytes:
            self._rotate()
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    def read(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Records from the active file, oldest first, optionally only the last ``limit``."""
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            lines = deque(f, maxlen=limit) if limit is not None else list(f)
        return [json.loads(line) for line in lines if line.strip()]


class PostgresCatalog:
    """Read-only queries against the PostgreSQL statistics views."""

    def __init__(self, engine: Engine, slow_query_ms: float = 1000.0):
        self.engine = engine
        self.slow_query_ms = slow_query_ms
        self.logger = logging.getLogger(__name__ + '.PostgresCatalog')

    def snapshot(self) -> MetricsSnapshot:
        with self.engine.connect() as conn:
            connections = conn.execute(text("""
                SELECT count(*) AS active_connections,
                       count(CASE WHEN state = 'idle' THEN 1 END) AS idle_connections,
                       count(CASE WHEN state = 'active' THEN 1 END) AS active_queries
                FROM pg_stat_activity
                WHERE datname = current_database()
            """)).one()

            performance = None
            has_statements = conn.execute(text(
                "SELECT 1 FROM pg_extension WHERE extname = 'pg_stat_statements'"
            )).first()
            if has_statements:
                performance = conn.execute(text("""
                    SELECT coalesce(sum(calls), 0) AS total_queries,
                           coalesce(sum(total_exec_time), 0) AS total_query_time,
                           coalesce(sum(CASE WHEN mean_exec_time > :slow THEN calls ELSE 0 END), 0) AS slow_queries
                    FROM pg_stat_statements
                    WHERE dbid = (SELECT oid FROM pg_database WHERE datname = current_database())
                """), {'slow': self.slow_query_ms}).one()

            size = conn.execute(text("SELECT pg_database_size(current_database())")).scalar()

            locks = conn.execute(text("""
                SELECT mode, count(*) AS lock_count
                FROM pg_locks
                WHERE database = (SELECT oid FROM pg_database WHERE datname = current_database())
                GROUP BY mode
            """)).all()

        return MetricsSnapshot(
            timestamp=_now(),
            active_connections=int(connections.active_connections),
            idle_connections=int(connections.idle_connections),
            active_queries=int(connections.active_queries),
            total_queries=int(performance.total_queries) if performance else 0,
            total_query_time_ms=float(performance.total_query_time) if performance else 0.0,
            slow_queries=int(performance.slow_queries) if performance else 0,
            database_size_bytes=int(size or 0),
            locks={row.mode: int(row.lock_count) for row in locks},
        )

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def table_count(self) -> int:
        with self.engine.connect() as conn:
            return int(conn.execute(text(
                "SELECT count(*) FROM information_schema.tables WHERE table_schema = 'public'"
            )).scalar())

    def replica_count(self) -> Optional[int]:
        """Number of streaming replicas, or None when replication stats are unavailable."""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text("""
                    SELECT client_addr, state,
                           pg_wal_lsn_diff(pg_current_wal_lsn(), flush_lsn) AS lag_bytes
                    FROM pg_stat_replication
                """)).all()
            return len(rows)
        except Exception as e:
            self.logger.debug(f"Replication status unavailable: {e}")
            return None

    def performance_stats(self) -> Dict[str, Any]:
        with self.engine.connect() as conn:
            stats = conn.execute(text("""
                SELECT count(*) AS total_connections,
                       avg(extract(epoch FROM now() - query_start)) AS avg_query_duration,
                       count(CASE WHEN state = 'active' THEN 1 END) AS active_queries
                FROM pg_stat_activity
                WHERE datname = current_database()
            """)).one()
            size = conn.execute(text(
                "SELECT pg_size_pretty(pg_database_size(current_database()))"
            )).scalar()
            tables = conn.execute(text("""
                SELECT schemaname,
                       relname AS tablename,
                       n_tup_ins + n_tup_upd + n_tup_del AS total_operations,
                       n_live_tup AS live_tuples
                FROM pg_stat_user_tables
                ORDER BY total_operations DESC
                LIMIT 10
            """)).all()
        return {
            'avg_connections': float(stats.total_connections or 0),
            'avg_query_duration': float(stats.avg_query_duration or 0),
            'active_queries': int(stats.active_queries or 0),
            'database_size': size,
            'top_tables': [dict(row._mapping) for row in tables],
        }


class MetricsCollector:
    """Collects snapshots into a bounded, oldest-first history."""

    def __init__(self, catalog, history_size: int = 1000, store: Optional[JsonLinesStore] = None):
        self.catalog = catalog
        self.history: Deque[MetricsSnapshot] = deque(maxlen=history_size)
        self.store = store
        self.errors = 0
        self.collections = 0
        self.last_collection: Optional[datetime] = None
        self.started_at = time.time()
        self.logger = logging.getLogger(__name__ + '.MetricsCollector')

    def collect(self) -> Optional[MetricsSnapshot]:
        """Take one snapshot. Query failures are counted and logged, never raised."""
        try:
            snapshot = self.catalog.snapshot()
        except Exception as e:
            self.errors += 1
            self.logger.error(f"Error collecting metrics: {e}")
            return None

        self.history.append(snapshot)
        self.collections += 1
        self.last_collection = snapshot.timestamp
        self.logger.debug(
            f"Collected metrics: {snapshot.active_connections} connections, "
            f"{snapshot.slow_queries} slow queries, {snapshot.database_size_bytes} bytes"
        )

        if self.store is not None:
            try:
                self.store.append(snapshot.to_dict())
            except Exception as e:
                self.logger.error(f"Error storing metrics: {e}")
        return snapshot

    @property
    def latest(self) -> Optional[MetricsSnapshot]:
        return self.history[-1] if self.history else None

    def recent(self, limit: int) -> List[MetricsSnapshot]:
        return list(self.history)[-limit:]

    def counters(self) -> Dict[str, Any]:
        return {
            'collections': self.collections,
            'errors': self.errors,
            'last_collection': self.last_collection.isoformat() if self.last_collection else None,
            'uptime_seconds': round(time.time() - self.started_at, 1),
            'history_size': len(self.history),
            'history_capacity': self.history.maxlen,
        }

    def summary(self) -> Dict[str, Any]:
        if not self.history:
            return {}
        latest = self.history[-1]
        return {
            'current_connections': latest.active_connections,
            'avg_connections': sum(s.active_connections for s in self.history) / len(self.history),
            'total_queries': latest.total_queries,
            'slow_queries': latest.slow_queries,
            'database_size': latest.database_size_bytes,
        }


class AlertEvaluator:
    """Turns snapshots into alerts and suppresses repeats within the cooldown."""

    def __init__(self, notifier, thresholds: Optional[ThresholdsConfig] = None,
                 cooldown_seconds: float = 3600, history_size: int = 100,
                 clock: Callable[[], float] = time.time):
        self.notifier = notifier
        self.thresholds = thresholds or ThresholdsConfig()
        self.cooldown_seconds = cooldown_seconds
        self.history_size = history_size
        self.clock = clock
        self.history: "OrderedDict[str, AlertHistoryEntry]" = OrderedDict()
        self.logger = logging.getLogger(__name__ + '.AlertEvaluator')

    def candidates(self, snapshot: MetricsSnapshot) -> List[AlertEvent]:
        """Apply the threshold rules in order."""
        alerts = []

        usage = snapshot.active_connections / self.thresholds.connection_limit * 100
        if usage > self.thresholds.max_connections_percent:
            alerts.append(AlertEvent(
                type='high_connection_usage',
                severity=AlertSeverity.WARNING,
                message=f"High connection usage: {usage:.1f}%",
                value=usage,
                threshold=self.thresholds.max_connections_percent,
                timestamp=snapshot.timestamp,
            ))

        if snapshot.slow_queries > 0:
            alerts.append(AlertEvent(
                type='slow_queries',
                severity=AlertSeverity.WARNING,
                message=f"{snapshot.slow_queries} slow queries detected",
                value=snapshot.slow_queries,
                timestamp=snapshot.timestamp,
            ))

        size_gb = snapshot.database_size_gb
        if size_gb > self.thresholds.max_database_size_gb:
            alerts.append(AlertEvent(
                type='large_database',
                severity=AlertSeverity.INFO,
                message=f"Database size: {size_gb:.2f} GB",
                value=size_gb,
                threshold=self.thresholds.max_database_size_gb,
                timestamp=snapshot.timestamp,
            ))

        return alerts

    def is_suppressed(self, event: AlertEvent, now: Optional[float] = None) -> bool:
        entry = self.history.get(event.key)
        if entry is None:
            return False
        now = self.clock() if now is None else now
        return now - entry.last_sent < self.cooldown_seconds

    def process(self, event: AlertEvent) -> bool:
        """Dispatch ``event`` unless its key is cooling down. Returns True when sent."""
        now = self.clock()
        if self.is_suppressed(event, now):
            self.logger.debug(f"Suppressed alert {event.key}: {event.message}")
            return False

        self.notifier.send_alert(event.type, event.to_dict())

        self.history[event.key] = AlertHistoryEntry(key=event.key, last_sent=now)
        self.history.move_to_end(event.key)
        while len(self.history) > self.history_size:
            self.history.popitem(last=False)
        return True

    def evaluate(self, snapshot: MetricsSnapshot) -> List[AlertEvent]:
        """Evaluate a snapshot and return the alerts that were dispatched."""
        return [event for event in self.candidates(snapshot) if self.process(event)]


class HealthChecker:
    """Runs the health check batch and alerts on unhealthy results."""

    def __init__(self, catalog, notifier, store: Optional[JsonLinesStore] = None,
                 disk_path: str = ".", disk_threshold_percent: float = 85.0,
                 history_size: int = 100):
        self.catalog = catalog
        self.notifier = notifier
        self.store = store
        self.disk_path = disk_path
        self.disk_threshold_percent = disk_threshold_percent
        self.history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self.logger = logging.getLogger(__name__ + '.HealthChecker')

    def _check(self, name: str, func: Callable[[], Optional[HealthCheckResult]]) -> Optional[HealthCheckResult]:
        try:
            return func()
        except Exception as e:
            self.logger.error(f"Health check {name} failed: {e}")
            return HealthCheckResult(name=name, status=HealthStatus.UNHEALTHY,
                                     timestamp=_now(), details=str(e))

    def _connectivity(self) -> HealthCheckResult:
        ok = self.catalog.ping()
        return HealthCheckResult(
            name='database_connectivity',
            status=HealthStatus.HEALTHY if ok else HealthStatus.UNHEALTHY,
            timestamp=_now(),
        )

    def _tables(self) -> HealthCheckResult:
        count = self.catalog.table_count()
        return HealthCheckResult(
            name='table_accessibility',
            status=HealthStatus.HEALTHY if count > 0 else HealthStatus.UNHEALTHY,
            timestamp=_now(),
            details=f"{count} tables found",
        )

    def _replication(self) -> Optional[HealthCheckResult]:
        replicas = self.catalog.replica_count()
        if replicas is None:
            return None
        return HealthCheckResult(
            name='replication_status',
            status=HealthStatus.HEALTHY,
            timestamp=_now(),
            details=f"{replicas} replicas",
        )

    def _disk_space(self) -> HealthCheckResult:
        path = self.disk_path if os.path.exists(self.disk_path) else "."
        usage = psutil.disk_usage(path)
        return HealthCheckResult(
            name='disk_space',
            status=HealthStatus.HEALTHY if usage.percent < self.disk_threshold_percent else HealthStatus.UNHEALTHY,
            timestamp=_now(),
            details=f"{usage.percent:.1f}% used, {usage.free / GB:.2f} GB free",
        )

    def run(self) -> List[HealthCheckResult]:
        checks = [
            ('database_connectivity', self._connectivity),
            ('table_accessibility', self._tables),
            ('replication_status', self._replication),
            ('disk_space', self._disk_space),
        ]
        results = [r for r in (self._check(name, func) for name, func in checks) if r is not None]

        record = {'timestamp': _now().isoformat(), 'checks': [r.to_dict() for r in results]}
        self.history.append(record)
        if self.store is not None:
            try:
                self.store.append(record)
            except Exception as e:
                self.logger.error(f"Error storing health checks: {e}")

        unhealthy = [r for r in results if not r.healthy]
        if unhealthy:
            self.notifier.send_alert('Health Check Failed', [r.to_dict() for r in unhealthy])
        else:
            self.logger.info(f"Health check passed: {len(results)} checks healthy")
        return results

    @property
    def latest(self) -> Optional[Dict[str, Any]]:
        return self.history[-1] if self.history else None


class ReportGenerator:
    """Hourly report files and the daily report email."""

    def __init__(self, catalog, collector: MetricsCollector, notifier, reports_dir: str = "data/reports"):
        self.catalog = catalog
        self.collector = collector
        self.notifier = notifier
        self.reports_dir = Path(reports_dir)
        self.logger = logging.getLogger(__name__ + '.ReportGenerator')

    def performance_report(self, period: str = 'hour') -> Dict[str, Any]:
        report = {'period': period, 'timestamp': _now().isoformat()}
        report.update(self.catalog.performance_stats())
        report['summary'] = self.collector.summary()
        report['uptime_seconds'] = round(time.time() - self.collector.started_at, 1)
        return report

    def hourly_report(self) -> Optional[Path]:
        try:
            report = self.performance_report('hour')
            self.reports_dir.mkdir(parents=True, exist_ok=True)
            report_file = self.reports_dir / f"hourly-{_now().date().isoformat()}.json"
            with open(report_file, 'w', encoding='utf-8') as f:
                json.dump(report, f, indent=2, default=str)
            self.logger.info(f"Hourly performance report written to {report_file}")
            return report_file
        except Exception as e:
            self.logger.error(f"Error generating hourly report: {e}")
            return None

    def daily_report(self) -> Optional[Dict[str, Any]]:
        try:
            report = self.performance_report('day')
        except Exception as e:
            self.logger.error(f"Error generating daily report: {e}")
            return None
        self.notifier.send_daily_report(report)
        return report


class MonitoringService:
    """Wires collector, evaluator, health checker and reports together."""

    def __init__(self, catalog, notifier, monitoring: Optional[MonitoringConfig] = None,
                 disk_path: str = ".", clock: Callable[[], float] = time.time):
        self.config = monitoring or MonitoringConfig()
        data_dir = Path(self.config.data_dir)
        self.catalog = catalog
        self.notifier = notifier
        self.collector = MetricsCollector(
            catalog,
            history_size=self.config.history_size,
            store=JsonLinesStore(data_dir / "metrics.jsonl",
                                 self.config.log_max_bytes, self.config.log_backup_count),
        )
        self.evaluator = AlertEvaluator(
            notifier,
            thresholds=self.config.thresholds,
            cooldown_seconds=self.config.alert_cooldown_seconds,
            history_size=self.config.alert_history_size,
            clock=clock,
        )
        self.health = HealthChecker(
            catalog,
            notifier,
            store=JsonLinesStore(data_dir / "health-checks.jsonl",
                                 self.config.log_max_bytes, self.config.log_backup_count),
            disk_path=disk_path,
            disk_threshold_percent=self.config.thresholds.disk_usage_percent,
            history_size=self.config.health_history_size,
        )
        self.reports = ReportGenerator(catalog, self.collector, notifier, self.config.reports_dir)
        self.logger = logging.getLogger(__name__ + '.MonitoringService')

    @classmethod
    def from_config(cls, config: RecipeDBConfig, engine: Optional[Engine] = None) -> "MonitoringService":
        """Build the service with its own small connection pool."""
        if engine is None:
            engine = DatabaseManager(
                config.get_database_url(),
                pool_size=config.monitoring.pool_size,
                pool_timeout=config.database.pool_timeout,
                max_overflow=0,
            ).engine
        notifier = EmailNotifier(
            config.notifications.email,
            database=config.get_database_name(),
            host=config.get_database_host(),
        )
        catalog = PostgresCatalog(engine, config.monitoring.thresholds.slow_query_ms)
        return cls(catalog, notifier, config.monitoring, disk_path=config.backup.directory)

    def collect_metrics(self) -> Optional[MetricsSnapshot]:
        """Metrics tick: collect a snapshot and evaluate alerts against it."""
        snapshot = self.collector.collect()
        if snapshot is not None:
            sent = self.evaluator.evaluate(snapshot)
            if sent:
                self.logger.info(f"Dispatched {len(sent)} alert(s): {', '.join(e.key for e in sent)}")
        return snapshot

    def check_health(self) -> List[HealthCheckResult]:
        return self.health.run()

    def generate_hourly_report(self) -> Optional[Path]:
        return self.reports.hourly_report()

    def generate_daily_report(self) -> Optional[Dict[str, Any]]:
        return self.reports.daily_report()

    def get_metrics(self) -> Dict[str, Any]:
        return {
            'current': self.collector.counters(),
            'history': [s.to_dict() for s in self.collector.recent(self.config.api_history_size)],
            'summary': self.collector.summary(),
        }

    def get_performance_report(self) -> Dict[str, Any]:
        return self.reports.performance_report('hour')

    def get_health(self) -> Dict[str, Any]:
        latest = self.health.latest
        if latest is None:
            return {'timestamp': None, 'checks': []}
        return latest
