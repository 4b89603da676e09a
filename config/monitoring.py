# config/monitoring.py

import os

try:  # pragma: no cover - optional dependency at runtime
    from prometheus_client import Counter, Histogram
except ImportError:  # pragma: no cover
    Counter = None
    Histogram = None


class MonitoringConfig:
    """Monitoring and logging configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_NAME = os.environ.get("LOG_FILE_NAME", "roster_import.log")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    APP_NAME = os.environ.get("APP_NAME", "Roster Import")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10)


class ImporterMonitoring:
    """Prometheus metric helpers for importer batch API endpoints."""

    API_REQUEST_COUNTER = (
        Counter(
            "roster_importer_api_requests_total",
            "Total importer batch API requests by endpoint and outcome.",
            labelnames=("endpoint", "status"),
        )
        if Counter
        else None
    )
    API_REQUEST_LATENCY = (
        Histogram(
            "roster_importer_api_request_seconds",
            "Latency histogram for importer batch API endpoints.",
            labelnames=("endpoint", "status"),
            buckets=_LATENCY_BUCKETS,
        )
        if Histogram
        else None
    )
    BATCH_LIST_RESULT_SIZE = (
        Histogram(
            "roster_importer_batch_list_result_size",
            "Number of batches returned by the list endpoint.",
            labelnames=("status",),
            buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500),
        )
        if Histogram
        else None
    )
    ERROR_REPORT_ROW_COUNT = (
        Histogram(
            "roster_importer_error_report_row_count",
            "Row count of downloaded error reports.",
            labelnames=("status",),
            buckets=(0, 1, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
        )
        if Histogram
        else None
    )

    @classmethod
    def record_request(cls, *, endpoint: str, duration_seconds: float, status: str):
        if cls.API_REQUEST_COUNTER:
            cls.API_REQUEST_COUNTER.labels(endpoint=endpoint, status=status).inc()
        if cls.API_REQUEST_LATENCY:
            cls.API_REQUEST_LATENCY.labels(endpoint=endpoint, status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_batch_list(cls, *, duration_seconds: float, status: str, result_count: int):
        cls.record_request(endpoint="batch_list", duration_seconds=duration_seconds, status=status)
        if cls.BATCH_LIST_RESULT_SIZE:
            cls.BATCH_LIST_RESULT_SIZE.labels(status=status).observe(float(max(result_count, 0)))

    @classmethod
    def record_error_report(cls, *, duration_seconds: float, status: str, row_count: int):
        cls.record_request(endpoint="error_report", duration_seconds=duration_seconds, status=status)
        if cls.ERROR_REPORT_ROW_COUNT:
            cls.ERROR_REPORT_ROW_COUNT.labels(status=status).observe(float(max(row_count, 0)))
