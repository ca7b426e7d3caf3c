"""
Monitoring, Logging, and Observability Infrastructure
Structured logging, run tracing and Prometheus counters for backup runs
"""

import sys
import logging
import logging.config
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import structlog
from prometheus_client import Counter, Histogram, CollectorRegistry, generate_latest, write_to_textfile

from .config import Settings, settings, get_logging_config

# Global logger
logger = structlog.get_logger()

# Prometheus metrics registry
metrics_registry = CollectorRegistry()

store_commits_total = Counter(
    'store_commits_total',
    'Batch commits issued (or simulated in dry-run)',
    ['mode', 'status'],
    registry=metrics_registry
)

store_operations_total = Counter(
    'store_operations_total',
    'Write and delete operations passed through the batch executor',
    ['op', 'mode'],
    registry=metrics_registry
)

commit_duration_seconds = Histogram(
    'store_commit_duration_seconds',
    'Batch commit duration',
    registry=metrics_registry
)

documents_processed_total = Counter(
    'documents_processed_total',
    'Documents handled by a component',
    ['component', 'outcome'],
    registry=metrics_registry
)


class MetricsCollector:
    """Centralized metrics collection and reporting"""

    def record_commit(self, size: int, op_counts: Dict[str, int], dry_run: bool,
                      status: str, duration: float):
        """Record one batch commit"""
        mode = "dry_run" if dry_run else "live"
        store_commits_total.labels(mode=mode, status=status).inc()
        for op, count in op_counts.items():
            store_operations_total.labels(op=op, mode=mode).inc(count)
        if not dry_run:
            commit_duration_seconds.observe(duration)

    def record_documents(self, component: str, outcome: str, count: int = 1):
        """Record documents exported, written, migrated, skipped or deleted"""
        if count:
            documents_processed_total.labels(
                component=component, outcome=outcome).inc(count)


# Global metrics collector instance
metrics_collector = MetricsCollector()


class RunTracer:
    """Correlates the steps of one orchestrated run in the structured log"""

    def __init__(self):
        self.logger = structlog.get_logger()
        self.active_traces: Dict[str, Dict[str, Any]] = {}

    def start_trace(self, trace_id: str, operation_type: str, **context) -> None:
        self.active_traces[trace_id] = {
            "operation_type": operation_type,
            "start_time": datetime.now(timezone.utc),
            "context": context,
            "steps": []
        }
        self.logger.info("Run started", trace_id=trace_id,
                         operation_type=operation_type, **context)

    def add_trace_step(self, trace_id: str, step_name: str, step_status: str,
                       step_duration: Optional[float] = None, **step_data) -> None:
        if trace_id not in self.active_traces:
            return
        step_info = {
            "step_name": step_name,
            "step_status": step_status,
            **step_data
        }
        if step_duration is not None:
            step_info["duration_ms"] = round(step_duration * 1000, 1)
        self.active_traces[trace_id]["steps"].append(step_info)

        if step_status == "success":
            self.logger.info("Run step completed", trace_id=trace_id, **step_info)
        elif step_status == "skipped":
            self.logger.warning("Run step skipped", trace_id=trace_id, **step_info)
        else:
            self.logger.error("Run step failed", trace_id=trace_id, **step_info)

    def end_trace(self, trace_id: str, final_status: str, **final_data) -> Dict[str, Any]:
        if trace_id not in self.active_traces:
            self.logger.warning("Attempted to end non-existent trace", trace_id=trace_id)
            return {}

        trace_data = self.active_traces.pop(trace_id)
        end_time = datetime.now(timezone.utc)
        summary = {
            "trace_id": trace_id,
            "operation_type": trace_data["operation_type"],
            "total_duration_seconds": (end_time - trace_data["start_time"]).total_seconds(),
            "final_status": final_status,
            "total_steps": len(trace_data["steps"]),
            "failed_steps": len([s for s in trace_data["steps"] if s["step_status"] == "failed"]),
            **final_data
        }

        if final_status == "success":
            self.logger.info("Run completed", **summary)
        else:
            self.logger.error("Run completed with errors", **summary)
        return summary


# Global run tracer instance
run_tracer = RunTracer()


def configure_logging(config: Settings = settings) -> None:
    """Configure stdlib logging and structlog for a CLI run"""
    logging.config.dictConfig(get_logging_config(config))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer() if config.LOG_FORMAT == "text" else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_prometheus_metrics() -> str:
    """Get Prometheus metrics in text format"""
    return generate_latest(metrics_registry).decode('utf-8')


def write_metrics_file(path: str) -> None:
    """Write metrics for the node exporter textfile collector"""
    write_to_textfile(path, metrics_registry)


__all__ = [
    'metrics_collector',
    'metrics_registry',
    'run_tracer',
    'configure_logging',
    'get_prometheus_metrics',
    'write_metrics_file',
]
