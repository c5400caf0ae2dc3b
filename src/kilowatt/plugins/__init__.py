"""Plugin framework for extending StationController behavior."""

from .base import PluginContext, PluginHook, StationPlugin
from .fluentd_audit import FluentdAuditPlugin
from .orphaned_transaction import OrphanedTransactionPlugin
from .prometheus_metrics import PrometheusMetricsPlugin

__all__ = [
    "FluentdAuditPlugin",
    "OrphanedTransactionPlugin",
    "PluginContext",
    "PluginHook",
    "PrometheusMetricsPlugin",
    "StationPlugin",
]
