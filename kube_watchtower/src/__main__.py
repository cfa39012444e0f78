from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from kube_watchtower.src.config import ConfigError, Settings, load_settings
from kube_watchtower.src.credentials import CredentialResolver
from kube_watchtower.src.engine import ReconciliationEngine
from kube_watchtower.src.health import CycleWatchdog, start_health_server
from kube_watchtower.src.inventory import InventoryReader
from kube_watchtower.src.kube import ClusterClient, build_clients, load_kube_configuration
from kube_watchtower.src.metrics import METRICS
from kube_watchtower.src.notifier import NotificationReporter
from kube_watchtower.src.registry import RegistryClient
from kube_watchtower.src.rollout import RolloutExecutor
from kube_watchtower.src.scheduler import CycleScheduler

RUNTIME_VERSION = "0.3.0"
LOGGER = logging.getLogger("kube_watchtower")
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(https?://hooks\.slack\.com/services/|/api/webhooks/|/bot)(\S+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry, ensure_ascii=False)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # The kubernetes client logs full request bodies at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(logging.root.level, logging.INFO))


def build_engine(settings: Settings, cluster: ClusterClient) -> ReconciliationEngine:
    """Wire the reconciliation engine and its collaborators from ``settings``."""
    policy = settings.policy
    return ReconciliationEngine(
        policy=policy,
        inventory=InventoryReader(cluster, policy),
        credentials=CredentialResolver(cluster),
        registry=RegistryClient(timeout_seconds=settings.registry_timeout_seconds),
        executor=RolloutExecutor(
            cluster,
            cleanup=policy.cleanup,
            timeout_seconds=settings.rollout_timeout_seconds,
            poll_interval_seconds=settings.rollout_poll_interval_seconds,
        ),
        reporter=NotificationReporter(
            settings.notification_url, cluster_name=settings.notification_cluster
        ),
        max_concurrency=settings.max_concurrency,
    )


def main() -> int:
    """Watcher entrypoint: load config, connect to the cluster, run cycles until a signal."""
    try:
        settings = load_settings()
    except ConfigError as exc:
        configure_logging(os.getenv("LOG_LEVEL", "INFO"))
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    configure_logging(settings.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    LOGGER.info("kube-watchtower %s", RUNTIME_VERSION)
    LOGGER.debug(
        "Configuration loaded: DisableNamespaces=%s DisableContainers=%s TagPolicy=%s",
        sorted(settings.policy.excluded_namespaces),
        sorted(settings.policy.excluded_containers),
        settings.policy.tag_policy.value,
    )

    try:
        load_kube_configuration()
        core_api, apps_api = build_clients()
        cluster = ClusterClient(core_api=core_api, apps_api=apps_api)
        cluster.check_connection()
    except Exception:
        LOGGER.exception("Cannot reach the Kubernetes API; check kubeconfig or service account")
        return 1

    engine = build_engine(settings, cluster)
    watchdog = CycleWatchdog()
    health_server = None
    if settings.health_server_enabled and not settings.run_once:
        health_server = start_health_server(
            ready=engine.ready,
            port=settings.health_port,
            watchdog=watchdog,
            stall_after=settings.liveness_stall_seconds,
        )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    scheduler = CycleScheduler(
        engine,
        interval_seconds=settings.check_interval_seconds,
        schedule=settings.schedule,
        run_once=settings.run_once,
        watchdog=watchdog,
    )
    scheduler.run_forever(shutdown_event)

    if health_server is not None:
        health_server.shutdown()
    LOGGER.info("kube-watchtower stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
