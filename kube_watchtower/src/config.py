from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from croniter import croniter


class ConfigError(RuntimeError):
    """Raised when the process configuration is invalid."""


class TagPolicy(str, Enum):
    """Which declared tags are tracked for digest drift."""

    ALL = "all"
    LATEST = "latest"


class UnknownDigestPolicy(str, Enum):
    """What to do with a container whose running digest could not be observed."""

    UPDATE = "update"
    SKIP = "skip"


@dataclass(frozen=True)
class EligibilityPolicy:
    """Immutable rules deciding which containers a cycle may touch.

    Attributes:
        included_namespaces: When non-empty, only these namespaces are watched.
        excluded_namespaces: Namespaces never watched, even if included.
        excluded_containers: Container names never checked.
        tag_policy:          ``all`` tracks every tag, ``latest`` only the literal ``latest``.
        unknown_digest:      Behaviour when no local digest is known.
        cleanup:             Delete stale revision objects after a rollout.
    """

    included_namespaces: frozenset[str] = frozenset()
    excluded_namespaces: frozenset[str] = frozenset()
    excluded_containers: frozenset[str] = frozenset()
    tag_policy: TagPolicy = TagPolicy.ALL
    unknown_digest: UnknownDigestPolicy = UnknownDigestPolicy.UPDATE
    cleanup: bool = True

    def namespace_allowed(self, namespace: str) -> bool:
        if namespace in self.excluded_namespaces:
            return False
        return not self.included_namespaces or namespace in self.included_namespaces

    def container_allowed(self, container_name: str) -> bool:
        return container_name not in self.excluded_containers

    def tag_allowed(self, tag: str) -> bool:
        if self.tag_policy is TagPolicy.LATEST:
            return tag == "latest"
        return True


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed down explicitly."""

    policy: EligibilityPolicy = field(default_factory=EligibilityPolicy)
    log_level: str = "INFO"
    schedule: str | None = None
    check_interval_seconds: float = 300.0
    run_once: bool = False
    notification_url: str | None = None
    notification_cluster: str = "kubernetes"
    rollout_timeout_seconds: float = 300.0
    rollout_poll_interval_seconds: float = 2.0
    registry_timeout_seconds: float = 10.0
    max_concurrency: int = 1
    health_port: int = 8080
    health_server_enabled: bool = True
    liveness_stall_seconds: float | None = 7200.0


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_list(value: str | None) -> frozenset[str]:
    """Split a comma-separated value into a set of trimmed, non-empty items."""
    if not value:
        return frozenset()
    return frozenset(item.strip() for item in value.split(",") if item.strip())


def parse_duration(name: str, value: str) -> float:
    """Parse ``300``, ``30s``, ``5m``, ``1h30m`` or ``500ms`` into seconds."""
    raw = value.strip().lower()
    try:
        return float(raw)
    except ValueError:
        pass

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(raw):
        if match.start() != position:
            break
        amount, unit = float(match.group(1)), match.group(2)
        total += amount * {"ms": 0.001, "s": 1, "m": 60, "h": 3600}[unit]
        position = match.end()
    if position == 0 or position != len(raw):
        raise ConfigError(f"{name} must be a duration like 30s, 5m or 1h, got: {value!r}")
    return total


def _duration(values: Mapping[str, str], name: str, default: float, *, minimum: float) -> float:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    seconds = parse_duration(name, raw)
    if seconds < minimum:
        raise ConfigError(f"{name} must be >= {minimum}s, got: {raw!r}")
    return seconds


def _int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _choice(values: Mapping[str, str], name: str, enum_type: type[Enum], default: Enum) -> Enum:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return enum_type(raw.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        raise ConfigError(f"{name} must be one of {allowed}, got: {raw!r}") from exc


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from environment-style key/value pairs.

    Every key is optional. Unknown keys are ignored; malformed values raise
    :class:`ConfigError` so the process refuses to start with a half-parsed
    configuration.
    """
    values = env if env is not None else os.environ

    schedule = (values.get("SCHEDULE") or "").strip() or None
    if schedule is not None and not croniter.is_valid(schedule):
        raise ConfigError(f"SCHEDULE is not a valid cron expression: {schedule!r}")

    policy = EligibilityPolicy(
        included_namespaces=parse_list(values.get("NAMESPACES")),
        excluded_namespaces=parse_list(values.get("DISABLE_NAMESPACES")),
        excluded_containers=parse_list(values.get("DISABLE_CONTAINERS")),
        tag_policy=_choice(values, "TAG_POLICY", TagPolicy, TagPolicy.ALL),  # type: ignore[arg-type]
        unknown_digest=_choice(  # type: ignore[arg-type]
            values, "UNKNOWN_DIGEST_POLICY", UnknownDigestPolicy, UnknownDigestPolicy.UPDATE
        ),
        cleanup=parse_bool(values.get("CLEANUP"), default=True),
    )

    return Settings(
        policy=policy,
        log_level=(values.get("LOG_LEVEL") or "INFO").strip().upper(),
        schedule=schedule,
        check_interval_seconds=_duration(values, "CHECK_INTERVAL", 300.0, minimum=1.0),
        run_once=parse_bool(values.get("RUN_ONCE")),
        notification_url=(values.get("NOTIFICATION_URL") or "").strip() or None,
        notification_cluster=(values.get("NOTIFICATION_CLUSTER") or "").strip() or "kubernetes",
        rollout_timeout_seconds=_duration(values, "ROLLOUT_TIMEOUT", 300.0, minimum=1.0),
        rollout_poll_interval_seconds=_duration(
            values, "ROLLOUT_POLL_INTERVAL", 2.0, minimum=0.1
        ),
        registry_timeout_seconds=_duration(values, "REGISTRY_TIMEOUT", 10.0, minimum=0.1),
        max_concurrency=_int(values, "MAX_CONCURRENCY", 1, minimum=1, maximum=64),
        health_port=_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        health_server_enabled=parse_bool(values.get("HEALTH_SERVER_ENABLED"), default=True),
        liveness_stall_seconds=_duration(values, "LIVENESS_STALL_TIMEOUT", 7200.0, minimum=0.0)
        or None,
    )
