from __future__ import annotations

import threading
import time
import urllib.request

import pytest

from kube_watchtower.src.health import CycleWatchdog, start_health_server
from kube_watchtower.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_watchdog_idle_reports_zero() -> None:
    clock = FakeClock()
    watchdog = CycleWatchdog(clock=clock)

    assert watchdog.busy_for() == 0.0
    watchdog.cycle_started()
    clock.now = 160.0
    assert watchdog.busy_for() == 60.0
    watchdog.cycle_finished()
    assert watchdog.busy_for() == 0.0


class TestHealthServer:
    """Liveness, readiness and metrics endpoints."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.clock = FakeClock()
        self.watchdog = CycleWatchdog(clock=self.clock)
        self.server = start_health_server(
            ready=self.ready, port=0, watchdog=self.watchdog, stall_after=600
        )
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_ok_while_idle(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_healthz_ok_during_short_cycle(self) -> None:
        self.watchdog.cycle_started()
        self.clock.now += 30
        status, _ = _get(f"{self.base_url}/healthz")
        assert status == 200

    def test_healthz_fails_when_cycle_stalls(self) -> None:
        self.watchdog.cycle_started()
        self.clock.now += 601
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 503
        assert body == "stalled: cycle running for 601s"

    def test_healthz_recovers_after_cycle_finishes(self) -> None:
        self.watchdog.cycle_started()
        self.clock.now += 601
        self.watchdog.cycle_finished()
        status, _ = _get(f"{self.base_url}/healthz")
        assert status == 200

    def test_readyz_returns_503_when_not_ready(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false"

    def test_readyz_returns_200_when_ready(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true"

    def test_metrics_exposes_watcher_series(self) -> None:
        METRICS.containers_scanned_total.inc(0)
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "kube_watchtower_cycles_total" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404

    def test_healthz_stays_responsive_during_slow_metrics_scrape(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        import kube_watchtower.src.health as health

        original_generate_latest = health.generate_latest
        metrics_started = threading.Event()

        def slow_generate_latest() -> bytes:
            metrics_started.set()
            time.sleep(1.2)
            return original_generate_latest()

        monkeypatch.setattr(health, "generate_latest", slow_generate_latest)

        metrics_result: dict[str, object] = {}

        def _scrape_metrics() -> None:
            try:
                status, _ = _get(f"{self.base_url}/metrics", timeout=3)
                metrics_result["status"] = status
            except Exception as exc:
                metrics_result["error"] = exc

        metrics_thread = threading.Thread(target=_scrape_metrics)
        metrics_thread.start()

        assert metrics_started.wait(timeout=1)
        status, body = _get(f"{self.base_url}/healthz", timeout=1)

        metrics_thread.join(timeout=4)
        assert not metrics_thread.is_alive()
        assert "error" not in metrics_result
        assert metrics_result.get("status") == 200
        assert status == 200
        assert body == "ok"


class TestHealthServerWithoutWatchdog:
    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"
