from promo_worker import metrics


def test_snapshot_groups_counters_by_family():
    metrics.inc_counter("sweep.updated", 2)
    metrics.inc_counter("sweep.failed")
    metrics.inc_counter("submit.avatar")

    snapshot = metrics.get_snapshot()

    assert snapshot["counters"]["sweep.updated"] == 2
    assert snapshot["by_family"]["sweep"] == {"updated": 2, "failed": 1}
    assert snapshot["by_family"]["submit"] == {"avatar": 1}


def test_error_rate():
    for _ in range(4):
        metrics.inc_counter("requests.reconcile")
    metrics.inc_counter("errors.did_status")

    assert metrics.get_snapshot()["error_rate_5m"] == 25.0


def test_recent_errors_are_bounded():
    for n in range(metrics.MAX_ERRORS + 5):
        metrics.record_error("sweep", "TransientProviderError", f"boom {n}", "j1")

    snapshot = metrics.get_snapshot()

    assert len(snapshot["recent_errors"]) == 10
    assert snapshot["recent_errors"][-1]["message"] == f"boom {metrics.MAX_ERRORS + 4}"
    assert snapshot["error_patterns"] == {"sweep:TransientProviderError": metrics.MAX_ERRORS}


def test_latency_stats():
    for ms in (10, 20, 30, 40):
        metrics.record_latency("sweep", ms)

    stats = metrics.get_snapshot()["latency"]["sweep"]

    assert stats["count"] == 4
    assert stats["p50"] == 30
    assert stats["max"] == 40
    assert stats["avg"] == 25.0
