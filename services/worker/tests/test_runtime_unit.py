"""Unit tests for the per-process worker runtime."""

from unittest.mock import MagicMock, patch

import pytest

from cafe_core.infrastructure.crypto import InvalidKeyError
from cafe_core.observability.metrics import JOB_DURATION, JOBS_ACTIVE


@pytest.fixture
def runtime(worker_settings, mock_redis, mock_pool):
    from cafe_worker.runtime import WorkerRuntime

    runtime = WorkerRuntime(
        settings=worker_settings,
        redis_client=mock_redis,
        pool=mock_pool,
        clock=lambda: 1_700_000_000.0,
    )
    yield runtime
    if not runtime.loop.is_closed():
        runtime.loop.close()


class TestConstruction:
    """Tests for WorkerRuntime construction."""

    def test_identity(self, runtime):
        assert runtime.hostname == "test-host"
        assert runtime.worker_id == f"worker-test-host-{runtime.pid}"
        assert runtime.started_at.startswith("2023-11-14T22:13:20")

    def test_bad_encryption_key_fails_fast(self, worker_settings, mock_redis, mock_pool):
        from cafe_worker.runtime import WorkerRuntime

        worker_settings.encryption_key = "too-short"

        with pytest.raises(InvalidKeyError):
            WorkerRuntime(settings=worker_settings, redis_client=mock_redis, pool=mock_pool)

    def test_rate_limit_and_backoff_from_settings(self, runtime, worker_settings):
        assert runtime.rate_limiter.config.name == "cafe-jobs"
        assert runtime.rate_limiter.config.requests_per_minute == worker_settings.fleet_rate_limit_per_minute
        assert runtime.backoff.max_delay == worker_settings.deferral_max_delay_seconds


class TestJobBookkeeping:
    """Tests for job counters and metrics."""

    def test_status_reflects_metrics(self, runtime):
        runtime.job_started()
        runtime.job_finished(True, duration_seconds=2.5)
        runtime.job_started()
        runtime.job_finished(False)
        runtime.job_started()

        status = runtime.status()

        assert status.active_jobs == 1
        assert status.processed_jobs == 2
        assert status.failed_jobs == 1
        assert status.queue_name == "cafe-jobs"
        assert runtime.metrics.get_histogram_stats(JOB_DURATION)["count"] == 1

    def test_retry_releases_active_slot(self, runtime, mock_redis):
        runtime.job_started()
        runtime.job_retrying()

        assert runtime.metrics.get(JOBS_ACTIVE) == 0
        pipe = mock_redis.pipeline.return_value
        pipe.incr.assert_any_call("cafe-manager:queue:cafe-jobs:delayed")

    def test_counter_errors_do_not_break_jobs(self, runtime, mock_redis):
        mock_redis.pipeline.side_effect = ConnectionError("redis down")

        runtime.job_started()
        runtime.job_finished(True)

        assert runtime.status().processed_jobs == 1

    def test_run_executes_coroutine(self, runtime):
        async def answer():
            return 42

        assert runtime.run(answer()) == 42


class TestShutdown:
    """Tests for shutdown."""

    def test_releases_everything(self, runtime, mock_redis, mock_pool):
        runtime.emitter = MagicMock()

        with patch("cafe_worker.runtime.dispose_engine") as dispose:
            runtime.shutdown()

        runtime.emitter.stop.assert_called_once()
        mock_pool.close_all.assert_awaited_once()
        mock_redis.pipeline.return_value.zrem.assert_called_once_with(
            "cafe-manager:workers:heartbeat", runtime.worker_id
        )
        dispose.assert_called_once()
        mock_redis.close.assert_called_once()
        assert runtime.loop.is_closed()

    def test_pool_failure_does_not_stop_shutdown(self, runtime, mock_redis, mock_pool):
        mock_pool.close_all.side_effect = RuntimeError("browser gone")
        runtime.emitter = MagicMock()

        with patch("cafe_worker.runtime.dispose_engine"):
            runtime.shutdown()

        mock_redis.close.assert_called_once()


class TestProcessRuntime:
    """Tests for init_runtime / shutdown_runtime."""

    def test_init_is_idempotent_and_shutdown_clears(self, worker_settings):
        import cafe_worker.runtime as runtime_module

        fake = MagicMock()
        with patch.object(runtime_module, "WorkerRuntime", return_value=fake) as runtime_cls:
            first = runtime_module.init_runtime(worker_settings)
            second = runtime_module.init_runtime(worker_settings)

            assert first is second is fake
            runtime_cls.assert_called_once_with(settings=worker_settings)
            fake.start.assert_called_once()

            runtime_module.shutdown_runtime()

        fake.shutdown.assert_called_once()
        assert runtime_module._runtime is None
