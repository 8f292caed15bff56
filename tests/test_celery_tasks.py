"""Celery 任务单元测试"""
import pytest
from unittest.mock import Mock, patch

from tasks.checkout_tasks import (
    SKIPPED,
    cleanup_stale_confirmed,
    repair_orphaned_reservations,
    run_sweep,
    sweep_expired_coupon_reservations,
    sweep_expired_reservations,
)


@pytest.fixture
def task_env(mock_redlock):
    """替换任务模块里的会话工厂、回收函数、Redis 与锁"""
    db_mock = Mock()
    with patch('tasks.checkout_tasks.SessionLocal') as mock_session_local, \
         patch('tasks.checkout_tasks.sweeps') as mock_sweeps, \
         patch('tasks.checkout_tasks.redis_client') as mock_redis, \
         patch('tasks.checkout_tasks.redlock', mock_redlock):
        mock_session_local.return_value = db_mock
        yield {
            "db": db_mock,
            "sweeps": mock_sweeps,
            "redis": mock_redis,
            "redlock": mock_redlock,
        }


class TestSweepTasks:
    """回收 / 修复任务测试类"""

    def test_sweep_expired_reservations_success(self, task_env):
        task_env["sweeps"].sweep_inventory.return_value = 5

        result = sweep_expired_reservations(batch_size=100)

        assert result == "成功回收 5 条过期库存预占"
        task_env["sweeps"].sweep_inventory.assert_called_once_with(task_env["db"], task_env["redis"], 100)
        task_env["db"].close.assert_called_once()
        task_env["redlock"].unlock.assert_called_once()

    def test_sweep_expired_coupon_reservations_success(self, task_env):
        task_env["sweeps"].sweep_coupons.return_value = 2

        result = sweep_expired_coupon_reservations(batch_size=50)

        assert result == "成功回收 2 条过期优惠券预占"
        task_env["sweeps"].sweep_coupons.assert_called_once_with(task_env["db"], 50)

    def test_repair_orphaned_reservations_success(self, task_env):
        task_env["sweeps"].repair_orphans.return_value = 1

        result = repair_orphaned_reservations()

        assert result == "修复 1 条孤儿预占"

    def test_cleanup_stale_confirmed_success(self, task_env):
        task_env["sweeps"].cleanup_confirmed.return_value = 3

        result = cleanup_stale_confirmed()

        assert result == "清理 3 条失效的确认预占"

    def test_run_sweep_returns_counts(self, task_env):
        counts = {
            "expired_reservations": 1,
            "expired_coupon_reservations": 0,
            "orphaned_reservations": 0,
            "stale_confirmed": 0,
        }
        task_env["sweeps"].run_sweep.return_value = counts

        result = run_sweep(20, False, True)

        assert result == counts
        task_env["sweeps"].run_sweep.assert_called_once_with(task_env["db"], task_env["redis"], 20, False, True)

    def test_sweep_exception_rolls_back(self, task_env):
        """测试任务异常时回滚并继续抛出，锁仍然释放"""
        task_env["sweeps"].sweep_inventory.side_effect = Exception("数据库错误")

        with pytest.raises(Exception) as exc_info:
            sweep_expired_reservations(batch_size=100)

        assert "数据库错误" in str(exc_info.value)
        task_env["db"].rollback.assert_called_once()
        task_env["db"].close.assert_called_once()
        task_env["redlock"].unlock.assert_called_once()

    @pytest.mark.parametrize("task", [
        sweep_expired_reservations,
        sweep_expired_coupon_reservations,
        repair_orphaned_reservations,
        cleanup_stale_confirmed,
        run_sweep,
    ])
    def test_skipped_when_lock_held(self, task_env, task):
        """测试拿不到锁时跳过本轮，不打开会话"""
        task_env["redlock"].lock.return_value = False

        assert task() == SKIPPED

        task_env["db"].close.assert_not_called()
        task_env["redlock"].unlock.assert_not_called()

    def test_lock_key_per_task(self, task_env):
        task_env["sweeps"].sweep_coupons.return_value = 0

        sweep_expired_coupon_reservations()

        key = task_env["redlock"].lock.call_args[0][0]
        assert key == "lock:job:sweep_expired_coupon_reservations"
