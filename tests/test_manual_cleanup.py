"""本地回收脚本单元测试"""
import pytest
from unittest.mock import Mock, patch

from app.jobs import manual_cleanup


@pytest.fixture
def cleanup_env():
    db_mock = Mock()
    with patch('app.jobs.manual_cleanup.SessionLocal') as mock_session_local, \
         patch('app.jobs.manual_cleanup.sweeps') as mock_sweeps, \
         patch('app.jobs.manual_cleanup.redis_client') as mock_redis:
        mock_session_local.return_value = db_mock
        yield db_mock, mock_sweeps, mock_redis


class TestManualCleanup:
    """本地回收脚本测试类"""

    def test_run_cleanup(self, cleanup_env):
        db_mock, mock_sweeps, mock_redis = cleanup_env
        mock_sweeps.run_sweep.return_value = {"expired_reservations": 2}

        result = manual_cleanup.run_cleanup(batch_size=50, repair=True)

        assert result == {"expired_reservations": 2}
        mock_sweeps.run_sweep.assert_called_once_with(
            db_mock, mock_redis, batch_size=50, include_coupons=True, repair=True
        )
        db_mock.close.assert_called_once()

    def test_dry_run_only_counts(self, cleanup_env):
        """测试试运行只统计不回收"""
        db_mock, mock_sweeps, _ = cleanup_env
        mock_sweeps.count_pending.return_value = {"expired_reservations": 3, "expired_coupon_reservations": 1}

        result = manual_cleanup.run_cleanup(dry_run=True)

        assert result["expired_reservations"] == 3
        mock_sweeps.run_sweep.assert_not_called()

    def test_no_cache(self, cleanup_env):
        db_mock, mock_sweeps, _ = cleanup_env

        manual_cleanup.run_cleanup(use_cache=False)

        assert mock_sweeps.run_sweep.call_args[0] == (db_mock, None)

    def test_failure_rolls_back(self, cleanup_env):
        db_mock, mock_sweeps, _ = cleanup_env
        mock_sweeps.run_sweep.side_effect = Exception("数据库错误")

        with pytest.raises(Exception):
            manual_cleanup.run_cleanup()

        db_mock.rollback.assert_called_once()
        db_mock.close.assert_called_once()

    def test_main_exit_codes(self, cleanup_env, capsys):
        _, mock_sweeps, _ = cleanup_env
        mock_sweeps.run_sweep.return_value = {"expired_reservations": 0}

        assert manual_cleanup.main(["--batch-size", "10", "--no-cache"]) == 0
        assert "回收完成" in capsys.readouterr().out

        mock_sweeps.run_sweep.side_effect = Exception("数据库错误")
        assert manual_cleanup.main([]) == 1
        assert "执行失败" in capsys.readouterr().out
