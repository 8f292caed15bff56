"""依赖注入单元测试"""
import pytest
from unittest.mock import Mock, patch
from sqlalchemy.orm import Session

from app.core.dependencies import (
    get_checkout_service,
    get_current_user,
    get_db,
    get_inventory_ledger,
    get_payment_event_service,
    get_payment_gateway,
    get_redis,
    get_redlock,
    get_transaction_probe,
    transaction_probe,
)
from app.core.exceptions import CheckoutError
from app.services.checkout_service import CheckoutService
from app.services.inventory_ledger import InventoryLedger
from app.services.payment_events import PaymentEventService
from app.services.payment_gateway import FakePaymentGateway, reset_gateway, set_gateway


class TestDependencies:
    """依赖注入测试类"""

    def test_get_db(self):
        """测试数据库会话依赖"""
        with patch('app.core.dependencies.SessionLocal') as mock_session_local:
            db_mock = Mock(spec=Session)
            mock_session_local.return_value = db_mock

            # 获取生成器
            gen = get_db()
            db = next(gen)

            assert db == db_mock
            mock_session_local.assert_called_once()

            # 测试清理
            gen.close()
            db_mock.close.assert_called_once()

    def test_get_redis(self):
        with patch('app.core.dependencies.redis_client') as mock_redis_client:
            assert get_redis() is mock_redis_client

    def test_get_redlock(self):
        with patch('app.core.dependencies.redlock') as mock_redlock:
            assert get_redlock() is mock_redlock

    def test_get_transaction_probe(self):
        assert get_transaction_probe() is transaction_probe

    def test_get_payment_gateway_is_shared(self):
        """测试网关实例在进程内共享，可被替换"""
        reset_gateway()
        try:
            first = get_payment_gateway()
            assert isinstance(first, FakePaymentGateway)
            assert get_payment_gateway() is first

            replacement = FakePaymentGateway()
            set_gateway(replacement)
            assert get_payment_gateway() is replacement
        finally:
            reset_gateway()


class TestCurrentUser:
    """用户身份依赖测试类"""

    def test_user_id_stripped(self):
        assert get_current_user("  u-1 ") == "u-1"

    @pytest.mark.parametrize("header", [None, "", "   "])
    def test_missing_user(self, header):
        with pytest.raises(CheckoutError) as exc_info:
            get_current_user(header)
        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "UNAUTHENTICATED"


class TestServiceFactories:
    """服务工厂依赖测试类"""

    def test_checkout_service(self, db_session, mock_redis, gateway, transactional_probe):
        service = get_checkout_service(db_session, mock_redis, gateway, transactional_probe)

        assert isinstance(service, CheckoutService)
        assert service.gateway is gateway
        assert service.probe is transactional_probe
        assert service.inventory.redis is mock_redis

    def test_payment_event_service(self, db_session, mock_redis, gateway):
        service = get_payment_event_service(db_session, mock_redis, gateway)

        assert isinstance(service, PaymentEventService)

    def test_inventory_ledger(self, db_session, mock_redis):
        ledger = get_inventory_ledger(db_session, mock_redis)

        assert isinstance(ledger, InventoryLedger)
        assert ledger.db is db_session
        assert ledger.redis is mock_redis
