"""结账 / 订单 / 库存路由测试（TestClient + 依赖覆盖）"""
import pytest
from unittest.mock import AsyncMock, Mock, patch
from fastapi.testclient import TestClient

from app.core.dependencies import get_db, get_payment_gateway, get_redis, get_transaction_probe
from app.main import app


@pytest.fixture
def client(db_session, transactional_probe, gateway, mock_redis):
    """创建测试客户端（不触发 lifespan，依赖全部指向测试库）"""
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_transaction_probe] = lambda: transactional_probe
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_redis] = lambda: mock_redis
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def cart_body(catalog, make_cart):
    product = catalog.product(price_minor=15000, stock=5)
    area = catalog.delivery_area(fee_minor=0)
    catalog.coupon(code="SAVE10", value=10, min_order_total_minor=20000)
    return make_cart((product, 2), area=area, coupon_code="SAVE10").model_dump(mode="json")


def checkout(client, path, body, user="u-1", key="key-1"):
    headers = {}
    if user:
        headers["X-User-Id"] = user
    if key:
        headers["Idempotency-Key"] = key
    return client.post(f"/api/v1/checkout/{path}", json=body, headers=headers)


class TestQuoteRouter:
    """报价路由测试类"""

    def test_quote_success(self, client, cart_body):
        response = client.post("/api/v1/checkout/quote", json=cart_body)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["subtotal_minor"] == 30000
        assert data["discounts"]["coupon"]["amount_minor"] == 3000
        assert data["grand_total_minor"] == 27000
        assert data["grand_total_major"] == 270.0
        assert data["tax"]["tax_minor"] == 4119

    def test_quote_empty_cart(self, client, cart_body):
        cart_body["items"] = []

        response = client.post("/api/v1/checkout/quote", json=cart_body)

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["code"] == "EMPTY_CART"

    def test_quote_validation_error(self, client, cart_body):
        cart_body["items"][0]["quantity"] = 0

        response = client.post("/api/v1/checkout/quote", json=cart_body)

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_quote_unknown_error(self, client, cart_body):
        """测试未知异常统一返回 500"""
        with patch("app.services.checkout_service.CheckoutService.quote", side_effect=ValueError("数据库连接失败")):
            response = client.post("/api/v1/checkout/quote", json=cart_body)

        assert response.status_code == 500
        assert "数据库连接失败" in response.json()["message"]


class TestCheckoutRouter:
    """下单路由测试类"""

    def test_requires_user(self, client, cart_body):
        response = checkout(client, "deferred", cart_body, user=None)

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHENTICATED"

    def test_requires_idempotency_key(self, client, cart_body):
        response = checkout(client, "cod", cart_body, key=None)

        assert response.status_code == 400
        assert response.json()["code"] == "IDEMPOTENCY_KEY_REQUIRED"

    def test_deferred_and_retry(self, client, cart_body):
        """测试在线支付下单与幂等重试"""
        first = checkout(client, "deferred", cart_body)
        second = checkout(client, "deferred", cart_body)

        assert first.status_code == 200
        body = first.json()
        assert body["message"] == "下单成功"
        assert body["data"]["order"]["status"] == "pending_payment"
        assert body["data"]["order"]["grand_total_minor"] == 27000
        assert body["data"]["payment_session"]["handle"].startswith("fake_cs_")

        assert second.status_code == 200
        assert second.json()["message"] == "订单已存在"
        assert second.json()["data"]["already"] is True
        assert second.json()["data"]["order"]["id"] == body["data"]["order"]["id"]

    def test_cod(self, client, cart_body):
        response = checkout(client, "cod", cart_body)

        assert response.status_code == 200
        order = response.json()["data"]["order"]
        assert order["status"] == "confirmed"
        assert order["stock_status"] == "confirmed"
        assert order["payment_method"] == "cod"
        assert response.json()["data"]["payment_session"] is None

    def test_out_of_stock(self, client, cart_body):
        cart_body["items"][0]["quantity"] = 9

        response = checkout(client, "cod", cart_body)

        assert response.status_code == 409
        data = response.json()
        assert data["code"] == "OUT_OF_STOCK_PARTIAL"
        assert data["details"]["items"][0]["available"] == 5

    def test_gateway_failure(self, client, cart_body, gateway):
        gateway.configure(should_succeed=False)

        response = checkout(client, "deferred", cart_body)

        assert response.status_code == 502
        assert response.json()["code"] == "PAYMENT_SESSION_FAILED"


class TestPaymentEventRouter:
    """支付回调路由测试类"""

    def test_payment_flow(self, client, cart_body, gateway):
        placed = checkout(client, "deferred", cart_body).json()["data"]
        gateway.mark(placed["payment_session"]["handle"], "paid")
        event = {"event_id": "evt-1", "type": "payment.succeeded", "session_id": placed["payment_session"]["handle"]}

        first = client.post("/api/v1/checkout/payment-events", json=event)
        second = client.post("/api/v1/checkout/payment-events", json=event)

        assert first.status_code == 200
        assert first.json()["data"]["status"] == "confirmed"
        assert second.json()["data"]["already"] is True
        assert second.json()["message"] == "事件已处理"

        order = client.get(f"/api/v1/orders/{placed['order']['id']}").json()["data"]
        assert order["status"] == "confirmed"
        assert order["payment_status"] == "captured"

    def test_unknown_event_type(self, client):
        response = client.post(
            "/api/v1/checkout/payment-events",
            json={"event_id": "evt-1", "type": "payment.refunded", "order_id": "x"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PAYMENT_EVENT"


class TestOrdersRouter:
    """订单路由测试类"""

    def test_order_not_found(self, client):
        response = client.get("/api/v1/orders/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "ORDER_NOT_FOUND"

    def test_cancel_and_illegal_transition(self, client, cart_body):
        order_id = checkout(client, "deferred", cart_body).json()["data"]["order"]["id"]
        headers = {"X-User-Id": "admin"}

        cancelled = client.post(
            f"/api/v1/orders/{order_id}/status",
            json={"status": "cancelled", "note": "客户取消"},
            headers=headers,
        )
        illegal = client.post(f"/api/v1/orders/{order_id}/status", json={"status": "shipped"}, headers=headers)

        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"
        assert cancelled.json()["data"]["stock_status"] == "released"
        assert cancelled.json()["data"]["cancel_reason"] == "客户取消"
        assert illegal.status_code == 409
        assert illegal.json()["code"] == "INVALID_STATUS_TRANSITION"

    def test_refund_requires_amount(self, client, cart_body):
        order_id = checkout(client, "cod", cart_body).json()["data"]["order"]["id"]

        response = client.post(
            f"/api/v1/orders/{order_id}/status",
            json={"status": "refunded"},
            headers={"X-User-Id": "admin"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REFUND_AMOUNT"

    def test_full_refund_with_restock(self, client, cart_body):
        order_id = checkout(client, "cod", cart_body).json()["data"]["order"]["id"]

        response = client.post(
            f"/api/v1/orders/{order_id}/status",
            json={"status": "refunded", "refund_amount_minor": 27000, "restock": True},
            headers={"X-User-Id": "admin"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "refunded"
        assert response.json()["data"]["payment_status"] == "refunded"
        product_id = cart_body["items"][0]["product_id"]
        stock = client.get(f"/api/v1/inventory/stock/{product_id}").json()
        assert stock["available_stock"] == 5

    def test_tracking(self, client, cart_body):
        order_id = checkout(client, "cod", cart_body).json()["data"]["order"]["id"]

        response = client.post(
            f"/api/v1/orders/{order_id}/tracking",
            json={"tracking_number": "TRK-1", "carrier": "DHL"},
            headers={"X-User-Id": "admin"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["tracking_number"] == "TRK-1"


class TestInventoryRouter:
    """库存查询与回收路由测试类"""

    def test_get_stock(self, client, catalog, mock_redis):
        product = catalog.product(stock=7)

        response = client.get(f"/api/v1/inventory/stock/{product.id}")

        assert response.status_code == 200
        assert response.json() == {"success": True, "product_id": product.id, "available_stock": 7}
        mock_redis.setex.assert_called_once()

    def test_batch_stock(self, client, catalog):
        first = catalog.product(stock=1)
        second = catalog.product(stock=2)

        response = client.post("/api/v1/inventory/stock/batch", json={"product_ids": [first.id, second.id]})

        assert response.status_code == 200
        assert response.json()["data"] == {str(first.id): 1, str(second.id): 2}

    def test_manual_sweep(self, client):
        response = client.post("/api/v1/inventory/sweep/manual", json={"repair": True})

        assert response.status_code == 200
        assert response.json()["data"] == {
            "expired_reservations": 0,
            "expired_coupon_reservations": 0,
            "orphaned_reservations": 0,
            "stale_confirmed": 0,
        }

    def test_celery_sweep(self, client):
        task = Mock()
        task.id = "task-1"
        with patch("app.routers.inventory_router.celery_sweep_task") as mock_task:
            mock_task.delay.return_value = task

            response = client.post("/api/v1/inventory/sweep/celery")

        assert response.status_code == 200
        assert response.json()["task_id"] == "task-1"
        mock_task.delay.assert_called_once_with(100, True, False)

    def test_sweep_status(self, client):
        result = Mock()
        result.state = "SUCCESS"
        result.result = {"expired_reservations": 2}
        with patch("celery_app.app.AsyncResult", return_value=result):
            response = client.get("/api/v1/inventory/sweep/status/task-1")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "SUCCESS"
        assert data["task_id"] == "task-1"
        assert "任务完成" in data["status"]


class TestHealth:
    """健康检查与启动流程测试类"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "checkout-engine"
        assert isinstance(data["transactional"], bool)

    def test_lifespan_startup(self):
        """测试启动时完成事务探测并建表，Redis 关闭时释放连接"""
        with patch("app.main.async_redis") as mock_async_redis:
            mock_async_redis.ping = AsyncMock(return_value=True)
            mock_async_redis.aclose = AsyncMock()

            with TestClient(app) as client:
                assert client.get("/health").json()["transactional"] is True

        mock_async_redis.aclose.assert_awaited_once()
