"""事务能力探测与多步骤执行单元

存储支持多步骤原子事务时，结账的预占、建单、支付会话步骤在一个事务内提交；
不支持（或被配置强制关闭）时逐步提交，并在失败时按相反顺序执行补偿动作。
"""

import logging
from contextlib import contextmanager
from typing import Callable, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import CheckoutError

logger = logging.getLogger(__name__)


def transactions_required_error() -> CheckoutError:
    return CheckoutError(
        "TRANSACTIONS_REQUIRED",
        "当前部署要求数据库事务，但存储不支持多步骤事务",
        status_code=503,
    )


class TransactionCapabilityProbe:
    """探测存储是否支持多步骤事务（结果缓存）"""

    def __init__(self, engine: Engine, mode: Optional[str] = None, required: Optional[bool] = None):
        self.engine = engine
        self.mode = (mode or settings.TRANSACTION_MODE).lower()
        self.required = settings.REQUIRE_TRANSACTIONS if required is None else required
        self._supported: Optional[bool] = None

    def _probe(self) -> bool:
        if self.mode == "disabled":
            logger.info("事务模式被配置关闭，使用补偿模式")
            return False
        try:
            with self.engine.connect() as connection:
                trans = connection.begin()
                try:
                    nested = connection.begin_nested()
                    connection.execute(text("SELECT 1"))
                    nested.rollback()
                finally:
                    trans.rollback()
            return True
        except SQLAlchemyError as e:
            logger.warning(f"事务能力探测失败，降级为补偿模式: {e}")
            return False

    @property
    def supported(self) -> bool:
        if self._supported is None:
            self._supported = self._probe()
            logger.info(f"事务能力探测结果: supported={self._supported}")
        return self._supported

    def ensure(self) -> bool:
        """返回是否支持事务；要求事务但不支持时直接失败"""
        if self.required and not self.supported:
            raise transactions_required_error()
        return self.supported

    def reset(self):
        self._supported = None


class CheckoutUnit:
    """结账执行单元

    事务模式：所有步骤共享一个数据库事务，失败时整体回滚。
    补偿模式：每步成功后立即提交并登记补偿动作，失败时先回滚当前步骤，
    再按相反顺序执行补偿；补偿失败只记录日志，不掩盖原始错误。
    """

    def __init__(self, db: Session, transactional: bool):
        self.db = db
        self.transactional = transactional
        self._compensations: List[Tuple[str, Callable[[], object]]] = []

    def step(self, name: str, action: Callable[[], object], compensate: Optional[Callable[[], object]] = None):
        result = action()
        self.db.flush()
        if not self.transactional:
            self.db.commit()
            if compensate is not None:
                self._compensations.append((name, compensate))
        logger.debug(f"结账步骤完成: {name}")
        return result

    def commit(self):
        self.db.commit()
        self._compensations.clear()

    def rollback(self):
        self.db.rollback()
        if self.transactional:
            return
        while self._compensations:
            name, compensate = self._compensations.pop()
            try:
                compensate()
                self.db.commit()
                logger.info(f"补偿动作完成: {name}")
            except Exception as e:
                self.db.rollback()
                logger.error(f"补偿动作失败: {name}, error={e}", exc_info=True)


@contextmanager
def savepoint(db: Session):
    """唯一约束插入使用保存点，冲突时不破坏外层事务"""
    with db.begin_nested():
        yield
