import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # 数据库配置
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "123456")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "checkout")
    # 完整连接串（优先级高于 POSTGRES_*，本地可用 sqlite）
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # Redis 配置
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    CURRENCY: str = os.getenv("CURRENCY", "ils")

    # 税费配置（全局定价模式：含税价 / 不含税价）
    VAT_ENABLED: bool = os.getenv("VAT_ENABLED", "true").lower() != "false"
    VAT_RATE: float = float(os.getenv("VAT_RATE", "0.18"))
    PRICES_INCLUDE_VAT: bool = os.getenv("PRICES_INCLUDE_VAT", "true").lower() != "false"

    # 预占有效期（分钟）
    STOCK_RESERVATION_TTL_MINUTES: int = int(os.getenv("STOCK_RESERVATION_TTL_MINUTES", "15"))
    COUPON_RESERVATION_TTL_MINUTES: int = int(os.getenv("COUPON_RESERVATION_TTL_MINUTES", "15"))

    # 事务策略：auto = 启动探测；disabled = 强制补偿模式
    TRANSACTION_MODE: str = os.getenv("TRANSACTION_MODE", "auto")
    REQUIRE_TRANSACTIONS: bool = os.getenv("REQUIRE_TRANSACTIONS", "false").lower() == "true"

    # 清理 / 修复任务
    ORPHAN_GRACE_MINUTES: int = int(os.getenv("ORPHAN_GRACE_MINUTES", "5"))
    SWEEP_BATCH_SIZE: int = int(os.getenv("SWEEP_BATCH_SIZE", "100"))
    JOB_LOCK_TTL_MS: int = int(os.getenv("JOB_LOCK_TTL_MS", "60000"))

    PAYMENT_GATEWAY: str = os.getenv("PAYMENT_GATEWAY", "fake")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://"
            f"{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def vat_rate(self) -> float:
        """生效税率（关闭时为 0，并限制在 [0, 1]）"""
        if not self.VAT_ENABLED:
            return 0.0
        return min(1.0, max(0.0, self.VAT_RATE))

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

settings = Settings()
