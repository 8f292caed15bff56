from .base import Base
from .session import engine, SessionLocal


def init_db():
    """按模型元数据建表（开发环境 / sqlite 本地运行）"""
    import app.models  # noqa: F401  注册所有模型

    Base.metadata.create_all(bind=engine)


# Export for convenience
__all__ = ["Base", "engine", "SessionLocal", "init_db"]
