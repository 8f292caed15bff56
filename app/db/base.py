from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# sqlite 只对 INTEGER PRIMARY KEY 自增
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

# PostgreSQL 使用 JSONB，其它数据库退化为通用 JSON
JSONType = JSON().with_variant(JSONB, "postgresql")
