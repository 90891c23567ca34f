from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import DeclarativeBase


# BIGINT en Postgres ; SQLite n'auto-incrémente que INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass
