from sqlalchemy import Column, String, BigInteger, Integer, Date, DateTime, Index
from models.base import Base, utc_now


class FactChainDailyActivity(Base):
    """
    Daily chain activity fact, built by the transform stage.

    Field Mapping Strategy (raw_blocks -> fact):
    - date(timestamp) -> day
    - count(*) -> block_count
    - sum(extrinsic_count) -> extrinsic_count
    - min/max(number) -> first_block / last_block

    Rows are folded additively; the transform cursor guarantees each staged
    block is counted once.
    """
    __tablename__ = "fact_chain_daily_activity"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    chain = Column(String(50), nullable=False)
    day = Column(Date, nullable=False)

    block_count = Column(Integer, nullable=False, default=0)
    extrinsic_count = Column(BigInteger, nullable=False, default=0)
    first_block = Column(BigInteger, nullable=True)
    last_block = Column(BigInteger, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_activity_chain_day", "chain", "day", unique=True),
    )
