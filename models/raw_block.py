from sqlalchemy import Column, String, BigInteger, Integer, DateTime, Index
from models.base import Base, JSONType, utc_now


class RawBlock(Base):
    """
    Staged chain block as fetched by the extract stage.

    Design Decisions:
    - (chain, number) is unique; re-extracting a block is a no-op
    - extrinsics kept as the raw hex list for reprocessing
    """
    __tablename__ = "raw_blocks"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    chain = Column(String(50), nullable=False, index=True)
    number = Column(BigInteger, nullable=False)
    block_hash = Column(String(66), nullable=False)
    parent_hash = Column(String(66), nullable=True)

    timestamp = Column(DateTime, nullable=True, index=True)  # Block time (Timestamp.Now)
    extrinsic_count = Column(Integer, nullable=False, default=0)
    extrinsics = Column(JSONType, nullable=True)

    ingested_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_raw_block_chain_number", "chain", "number", unique=True),
    )
