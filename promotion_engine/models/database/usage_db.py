"""
折扣使用记录数据库模型
"""

from sqlalchemy import Column, String, Numeric, DateTime, JSON, ForeignKey, UniqueConstraint, Index
from promotion_engine.core.database import Base


class UsageRecordDB(Base):
    """折扣使用记录表，只追加不修改"""

    __tablename__ = "discount_usages"

    # 主键和关联信息
    id = Column(String(50), primary_key=True, comment="使用记录ID")
    campaign_id = Column(String(50), ForeignKey("discount_campaigns.id"), nullable=False, index=True, comment="活动ID")
    user_id = Column(String(50), nullable=False, index=True, comment="用户ID")
    order_id = Column(String(50), comment="关联订单ID")
    shopping_list_id = Column(String(50), comment="关联购物清单ID")

    # 金额信息
    discount_amount = Column(Numeric(10, 2), nullable=False, comment="实际折扣金额")
    order_total = Column(Numeric(10, 2), nullable=False, comment="使用时订单金额")

    # 幂等键和附加信息
    idempotency_key = Column(String(100), comment="调用方幂等键")
    usage_metadata = Column("metadata", JSON, comment="附加信息")

    # 使用时间
    used_at = Column(DateTime, nullable=False, index=True, comment="使用时间")

    # 索引
    __table_args__ = (
        UniqueConstraint("idempotency_key", "campaign_id", "user_id", name="uq_discount_usages_idempotency"),
        Index("idx_discount_usages_campaign_user", "campaign_id", "user_id"),
        {'comment': '折扣使用记录表'}
    )
