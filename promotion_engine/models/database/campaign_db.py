"""
折扣活动数据库模型
"""

from sqlalchemy import Column, String, Integer, Numeric, Text, Boolean, DateTime, JSON, Index
from sqlalchemy.sql import func
from promotion_engine.core.database import Base


class CampaignDB(Base):
    """折扣活动数据库表"""

    __tablename__ = "discount_campaigns"

    # 主键和基本信息
    id = Column(String(50), primary_key=True, comment="活动ID")
    name = Column(String(200), nullable=False, comment="活动名称")
    description = Column(Text, comment="活动描述")
    code = Column(String(50), unique=True, index=True, comment="优惠码(大写)")
    discount_type = Column(String(20), nullable=False, comment="折扣类型")
    target_type = Column(String(20), nullable=False, index=True, comment="适用对象类型")

    # 折扣信息
    value = Column(Numeric(10, 2), nullable=False, comment="折扣值")
    minimum_order_amount = Column(Numeric(10, 2), comment="最低订单金额")
    maximum_discount_amount = Column(Numeric(10, 2), comment="最大折扣金额")

    # 使用限制
    usage_limit = Column(Integer, comment="总使用次数限制")
    usage_limit_per_user = Column(Integer, comment="单用户使用次数限制")
    usage_count = Column(Integer, nullable=False, default=0, comment="已使用次数")

    # 有效期和状态
    start_date = Column(DateTime, nullable=False, comment="开始时间")
    end_date = Column(DateTime, nullable=False, comment="结束时间")
    status = Column(String(20), nullable=False, default="draft", comment="活动状态")

    # 控制标志
    is_automatic_apply = Column(Boolean, default=False, comment="自动应用")
    is_stackable = Column(Boolean, default=False, comment="可叠加")
    priority = Column(Integer, default=0, comment="优先级")

    # 条件与适用范围
    conditions = Column(JSON, comment="附加条件")
    buy_x_get_y_config = Column(JSON, comment="买X送Y配置")
    target_product_ids = Column(JSON, comment="适用商品ID列表")
    target_market_ids = Column(JSON, comment="适用市场ID列表")
    target_user_ids = Column(JSON, comment="适用用户ID列表")
    target_categories = Column(JSON, comment="适用品类列表")

    # 创建人和时间戳
    created_by = Column(String(50), comment="创建人")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), comment="更新时间")

    # 索引
    __table_args__ = (
        Index("idx_discount_campaigns_status_dates", "status", "start_date", "end_date"),
        {'comment': '折扣活动表'}
    )
