"""
系统设置数据库模型
"""

from sqlalchemy import Column, String, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from promotion_engine.core.database import Base


class SystemSettingDB(Base):
    """系统设置表"""

    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True, comment="设置键")
    value = Column(JSON, nullable=False, comment="设置值信封")
    is_active = Column(Boolean, default=True, index=True, comment="是否启用")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), comment="更新时间")

    __table_args__ = (
        {'comment': '系统设置表'}
    )
