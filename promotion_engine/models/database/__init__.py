"""
数据库模型包初始化文件
"""

from .campaign_db import CampaignDB
from .usage_db import UsageRecordDB
from .settings_db import SystemSettingDB

__all__ = [
    "CampaignDB",
    "UsageRecordDB",
    "SystemSettingDB"
]
