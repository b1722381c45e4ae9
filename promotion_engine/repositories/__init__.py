"""
仓库包初始化文件 - 数据库访问层
"""

from .campaign_repository import CampaignRepository
from .usage_ledger import UsageLedger
from .settings_repository import SettingsRepository

__all__ = [
    "CampaignRepository",
    "UsageLedger",
    "SettingsRepository"
]
