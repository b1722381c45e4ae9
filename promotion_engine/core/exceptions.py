"""
业务异常定义

管理端操作直接抛出这些异常；折扣应用流程在协调器内部捕获，
并转换为纯数据的拒绝结果返回给调用方。
"""

from typing import List, Optional


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(self, message: str, code: str = "business_error"):
        super().__init__(message)
        self.message = message
        self.code = code


class CampaignNotFoundError(BusinessException):
    """折扣活动不存在"""

    def __init__(self, message: str = "折扣活动不存在"):
        super().__init__(message, code="not_found")


class CampaignValidationError(BusinessException):
    """折扣活动配置不合法"""

    def __init__(self, errors: List[str]):
        super().__init__("；".join(errors), code="invalid_campaign")
        self.errors = errors


class DuplicateCampaignCodeError(BusinessException):
    """优惠码已存在"""

    def __init__(self, code_value: str):
        super().__init__(f"优惠码 {code_value} 已存在", code="duplicate_code")
        self.code_value = code_value


class UsageLimitExceededError(BusinessException):
    """使用次数已达上限（提交阶段复核失败）"""

    def __init__(self, message: str = "折扣使用次数已达上限", campaign_id: Optional[str] = None):
        super().__init__(message, code="usage_limit_exceeded")
        self.campaign_id = campaign_id


class ConcurrentWriteConflictError(BusinessException):
    """并发写冲突，调用方应重新校验后重试"""

    def __init__(self, campaign_id: str):
        super().__init__(f"折扣活动 {campaign_id} 使用计数并发更新冲突", code="concurrent_write_conflict")
        self.campaign_id = campaign_id
