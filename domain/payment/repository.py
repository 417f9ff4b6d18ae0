"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List

from .entity import Payment, PaymentStatus


@dataclass
class PaymentFilter:
    """列表查询条件（均为可选，按 created_at 倒序）"""

    client_id: Optional[str] = None
    merchant_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    limit: int = 50
    offset: int = 0


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做

    实现约定：
    - 每次调用是一个独立事务
    - 台账条目与退款记录只追加
    - (merchant_id, order_id) 对未取消支付唯一，冲突时抛出 DuplicatePaymentError
    """

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录（连同创建台账）"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_by_merchant_and_order(self, merchant_id: str, order_id: str) -> Optional[Payment]:
        """根据幂等键获取未取消的支付"""
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """更新支付记录，并追加新的台账与退款记录"""
        pass

    @abstractmethod
    async def list(self, filter: PaymentFilter) -> List[Payment]:
        """按条件分页查询"""
        pass


class RepositoryError(Exception):
    """存储层故障（连接、事务失败），由应用层转换为内部错误"""


class DuplicatePaymentError(RepositoryError):
    """幂等键唯一约束冲突"""

    def __init__(self, merchant_id: str, order_id: str):
        self.merchant_id = merchant_id
        self.order_id = order_id
        super().__init__(f"Payment already exists for merchant={merchant_id} order={order_id}")
