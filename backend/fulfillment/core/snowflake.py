"""
ID 与业务编号生成模块

- generate_id: Snowflake 64 位主键（41 位时间戳 | 10 位节点 | 12 位序列）
- 业务编号：订单号、追踪码、支付流水号、退款编号

业务编号格式：
- 订单号：ORD-<毫秒时间戳>-<4 位序号>
- 追踪码：TRK-<毫秒时间戳>-<6 位大写字母数字>
- 支付流水号：PAY-<毫秒时间戳>-<8 位大写字母数字>
- 退款编号：REF-<毫秒时间戳>-<6 位大写字母数字>

编号的唯一性最终由数据库唯一索引保证。
"""
from __future__ import annotations

import secrets
import string
import threading
import time

from fulfillment.core.config import settings

# 自定义起始时间（2024-01-01T00:00:00Z）的毫秒时间戳
_EPOCH_MS = 1704067200000

_ALPHABET = string.ascii_uppercase + string.digits


class Snowflake:
    """
    64 位 Snowflake ID 生成器

    每个节点每毫秒最多生成 4096 个 ID，线程安全。
    """

    def __init__(self, *, node_id: int) -> None:
        if not (0 <= node_id <= 1023):
            raise ValueError("SNOWFLAKE_NODE_ID must be in [0, 1023]")
        self._node_id = node_id
        self._lock = threading.Lock()
        self._last_ts = -1
        self._seq = 0

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    def next_id(self) -> int:
        """
        生成下一个唯一 ID

        Raises:
            RuntimeError: 当时钟回拨超过 5 秒时
        """
        with self._lock:
            ts = self._now_ms()
            if ts < self._last_ts:
                diff = self._last_ts - ts
                if diff > 5000:
                    raise RuntimeError(
                        f"Clock moved backwards by {diff}ms. "
                        "Refusing to generate IDs to prevent duplicates."
                    )
                # 小幅回拨：等待时钟追上
                ts = self._wait_until(self._last_ts)

            if ts == self._last_ts:
                self._seq = (self._seq + 1) & 0xFFF
                if self._seq == 0:
                    # 当前毫秒序列号用尽
                    ts = self._wait_until(self._last_ts + 1)
            else:
                self._seq = 0

            self._last_ts = ts
            return ((ts - _EPOCH_MS) << 22) | (self._node_id << 12) | self._seq

    @classmethod
    def _wait_until(cls, target_ms: int) -> int:
        ts = cls._now_ms()
        while ts < target_ms:
            time.sleep(0.001)
            ts = cls._now_ms()
        return ts


_GENERATOR: Snowflake | None = None
_order_seq_lock = threading.Lock()
_order_seq = 0


def _get_generator() -> Snowflake:
    global _GENERATOR
    if _GENERATOR is None:
        _GENERATOR = Snowflake(node_id=settings.SNOWFLAKE_NODE_ID)
    return _GENERATOR


def generate_id() -> int:
    """生成 Snowflake 主键"""
    return _get_generator().next_id()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _random_code(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_order_number() -> str:
    """
    生成订单号

    序号在进程内循环递增（0001-9999），与毫秒时间戳组合。

    Returns:
        形如 ORD-1718000000000-0042 的订单号
    """
    global _order_seq
    with _order_seq_lock:
        _order_seq = _order_seq % 9999 + 1
        seq = _order_seq
    return f"ORD-{_now_ms()}-{seq:04d}"


def generate_tracking_code() -> str:
    """生成公开追踪码，形如 TRK-1718000000000-AB12CD"""
    return f"TRK-{_now_ms()}-{_random_code(6)}"


def generate_payment_reference() -> str:
    """生成支付流水号，形如 PAY-1718000000000-AB12CD34"""
    return f"PAY-{_now_ms()}-{_random_code(8)}"


def generate_refund_id() -> str:
    """生成退款编号，形如 REF-1718000000000-AB12CD"""
    return f"REF-{_now_ms()}-{_random_code(6)}"
