"""
退货单号、退款单号生成

格式：{前缀}-{yyyyMMdd}-{8位十六进制}
- 投诉（Complaint）使用 CMP
- 其他（Return）使用 RTN
- 退款单使用 RFD
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime

RETURN_PREFIX = "RTN"
COMPLAINT_PREFIX = "CMP"

RETURN_NUMBER_RE = re.compile(r"^(RTN|CMP)-\d{8}-[0-9A-F]{8}$")


def generate_return_number(request_type: str, now: datetime) -> str:
    prefix = COMPLAINT_PREFIX if request_type == "Complaint" else RETURN_PREFIX
    suffix = uuid.uuid4().hex[:8].upper()
    return f"{prefix}-{now:%Y%m%d}-{suffix}"


def is_valid_return_number(value: str | None) -> bool:
    if not value:
        return False
    return bool(RETURN_NUMBER_RE.match(value))


def generate_refund_number(now: datetime) -> str:
    return f"RFD-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"
