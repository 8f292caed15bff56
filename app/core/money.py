"""金额工具：所有金额以整数最小货币单位（分）计算"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[int, float, str, Decimal]


def round_half_up(value: Decimal) -> int:
    """四舍五入到整数（不使用银行家舍入）"""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor(major: Number) -> int:
    """主单位金额 -> 最小单位（负数按 0 处理）"""
    if major is None:
        return 0
    try:
        amount = Decimal(str(major))
    except ArithmeticError:
        return 0
    if not amount.is_finite():
        return 0
    return max(0, round_half_up(amount * 100))


def from_minor(minor: int) -> float:
    """最小单位 -> 主单位镜像值（只能由 minor 推导，不能反向）"""
    return float(Decimal(int(minor or 0)) / Decimal(100))


def percent_of(amount_minor: int, percent: Number) -> int:
    """按百分比计算折扣（百分比限制在 0-100）"""
    pct = min(Decimal(100), max(Decimal(0), Decimal(str(percent or 0))))
    return max(0, round_half_up(Decimal(int(amount_minor)) * pct / Decimal(100)))


def compute_tax(total_minor: int, rate: Number, inclusive: bool) -> dict:
    """税费拆分

    含税模式：total 已含税，反推税前金额 before = round(total / (1 + rate))；
    不含税模式：tax = round(total * rate)，税后金额为 total + tax。
    两种模式都满足 total_before_tax + tax == total_after_tax。
    """
    total_minor = max(0, int(total_minor))
    rate_dec = Decimal(str(rate or 0))
    if rate_dec <= 0:
        return {
            "rate": float(rate_dec),
            "included_in_prices": bool(inclusive),
            "tax_minor": 0,
            "total_before_tax_minor": total_minor,
            "total_after_tax_minor": total_minor,
        }

    if inclusive:
        after = total_minor
        before = max(0, round_half_up(Decimal(total_minor) / (Decimal(1) + rate_dec)))
        tax = max(0, after - before)
    else:
        before = total_minor
        tax = max(0, round_half_up(Decimal(total_minor) * rate_dec))
        after = before + tax

    return {
        "rate": float(rate_dec),
        "included_in_prices": bool(inclusive),
        "tax_minor": tax,
        "total_before_tax_minor": before,
        "total_after_tax_minor": after,
    }


def with_major(data: dict) -> dict:
    """为所有 *_minor 字段补充主单位镜像（*_major）"""
    result = {}
    for key, value in data.items():
        result[key] = value
        if key.endswith("_minor") and isinstance(value, int):
            result[key[: -len("_minor")] + "_major"] = from_minor(value)
    return result
