"""Guessing a proxy node's region from its name."""

from __future__ import annotations


def infer_region(name: str) -> str:
    """Region label for a node name, or the unknown-region label."""
    value = name.strip().lower()
    if "上海" in name or "沪" in name:
        return "上海"
    if "杭州" in name or "杭" in name:
        return "杭州"
    if "香港" in name or "hk" in value:
        return "香港"
    if "日本" in name or "东京" in name or "jp" in value or "tokyo" in value:
        return "日本/东京"
    if "台湾" in name or "tw" in value:
        return "台湾"
    if "新加坡" in name or "sg" in value or "singapore" in value:
        return "新加坡"
    return "未知地区"