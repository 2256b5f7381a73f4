import re
from typing import Iterable, List

_ANGLE_BRACKETS = re.compile(r"[<>]")


def sanitize_input(value: str) -> str:
    """
    Trim whitespace and strip angle brackets from user-entered text.
    """
    return _ANGLE_BRACKETS.sub("", (value or "").strip())


def sanitize_list(items: Iterable[str]) -> List[str]:
    cleaned = (sanitize_input(item) for item in items or [])
    return [item for item in cleaned if item]
