from __future__ import annotations

from typing import Callable

Confirm = Callable[[str], bool]


def always_confirm(_prompt: str) -> bool:
    return True


def always_deny(_prompt: str) -> bool:
    return False
