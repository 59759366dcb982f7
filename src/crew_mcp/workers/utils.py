"""Utility helpers for spawning worker processes."""

from __future__ import annotations

import os
import random
import time
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

_ADJECTIVES = (
    "Amber", "Brisk", "Calm", "Daring", "Eager", "Fuzzy", "Gentle", "Hazel",
    "Ivory", "Jolly", "Keen", "Lucky", "Mellow", "Nimble", "Quiet", "Rapid",
    "Silver", "Swift", "Tidy", "Vivid", "Witty", "Zesty",
)
_NOUNS = (
    "Badger", "Comet", "Falcon", "Gecko", "Heron", "Jaguar", "Koala", "Lynx",
    "Maple", "Otter", "Panda", "Quail", "Raven", "Spruce", "Tiger", "Walrus",
    "Willow", "Yak", "Zebra",
)


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def generate_memorable_name(rng: random.Random | None = None) -> str:
    """Return a short display name such as ``SwiftFalcon``."""

    chooser = rng or random
    return f"{chooser.choice(_ADJECTIVES)}{chooser.choice(_NOUNS)}"


def now_ms() -> int:
    return int(time.time() * 1000)


__all__ = ["generate_memorable_name", "now_ms", "sanitize_environment"]
