"""Settings shared between the store and the subscribers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RuntimeConfig:
    """Settings that can change while the service is running."""

    keeper_block_cooldown: int = 0