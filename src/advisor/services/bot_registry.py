"""Resolution of bot identifiers at the API boundary.

Callers name a bot either literally (``bot_id``) or through an alias that maps
to a ``COZE_BOT_ID_<ALIAS>`` environment variable. Resolution happens once;
everything downstream receives a ``ResolvedBot`` carrying a closed ``BotKind``
so the streaming and mock layers can dispatch through lookup tables instead of
comparing raw identifiers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

from ..domain.errors import ConfigError


class BotKind(str, Enum):
    ADVISOR = "advisor"
    POSTER = "poster"
    RECIPE = "recipe"
    ANALYSIS = "analysis"

    @classmethod
    def from_alias(cls, alias: Optional[str]) -> Optional["BotKind"]:
        if not alias:
            return None
        try:
            return cls(alias.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class ResolvedBot:
    bot_id: str
    kind: BotKind
    alias: Optional[str] = None


DEFAULT_BOT_ENV = "COZE_BOT_ID"


def alias_env_key(alias: str) -> str:
    return f"{DEFAULT_BOT_ENV}_{alias.strip().upper()}"


class BotRegistry:
    """Maps explicit ids / aliases to configured bot ids."""

    def __init__(self, env: Optional[Mapping[str, str]] = None) -> None:
        self._env = env if env is not None else os.environ

    def configured_ids(self) -> Dict[BotKind, str]:
        out: Dict[BotKind, str] = {}
        for kind in BotKind:
            value = (self._env.get(alias_env_key(kind.value)) or "").strip()
            if value:
                out[kind] = value
        return out

    def kind_for_bot_id(self, bot_id: str) -> BotKind:
        for kind, configured in self.configured_ids().items():
            if configured == bot_id:
                return kind
        return BotKind.ADVISOR

    def resolve(self, bot_id: Optional[str] = None, alias: Optional[str] = None) -> ResolvedBot:
        """Explicit id first, then the alias variable, then the default bot."""
        if bot_id:
            return ResolvedBot(bot_id=bot_id, kind=self.kind_for_bot_id(bot_id), alias=alias)
        if alias:
            target = (self._env.get(alias_env_key(alias)) or "").strip()
            if target:
                return ResolvedBot(bot_id=target, kind=BotKind.from_alias(alias) or self.kind_for_bot_id(target), alias=alias)
        default_id = (self._env.get(DEFAULT_BOT_ENV) or "").strip()
        if default_id:
            kind = BotKind.from_alias(alias) or self.kind_for_bot_id(default_id)
            return ResolvedBot(bot_id=default_id, kind=kind, alias=alias)
        raise ConfigError("Bot ID not configured")

    def resolve_kind(self, kind: BotKind) -> ResolvedBot:
        target = (self._env.get(alias_env_key(kind.value)) or "").strip()
        if not target:
            raise ConfigError(f"Missing {alias_env_key(kind.value)}")
        return ResolvedBot(bot_id=target, kind=kind, alias=kind.value)
