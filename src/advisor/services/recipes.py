from __future__ import annotations

import re
from typing import Dict, List, Optional

from ..domain.models import Recipe


# Static catalog served by GET /api/recipes until a real recipe source exists.
CATALOG: List[Recipe] = [
    Recipe(id=1, title="黄芪党参乌鸡汤", tags=["气虚质", "春季"]),
    Recipe(id=2, title="陈皮红豆沙", tags=["痰湿质", "四季"]),
]

ALL_SEASONS_TAG = "四季"

_SECTIONS = ("食谱名称", "中医原理/功效", "食材列表", "制作步骤", "溯源提示")
_SECTION_DEFAULTS = {
    "食谱名称": "未知食谱",
    "中医原理/功效": "原理待查",
    "食材列表": "食材缺失",
    "制作步骤": "步骤缺失",
    "溯源提示": "无溯源信息",
}
_SECTION_RE = re.compile(r"###\s*(" + "|".join(re.escape(s) for s in _SECTIONS) + r")\s*###")


def _season_matches(recipe: Recipe, season: str) -> bool:
    return season in recipe.tags or ALL_SEASONS_TAG in recipe.tags


def list_recipes(season: Optional[str] = None, tizhi: Optional[str] = None) -> List[Recipe]:
    """Catalog entries whose tags match the given season and constitution.

    A recipe tagged 四季 matches any season. Empty filters match everything.
    """
    out: List[Recipe] = []
    for recipe in CATALOG:
        if season and not _season_matches(recipe, season.strip()):
            continue
        if tizhi and tizhi.strip() not in recipe.tags:
            continue
        out.append(recipe)
    return out


def recipe_detail_prompt(name: str) -> str:
    return (
        f"请生成【{name.strip()}】的详细食谱，包含：1. 食材清单（精确到克）；2. 详细制作步骤；"
        "3. 每一味食材的中医功效与溯源地推荐（如：新会陈皮、宁夏枸杞）。请使用 Markdown 格式输出。"
    )


def parse_structured_recipe(text: str) -> Dict[str, str]:
    """Split a ``###section###`` formatted recipe reply into its sections."""
    parts = _SECTION_RE.split(text or "")
    found: Dict[str, str] = {}
    # split() yields [preamble, name1, body1, name2, body2, ...]
    for i in range(1, len(parts) - 1, 2):
        body = parts[i + 1].strip()
        if body:
            found[parts[i]] = body
    return {section: found.get(section, default) for section, default in _SECTION_DEFAULTS.items()}
