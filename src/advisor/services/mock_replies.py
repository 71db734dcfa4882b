from __future__ import annotations

from typing import Callable, Dict, List

from .bot_registry import BotKind
from .summary import extract_topic


def _advisor_reply(user_text: str) -> str:
    topic = extract_topic(user_text)
    lines: List[str] = [
        f"## 关于「{topic}」的调理建议",
        "",
        "结合常见体质情况，先给您一个通用方向（网络暂时不稳定，以下为离线建议）：",
        "",
        "### 饮食",
        "- 以温和易消化为主，可适量选用 **黄芪**、**山药**、**红枣** 等平补食材。",
        "- 少食生冷油腻，晚餐七分饱。",
        "",
        "### 作息",
        "- 尽量在 23 点前入睡，午间可小憩 20 分钟。",
        "",
        "如症状持续或加重，请及时就医。",
    ]
    return "\n".join(lines)


def _recipe_reply(user_text: str) -> str:
    topic = extract_topic(user_text)
    return "\n".join(
        [
            "###食谱名称###",
            "黄芪山药健脾粥",
            "",
            "###中医原理/功效###",
            f"补气益脾，适合{topic}",
            "",
            "###食材列表###",
            "* 大米：100克",
            "* **黄芪：15克 (道地源自内蒙古)**",
            "* **怀山药：50克 (河南焦作)**",
            "* 瘦肉：50克",
            "* 生姜：2片",
            "",
            "###制作步骤###",
            "1. 瘦肉切丁，山药去皮切块，黄芪装入纱布袋。",
            "2. 与大米同煮至粥稠，取出黄芪袋即可。",
            "",
            "###溯源提示###",
            "黄芪溯源自内蒙古，山药溯源自焦作。",
        ]
    )


def _analysis_reply(user_text: str) -> str:
    return "\n".join(
        [
            "## 体质分析（离线结果）",
            "",
            "根据您提供的信息，初步倾向 **气虚质**，兼有 **痰湿质** 特征。",
            "",
            "## 建议",
            "- 规律作息，避免过劳。",
            "- 饮食宜健脾益气，少甜腻。",
            "",
            "## 说明",
            "此结果为离线估算，联网后可获得完整报告。",
        ]
    )


def _poster_reply(user_text: str) -> str:
    return f"海报生成服务暂不可用，请稍后重试（{extract_topic(user_text)}）。"


MOCK_HANDLERS: Dict[BotKind, Callable[[str], str]] = {
    BotKind.ADVISOR: _advisor_reply,
    BotKind.RECIPE: _recipe_reply,
    BotKind.ANALYSIS: _analysis_reply,
    BotKind.POSTER: _poster_reply,
}


def mock_reply(kind: BotKind, user_text: str) -> str:
    """Deterministic stand-in answer used when the upstream is unreachable."""
    handler = MOCK_HANDLERS.get(kind, _advisor_reply)
    return handler(user_text)
