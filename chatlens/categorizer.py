"""
Message categorizer.

Local classification is an ordered rule table (data, not control flow):
the first rule whose keywords appear in the text wins, and Other is the
fallback. When an LLM client is configured, it is asked first and its
answer is validated against the closed Category set; anything else falls
back to the local rules.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from chatlens.domain import Category
from chatlens.errors import ClassificationUnavailable
from chatlens.llm import LLMClient
from chatlens.metrics import record_classification, record_remote_fallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryRule:
    """Keywords are stored lowercased; matching is case-insensitive substring."""

    category: Category
    keywords: tuple[str, ...]

    def matches(self, lowered_text: str) -> bool:
        return any(keyword in lowered_text for keyword in self.keywords)


def _rule(category: Category, *keywords: str) -> CategoryRule:
    return CategoryRule(category=category, keywords=tuple(k.lower() for k in keywords))


DEFAULT_RULES: list[CategoryRule] = [
    _rule(
        Category.TECHNICAL,
        "程式", "代碼", "程式碼", "bug", "error", "錯誤", "api", "database", "資料庫",
        "server", "開發", "技術", "code", "programming", "webhook", "puppeteer",
    ),
    _rule(
        Category.WORK,
        "工作", "會議", "專案", "deadline", "報告", "客戶", "同事", "老闆",
        "meeting", "project",
    ),
    _rule(
        Category.LIFE,
        "吃飯", "餐廳", "推薦", "好吃", "電影", "音樂", "旅遊", "購物", "美食",
        "娛樂", "休閒", "生活", "food", "movie", "travel",
    ),
    _rule(
        Category.HELP,
        "問題", "求助", "幫忙", "如何", "怎麼", "為什麼", "help", "question",
        "problem", "issue",
    ),
    _rule(
        Category.EVENT,
        "活動", "聚會", "參加", "通知", "提醒", "event", "party", "announcement",
    ),
]

FALLBACK_CATEGORY = Category.OTHER

PROMPT_TEMPLATE = (
    "請將以下訊息分類到最適合的類別。\n\n"
    "{sender_line}訊息：{text}\n\n"
    "可選類別：\n"
    "- 技術討論：程式開發、技術問題、代碼相關\n"
    "- 工作相關：會議、專案、工作安排\n"
    "- 生活分享：日常生活、休閒娛樂\n"
    "- 問題求助：需要幫助的問題\n"
    "- 活動通知：聚會、活動、提醒\n"
    "- 其他：不屬於上述類別\n\n"
    "請只回傳類別名稱："
)


def build_rules(rules_config: Iterable[dict]) -> list[CategoryRule]:
    """
    Build an ordered rule table from config dicts.

    Each entry: {"category": <label|name|English name>, "keywords": [...],
    "enabled": bool (optional)}. Order is preserved.

    Raises:
        ValueError: on an unknown category or a rule for Other
    """
    rules: list[CategoryRule] = []
    for entry in rules_config:
        if not entry.get("enabled", True):
            continue
        category = Category.parse(str(entry.get("category", "")))
        if category is None:
            raise ValueError(f"Unknown category in rule config: {entry.get('category')!r}")
        if category is FALLBACK_CATEGORY:
            raise ValueError("Other is the fallback category and cannot have rules")
        keywords = [str(k) for k in entry.get("keywords", []) if str(k).strip()]
        rules.append(_rule(category, *keywords))
    return rules


def load_rules(path: str) -> list[CategoryRule]:
    """Load an ordered rule table from a JSON file (a list of rule dicts)."""
    with Path(path).open(encoding="utf-8") as f:
        config = json.load(f)
    rules = build_rules(config)
    logger.info(f"Loaded {len(rules)} category rule(s) from {path}")
    return rules


def match_category(text: str, rules: Iterable[CategoryRule]) -> Category:
    """Return the first matching rule's category, or Other."""
    lowered = text.lower()
    for rule in rules:
        if rule.matches(lowered):
            return rule.category
    return FALLBACK_CATEGORY


class Categorizer:
    """
    classify(text) -> Category, always drawn from the closed set.

    FALLBACK BEHAVIOR:
    - No LLM client: local rules
    - Remote timeout/error: local rules
    - Remote answer outside the category set: local rules
    """

    def __init__(
        self,
        rules: Optional[Iterable[CategoryRule]] = None,
        remote: Optional[LLMClient] = None,
    ):
        self._rules = list(rules) if rules is not None else list(DEFAULT_RULES)
        self._remote = remote

    @property
    def rules(self) -> list[CategoryRule]:
        return list(self._rules)

    def classify(self, text: str, sender: Optional[str] = None, timeout: Optional[float] = None) -> Category:
        """
        Classify message text.

        Args:
            text: Message body
            sender: Optional author name passed to the remote prompt
            timeout: Remaining time budget for the remote call, in seconds.
                A budget of zero or less skips the remote call.
        """
        if self._remote is not None and (timeout is None or timeout > 0):
            try:
                category = self._classify_remote(text, sender, timeout)
                record_classification(category.value, "remote")
                return category
            except ClassificationUnavailable as e:
                logger.warning(f"Remote classification unavailable, using local rules: {e}")
                record_remote_fallback("classify")

        category = match_category(text, self._rules)
        logger.debug(f"Local rules classified message as {category.value}")
        record_classification(category.value, "local")
        return category

    def _classify_remote(self, text: str, sender: Optional[str], timeout: Optional[float]) -> Category:
        sender_line = f"用戶：{sender}\n" if sender else ""
        if timeout is not None:
            timeout = min(timeout, self._remote.timeout_seconds)
        answer = self._remote.complete(
            PROMPT_TEMPLATE.format(sender_line=sender_line, text=text),
            max_tokens=20,
            temperature=0.0,
            timeout=timeout,
            error_cls=ClassificationUnavailable,
        )
        category = Category.parse(answer.splitlines()[0])
        if category is None:
            raise ClassificationUnavailable(f"Out-of-vocabulary label from LLM: {answer[:40]!r}")
        return category
