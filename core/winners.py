"""
抽獎結果解析

依優先順序執行六種互相獨立的解析策略，第一個有結果的策略勝出，
之後的策略不會執行。每個策略都是 soup -> List[Winner] 的純函式。
"""

import json
import logging
import re
from typing import Callable, List, Optional, Sequence

from bs4 import BeautifulSoup

from .models import Winner

logger = logging.getLogger(__name__)

WinnerStrategy = Callable[[BeautifulSoup], List[Winner]]

DEFAULT_PRIZE = "中奖"

LIST_ITEM_PATTERN = re.compile(r"(?:用户|@)?([a-zA-Z0-9_\u4e00-\u9fa5]+)\s*(?:中奖|获得|抽中)")
EMBEDDED_JSON_PATTERN = re.compile(r"(?:winners|luckyUsers|result)[\"']?\s*[=:]\s*(\[[^\]]+\])")
MENTION_PATTERN = re.compile(r"@([a-zA-Z0-9_]+)")

CARD_KEYWORDS = ("中奖", "获奖", "抽中")
MENTION_KEYWORDS = ("中奖", "恭喜", "获得", "抽中")
MENTION_WINDOW = 50


def parse_table_rows(soup: BeautifulSoup) -> List[Winner]:
    """表格：第一欄為用戶名，第二欄為獎品"""
    winners = []
    for index, row in enumerate(soup.select("table tbody tr")):
        cells = row.find_all("td")
        if len(cells) < 2:
            continue
        link = cells[0].find("a")
        username = (link.get_text(strip=True) if link else "") or cells[0].get_text(strip=True)
        if username:
            winners.append(Winner(username=username, prize=cells[1].get_text(strip=True), position=index + 1))
    return winners


def parse_winner_cards(soup: BeautifulSoup) -> List[Winner]:
    """以 class 命名的中獎卡片"""
    winners = []
    for index, card in enumerate(soup.select(".winner-item, .lottery-winner, .lucky-user")):
        username = "".join(
            el.get_text(strip=True) for el in card.select('.username, .user-name, a[href*="profile"]')
        )
        if not username:
            first_link = card.find("a")
            username = first_link.get_text(strip=True) if first_link else ""
        prize = "".join(el.get_text(strip=True) for el in card.select(".prize, .reward")) or DEFAULT_PRIZE
        if username:
            winners.append(Winner(username=username, prize=prize, position=index + 1))
    return winners


def parse_list_items(soup: BeautifulSoup) -> List[Winner]:
    """一般列表項目，以關鍵字正則取出用戶名"""
    winners = []
    for index, item in enumerate(soup.select(".list-group-item, .result-item")):
        match = LIST_ITEM_PATTERN.search(item.get_text())
        if match:
            winners.append(Winner(username=match.group(1), prize=DEFAULT_PRIZE, position=index + 1))
    return winners


def parse_embedded_json(soup: BeautifulSoup) -> List[Winner]:
    """頁面內嵌的 JSON 資料"""
    script_text = "\n".join(script.string or "" for script in soup.find_all("script") if not script.get("src"))
    match = EMBEDDED_JSON_PATTERN.search(script_text)
    if not match:
        return []
    try:
        data = json.loads(match.group(1))
    except ValueError:
        logger.debug("Embedded winner data is not valid JSON")
        return []

    winners = []
    for entry in data:
        if isinstance(entry, str):
            winners.append(Winner(username=entry, position=len(winners) + 1))
        elif isinstance(entry, dict):
            username = entry.get("username") or entry.get("name") or entry.get("user")
            if username:
                winners.append(Winner(
                    username=str(username),
                    prize=entry.get("prize") or entry.get("reward") or DEFAULT_PRIZE,
                    position=len(winners) + 1,
                ))
    return winners


def parse_post_highlights(soup: BeautifulSoup) -> List[Winner]:
    """NodeSeek 帖子內粗體標示的中獎者"""
    winners = []
    tags = [tag for container in soup.select(".nsk-card, .post-content") for tag in container.find_all(["strong", "b"])]
    for index, tag in enumerate(tags):
        parent_text = tag.parent.get_text() if tag.parent is not None else ""
        if not any(keyword in parent_text for keyword in CARD_KEYWORDS):
            continue
        username = tag.get_text(strip=True)
        if username and "中奖" not in username and "恭喜" not in username:
            winners.append(Winner(username=username, position=index + 1))
    return winners


def parse_mentions(soup: BeautifulSoup) -> List[Winner]:
    """@用戶名，前後 50 字內需出現中獎相關字詞"""
    body = soup.body or soup
    text = body.get_text()
    winners = []
    seen = set()
    for match in MENTION_PATTERN.finditer(text):
        username = match.group(1)
        if username in seen:
            continue
        seen.add(username)
        start = match.start()
        context = text[max(0, start - MENTION_WINDOW):start + len(username) + 1 + MENTION_WINDOW]
        if any(keyword in context for keyword in MENTION_KEYWORDS):
            winners.append(Winner(username=username, position=len(winners) + 1))
    return winners


WINNER_STRATEGIES: Sequence[WinnerStrategy] = (
    parse_table_rows,
    parse_winner_cards,
    parse_list_items,
    parse_embedded_json,
    parse_post_highlights,
    parse_mentions,
)


def extract_winners(page_html: str, strategies: Optional[Sequence[WinnerStrategy]] = None) -> List[Winner]:
    """
    從頁面 HTML 解析中獎者

    Args:
        page_html: 抽獎結果頁 HTML
        strategies: 解析策略列表，預設為 WINNER_STRATEGIES

    Returns:
        第一個非空策略的結果；全部為空時返回空列表
    """
    soup = BeautifulSoup(page_html or "", "lxml")
    for strategy in strategies or WINNER_STRATEGIES:
        winners = strategy(soup)
        if winners:
            logger.debug("Winners found by %s: %d", getattr(strategy, "__name__", strategy), len(winners))
            return winners
    return []
