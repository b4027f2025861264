"""
變化偵測

比較上次記錄的狀態與本次抓取的資料，判斷發生了哪些狀態轉換。
每個函式都是純函式，返回 (轉換, 新狀態)，由呼叫端負責持久化與發送通知。
"""

from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import FeedItem, PriceWatch, Winner

SEEN_ITEMS_LIMIT = 500

STAR_MILESTONES = (100, 500, 1000, 2000, 5000, 10000, 20000, 50000, 100000)


def detect_feed_items(
    seen_ids: Sequence[str],
    items: Iterable[FeedItem],
    is_first_check: bool = False,
    limit: int = SEEN_ITEMS_LIMIT,
) -> Tuple[List[FeedItem], List[str]]:
    """
    找出未見過的 feed 項目

    Args:
        seen_ids: 已見過的項目 ID（由舊到新）
        items: 本次抓取（已過濾）的項目
        is_first_check: 首次檢查只建立基準，不返回新項目
        limit: 已見集合的上限，超過時淘汰最舊的 ID

    Returns:
        (新項目, 更新後的已見 ID 列表)
    """
    seen = list(seen_ids)
    known = set(seen)
    new_items = []
    for item in items:
        if item.id in known:
            continue
        known.add(item.id)
        seen.append(item.id)
        new_items.append(item)

    if len(seen) > limit:
        seen = seen[-limit:]

    if is_first_check:
        return [], seen
    return new_items, seen


def detect_release(last_tag: Optional[str], release: Optional[Dict]) -> Tuple[Optional[Dict], Optional[str]]:
    """
    判斷是否有新版本

    Args:
        last_tag: 上次記錄的 tag，None 表示尚未記錄
        release: 最新 release（GitHub API 格式），None 表示沒有 release

    Returns:
        (新版本或 None, 應記錄的 tag)
    """
    if not release or not release.get("tag_name"):
        return None, last_tag
    tag = release["tag_name"]
    if last_tag is None or tag == last_tag:
        return None, tag
    return release, tag


def detect_star_milestone(last_count: Optional[int], current: int) -> Tuple[Optional[int], int]:
    """
    判斷 star 數是否跨過里程碑

    同一次檢查即使跨過多個里程碑，也只返回最小的一個；star 數一律更新。

    Returns:
        (跨過的里程碑或 None, 新的 star 數)
    """
    if last_count is None:
        return None, current
    for milestone in STAR_MILESTONES:
        if last_count < milestone <= current:
            return milestone, current
    return None, current


def evaluate_price(watch: PriceWatch, price: float) -> Tuple[Optional[Dict], Dict]:
    """
    依通知規則評估新價格

    優先順序：
    1. 達到目標價格（從高於目標跨到目標以下時才通知）
    2. 開啟降價通知，且降幅百分比 >= 門檻
    3. 開啟任何變動通知，且價格與上次不同

    Args:
        watch: 價格監控項目（current_price 為上次觀察到的價格）
        price: 本次提取到的價格

    Returns:
        (通知內容或 None, 需寫回的欄位)
    """
    last = watch.current_price
    updates = {"lastPrice": last, "currentPrice": price}

    changed = last is not None and price != last
    dropped = last is not None and price < last
    drop_percent = (last - price) / last * 100 if last else None
    change_percent = (price - last) / last * 100 if last else None

    reason = None
    if watch.target_price and price <= watch.target_price and (last is None or last > watch.target_price):
        reason = "target"
    elif watch.notify_on_drop and dropped and drop_percent is not None and drop_percent >= (watch.drop_threshold or 0):
        reason = "drop"
    elif watch.notify_on_any_change and changed:
        reason = "change"

    if reason is None:
        return None, updates

    transition = {
        "reason": reason,
        "old_price": last,
        "new_price": price,
        "change": price - last if last is not None else None,
        "change_percent": change_percent,
        "drop_percent": drop_percent if dropped else None,
        "target_price": watch.target_price,
    }
    return transition, updates


def detect_new_winners(
    notified: Iterable[str],
    winners: Iterable[Winner],
    resolve: Callable[[str], Optional[str]],
) -> Tuple[List[Tuple[Winner, str]], List[str]]:
    """
    找出尚未通知、且能對應到訂閱者的中獎者

    Args:
        notified: 已通知過的用戶名
        winners: 本次解析出的中獎者
        resolve: 用戶名 -> 訂閱者 ID（無法對應時返回 None）

    Returns:
        ([(中獎者, 訂閱者 ID)], 更新後的已通知用戶名列表)
    """
    notified_list = list(notified)
    known = set(notified_list)
    matches = []
    for winner in winners:
        if winner.username in known:
            continue
        subscriber = resolve(winner.username)
        if subscriber is None:
            continue
        known.add(winner.username)
        notified_list.append(winner.username)
        matches.append((winner, subscriber))
    return matches, notified_list
