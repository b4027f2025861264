"""
GitHub 倉庫監控

透過 REST API 監控新版本發布與 star 里程碑。
沒有任何 release 的倉庫（API 回傳 404）視為「無資料」，不算失敗。
"""

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from core.detectors import detect_release, detect_star_milestone
from core.errors import FetchErrorKind
from core.models import RepoWatch, WatchEvent

from .base import BaseWatcher, CheckOutcome

logger = logging.getLogger(__name__)

API_BASE = "https://api.github.com"
NOTIFICATIONS_COLLECTION = "github_notifications"
NOTIFICATIONS_LIMIT = 100
VALID_WATCH_TYPES = ("release", "star")

REPO_PATTERN = re.compile(r"^(?:https?://github\.com/)?([\w.-]+)/([\w.-]+?)(?:\.git)?/?$")


def parse_repo(value: str) -> Tuple[str, str]:
    """
    解析 owner/repo 或 GitHub 倉庫網址

    Raises:
        ValueError: 格式不正確
    """
    match = REPO_PATTERN.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid repository: {value}")
    return match.group(1), match.group(2)


class RepoWatcher(BaseWatcher):
    """GitHub 倉庫監控器"""

    collection = "github_repos"
    model = RepoWatch
    id_prefix = "gh"
    audit_tag = "github"
    defaults = {
        "watchTypes": ["release"],
        "lastRelease": None,
        "lastStar": None,
    }

    @property
    def source_name(self) -> str:
        return "github"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "watch-engine",
        }
        token = self.context.settings.github_token
        if token:
            headers["Authorization"] = f"token {token}"
        return headers

    def validate(self, entity: Dict) -> None:
        if not entity.get("owner") or not entity.get("repo"):
            owner, repo = parse_repo(entity.get("fullName") or entity.get("url", ""))
            entity["owner"], entity["repo"] = owner, repo
        entity["fullName"] = f"{entity['owner']}/{entity['repo']}"
        watch_types = [t for t in entity.get("watchTypes") or [] if t in VALID_WATCH_TYPES]
        if not watch_types:
            raise ValueError(f"watchTypes must include one of {list(VALID_WATCH_TYPES)}")
        entity["watchTypes"] = watch_types
        for existing in self.list_entities():
            if existing.get("fullName", "").lower() == entity["fullName"].lower():
                raise ValueError(f"Repository already watched: {entity['fullName']}")

    async def check(self, repo: RepoWatch) -> CheckOutcome:
        outcome = CheckOutcome()
        errors: List[str] = []

        if "release" in repo.watch_types:
            error = await self._check_release(repo, outcome)
            if error:
                errors.append(error)

        if "star" in repo.watch_types:
            error = await self._check_stars(repo, outcome)
            if error:
                errors.append(error)

        outcome.error = "; ".join(errors) or None
        return outcome

    async def _check_release(self, repo: RepoWatch, outcome: CheckOutcome) -> Optional[str]:
        result = await self.pipeline.fetch_json(
            f"{API_BASE}/repos/{repo.full_name}/releases/latest", headers=self._headers()
        )
        if not result.success:
            if result.kind is FetchErrorKind.NOT_FOUND:
                return None
            return f"release: {result.error}"

        release = result.content
        transition, tag = detect_release(repo.last_release_tag, release)
        if tag != repo.last_release_tag:
            outcome.updates["lastRelease"] = {
                "tag": tag,
                "name": release.get("name"),
                "publishedAt": release.get("published_at"),
            }
        if transition:
            logger.info("[github] %s: new release %s", repo.full_name, tag)
            outcome.events.append(WatchEvent(
                type="release",
                entity_id=repo.id,
                source=self.source_name,
                payload={
                    "full_name": repo.full_name,
                    "tag": tag,
                    "name": transition.get("name") or tag,
                    "url": transition.get("html_url") or f"{repo.url}/releases/tag/{tag}",
                    "published_at": transition.get("published_at"),
                    "body": (transition.get("body") or "")[:500],
                },
            ))
        return None

    async def _check_stars(self, repo: RepoWatch, outcome: CheckOutcome) -> Optional[str]:
        result = await self.pipeline.fetch_json(f"{API_BASE}/repos/{repo.full_name}", headers=self._headers())
        if not result.success:
            return f"star: {result.error}"

        stars = result.content.get("stargazers_count")
        if stars is None:
            return "star: stargazers_count missing"

        milestone, count = detect_star_milestone(repo.last_star_count, int(stars))
        outcome.updates["lastStar"] = count
        if milestone:
            logger.info("[github] %s: passed %d stars", repo.full_name, milestone)
            outcome.events.append(WatchEvent(
                type="star_milestone",
                entity_id=repo.id,
                source=self.source_name,
                payload={
                    "full_name": repo.full_name,
                    "milestone": milestone,
                    "stars": count,
                    "url": repo.url,
                },
            ))
        return None

    def commit(self, repo: RepoWatch, outcome: CheckOutcome) -> None:
        for event in outcome.events:
            self.store.append_capped(
                NOTIFICATIONS_COLLECTION,
                {
                    "repoId": repo.id,
                    "fullName": repo.full_name,
                    "type": event.type,
                    "payload": event.payload,
                    "createdAt": datetime.now().isoformat(),
                },
                NOTIFICATIONS_LIMIT,
                newest_first=True,
            )

    def on_deleted(self, entity_id: str, purge_history: bool) -> None:
        if purge_history:
            history = self.store.load(NOTIFICATIONS_COLLECTION, [])
            self.store.save(NOTIFICATIONS_COLLECTION, [h for h in history if h.get("repoId") != entity_id])

    def describe(self, event: WatchEvent) -> str:
        if event.type == "release":
            return f"新版本: {event.payload['full_name']} {event.payload['tag']}"
        return f"Star 里程碑: {event.payload['full_name']} {event.payload['milestone']}"
