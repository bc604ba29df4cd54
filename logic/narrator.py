"""
LLM market commentary.

Writes a short narrative for each cycle's decisions using a chat-completions
endpoint, with the latest crypto headlines as extra context. Purely
cosmetic: the text is attached to ``Decision.narrative`` and never touches
action, size or stop. Any failure returns None.
"""

from datetime import datetime, timezone
from typing import Optional

import httpx

from core.config import settings
from core.logging_utils import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are the commentator of an EMA trend-following perpetual swap engine. "
    "The engine has already decided; do not suggest different actions. "
    "In two or three sentences, explain the decision in plain language using "
    "the trend, entry structure and position details, and mention any headline "
    "that matters for this coin."
)


class Narrator:
    """Best-effort narrative via a DeepSeek-compatible chat API."""

    def __init__(
        self,
        api_key: str = None,
        url: str = None,
        model: str = None,
        news_url: str = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = settings.deepseek_api_key if api_key is None else api_key
        self.url = url or settings.llm_url
        self.model = model or settings.llm_model
        self.news_url = settings.news_url if news_url is None else news_url
        self.timeout = timeout
        self._client = client

        if self.enabled:
            logger.info("[NARRATE] LLM narrative enabled (%s)", self.model)
        else:
            logger.info("[NARRATE] No DEEPSEEK_API_KEY, narrative disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def fetch_headlines(self, limit: int = 5) -> list[str]:
        """Latest news titles, empty on any failure."""
        if not self.news_url:
            return []
        try:
            client = await self._get_client()
            resp = await client.get(self.news_url)
            resp.raise_for_status()
            items = resp.json().get("Data") or []
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("[NARRATE] News fetch failed: %s", e)
            return []
        headlines = []
        for item in items[:limit]:
            if not isinstance(item, dict) or not item.get("title"):
                continue
            published = item.get("published_on")
            if published:
                stamp = datetime.fromtimestamp(published, tz=timezone.utc).strftime("%H:%M")
                headlines.append(f"[{stamp}] {item['title']}")
            else:
                headlines.append(item["title"])
        return headlines

    async def summarize(self, context: dict) -> Optional[str]:
        if not self.enabled:
            return None
        lines = [f"{key}: {value}" for key, value in context.items() if key != "headlines"]
        headlines = context.get("headlines") or []
        if headlines:
            lines.append("News:")
            lines.extend(f"- {h}" for h in headlines)

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": "\n".join(lines)},
            ],
            "temperature": 0.3,
            "max_tokens": 200,
        }
        try:
            client = await self._get_client()
            resp = await client.post(
                self.url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            if resp.status_code != 200:
                logger.warning("[NARRATE] LLM error: %s", resp.status_code)
                return None
            content = resp.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.warning("[NARRATE] Failed: %s", e)
            return None
        return content.strip() if content else None
