import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote_plus, unquote

import httpx
from bs4 import BeautifulSoup

from .config import AppSettings


logger = logging.getLogger("uvicorn.error")

SERPER_URL = "https://google.serper.dev/search"
TAVILY_URL = "https://api.tavily.com/search"
BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
DUCKDUCKGO_URL = "https://html.duckduckgo.com/html/"

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
BROWSER_HEADERS = {
    "User-Agent": DESKTOP_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}
CONTENT_SELECTORS = "article, main, .content, #content, .post, .article, .entry-content"
STRIP_SELECTORS = "script, style, nav, footer, header, aside, .ad, .advertisement"
SNIPPET_MAX_CHARS = 300
_UDDG_RE = re.compile(r"uddg=([^&]+)")

NO_RESULTS_TEXT = "No search results found. The AI will use its knowledge base instead."
SEARCH_UNAVAILABLE_TEXT = "Search temporarily unavailable. The AI will use its knowledge base to provide information."


@dataclass
class SearchHit:
    title: str
    url: str
    snippet: str = ""


def format_hits(hits: List[SearchHit]) -> str:
    return "\n---\n".join(f"Title: {h.title}\nURL: {h.url}\nSnippet: {h.snippet}\n" for h in hits)


def _unwrap_redirect(link: str) -> str:
    match = _UDDG_RE.search(link or "")
    if match:
        return unquote(match.group(1))
    return link


def parse_duckduckgo_html(html: str, max_results: int) -> List[SearchHit]:
    soup = BeautifulSoup(html, "html.parser")
    hits: List[SearchHit] = []
    for block in soup.select(".result"):
        if len(hits) >= max_results:
            break
        title_el = block.select_one(".result__title a")
        if title_el is None:
            continue
        title = title_el.get_text(strip=True)
        link = _unwrap_redirect(title_el.get("href") or "")
        snippet_el = block.select_one(".result__snippet")
        display_el = block.select_one(".result__url")
        snippet = snippet_el.get_text(strip=True)[:SNIPPET_MAX_CHARS] if snippet_el else ""
        if not link.startswith("http") and display_el is not None:
            link = f"https://{display_el.get_text(strip=True)}"
        if title and link:
            hits.append(SearchHit(title=title, url=link, snippet=snippet))
    if hits:
        return hits
    for anchor in soup.select("a.result__a"):
        if len(hits) >= max_results:
            break
        title = anchor.get_text(strip=True)
        link = _unwrap_redirect(anchor.get("href") or "")
        if title and link.startswith("http"):
            hits.append(SearchHit(title=title, url=link))
    return hits


def extract_page_text(html: str, max_chars: int) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for el in soup.select(STRIP_SELECTORS):
        el.decompose()
    text = " ".join(el.get_text(" ") for el in soup.select(CONTENT_SELECTORS))
    if len(text.strip()) < 100:
        body = soup.body or soup
        text = body.get_text(" ")
    text = re.sub(r"\s+", " ", text).strip()
    return text[:max_chars]


class WebTools:
    """Search and fetch adapters. The text-returning calls degrade to a description instead of raising."""

    def __init__(
        self,
        settings: AppSettings,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.serper_api_key = settings.serper_api_key
        self.tavily_api_key = settings.tavily_api_key
        self.brave_api_key = settings.brave_search_api_key
        self.max_results = settings.search_max_results
        self.search_timeout_s = settings.search_timeout_s
        self.scrape_timeout_s = settings.scrape_timeout_s
        self.scrape_max_chars = settings.scrape_max_chars
        # One pooled client for all providers and scrapes.
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )
        self.sleep = sleep

    async def search(self, query: str, max_results: Optional[int] = None) -> List[SearchHit]:
        """Ranked hits from the first provider that answers, DuckDuckGo scraping last."""
        limit = max_results or self.max_results
        providers = [
            ("serper", self.serper_api_key, self._serper_search),
            ("tavily", self.tavily_api_key, self._tavily_search),
            ("brave", self.brave_api_key, self._brave_search),
        ]
        for name, key, provider in providers:
            if not key:
                continue
            try:
                hits = await provider(query, limit)
            except (httpx.HTTPError, ValueError, KeyError) as exc:
                logger.warning("%s search failed for %r: %s", name, query, exc)
                continue
            if hits:
                logger.info("[%s] %s results for %r", name, len(hits), query)
                return hits[:limit]
            logger.info("[%s] no results for %r", name, query)
        return await self._duckduckgo_search(query, limit)

    async def web_search(self, query: str, max_results: Optional[int] = None) -> str:
        try:
            hits = await self.search(query, max_results)
        except httpx.HTTPError as exc:
            logger.error("search failed for %r: %s", query, exc)
            return SEARCH_UNAVAILABLE_TEXT
        if not hits:
            return NO_RESULTS_TEXT
        return format_hits(hits)

    async def fetch_and_extract(self, url: str) -> str:
        if not url:
            return "Failed to scrape URL: no URL provided"
        try:
            resp = await self.client.get(url, headers=BROWSER_HEADERS, timeout=self.scrape_timeout_s)
            resp.raise_for_status()
            return extract_page_text(resp.text, self.scrape_max_chars)
        except httpx.HTTPStatusError as exc:
            logger.warning("scrape failed for %s: HTTP %s", url, exc.response.status_code)
            return f"Failed to scrape URL: HTTP {exc.response.status_code}"
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("scrape failed for %s: %s", url, exc)
            return f"Failed to scrape URL: {exc}"

    async def _serper_search(self, query: str, limit: int) -> List[SearchHit]:
        data = await self._request_json(
            "POST",
            SERPER_URL,
            json={"q": query, "num": limit},
            headers={"X-API-KEY": self.serper_api_key or "", "Content-Type": "application/json"},
        )
        return [
            SearchHit(title=r.get("title", ""), url=r.get("link", ""), snippet=r.get("snippet") or "")
            for r in data.get("organic") or []
        ]

    async def _tavily_search(self, query: str, limit: int) -> List[SearchHit]:
        data = await self._request_json(
            "POST",
            TAVILY_URL,
            json={"api_key": self.tavily_api_key, "query": query, "max_results": limit, "search_depth": "basic"},
        )
        return [
            SearchHit(title=r.get("title", ""), url=r.get("url", ""), snippet=(r.get("content") or "")[:SNIPPET_MAX_CHARS])
            for r in data.get("results") or []
        ]

    async def _brave_search(self, query: str, limit: int) -> List[SearchHit]:
        data = await self._request_json(
            "GET",
            BRAVE_URL,
            params={"q": query, "count": limit, "text_decorations": False, "search_lang": "en"},
            headers={"Accept": "application/json", "X-Subscription-Token": self.brave_api_key or ""},
        )
        return [
            SearchHit(title=r.get("title", ""), url=r.get("url", ""), snippet=r.get("description") or "")
            for r in (data.get("web") or {}).get("results") or []
        ]

    async def _duckduckgo_search(self, query: str, limit: int, max_attempts: int = 2, base_delay_s: float = 2.0) -> List[SearchHit]:
        url = f"{DUCKDUCKGO_URL}?q={quote_plus(query)}"
        headers = {**BROWSER_HEADERS, "Referer": "https://duckduckgo.com/", "DNT": "1"}
        for attempt in range(max_attempts):
            try:
                resp = await self.client.get(url, headers=headers, timeout=12.0)
                resp.raise_for_status()
                hits = parse_duckduckgo_html(resp.text, limit)
                if hits:
                    logger.info("[duckduckgo] %s results for %r", len(hits), query)
                    return hits
            except httpx.HTTPError as exc:
                logger.warning("duckduckgo attempt %s/%s failed: %s", attempt + 1, max_attempts, exc)
                if attempt == max_attempts - 1:
                    raise
            if attempt < max_attempts - 1:
                await self.sleep(base_delay_s * (2 ** attempt))
        return []

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        resp = await self.client.request(method, url, timeout=self.search_timeout_s, **kwargs)
        resp.raise_for_status()
        return resp.json()

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
