from typing import List, Optional
from urllib.parse import urljoin
import logging

from bs4 import BeautifulSoup

from noticewatch.http_client import HTTPClient
from noticewatch.models import Item
from noticewatch.scraper_base import BaseScraper

logger = logging.getLogger(__name__)

DATE_SEARCH_DEPTH = 3


class NoticeBoardScraper(BaseScraper):
    def __init__(self, http_client: HTTPClient):
        super().__init__(http_client)
        self.base_url = http_client.config.target_url
        self.selectors = list(http_client.config.selectors)
        self.min_title_length = http_client.config.min_title_length

    def extract(self, html: str) -> List[Item]:
        soup = BeautifulSoup(html, "lxml")

        items = []
        # First selector with any match wins; overlapping selectors are never merged
        for selector in self.selectors:
            anchors = soup.select(selector)
            if not anchors:
                continue
            logger.info(f"Found {len(anchors)} elements with selector: {selector}")
            for anchor in anchors:
                item = self._item_from_anchor(anchor)
                if item:
                    items.append(item)
            break
        else:
            logger.warning("No selector matched the page")

        unique = {}
        for item in items:
            unique.setdefault(item.id, item)
        return list(unique.values())

    def _item_from_anchor(self, anchor) -> Optional[Item]:
        href = (anchor.get("href") or "").strip()
        if not href:
            return None

        link = urljoin(self.base_url, href)
        title = anchor.get_text().strip()
        if len(title) < self.min_title_length:
            return None

        return Item.create(title=title, link=link, date=self._find_date(anchor))

    def _find_date(self, anchor) -> Optional[str]:
        """Look up to three ancestors up for a span/div whose class mentions "date"."""
        parent = anchor.parent
        for _ in range(DATE_SEARCH_DEPTH):
            if parent is None:
                break
            for element in parent.find_all(["span", "div"]):
                classes = " ".join(element.get("class") or [])
                if "date" in classes.lower():
                    text = element.get_text().strip()
                    return text or None
            parent = parent.parent
        return None
