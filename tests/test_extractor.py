"""
Tests for notice board extraction heuristics.
"""
import httpx
import pytest

from noticewatch.http_client import HTTPClient
from noticewatch.models import item_id
from noticewatch.resolver import HostResolver
from scrapers.notice_board import NoticeBoardScraper


@pytest.fixture
def scraper(crawler_config):
    return NoticeBoardScraper(HTTPClient(crawler_config))


def test_extracts_items_with_absolute_links_and_dates(scraper, listing_html):
    items = scraper.extract(listing_html)

    assert [item.title for item in items] == [
        "Public notice number 1",
        "Public notice number 2",
        "Public notice number 3",
    ]
    assert items[0].link == "https://www.example.gov.tw/Pages/Detail.aspx?nodeid=1&pid=1"
    assert items[0].date == "2026-10-01"
    assert items[0].id == item_id(items[0].title, items[0].link)


def test_first_matching_selector_wins(scraper):
    html = """
    <html><body>
      <div class="news-item"><a href="/other/1">Only matched by a later selector</a></div>
      <ul><li><a href="/topic/42">Topic based announcement</a></li></ul>
    </body></html>
    """
    items = scraper.extract(html)

    assert [item.title for item in items] == ["Topic based announcement"]


def test_short_titles_and_missing_href_are_skipped(scraper):
    html = """
    <ul>
      <li><a href="Detail.aspx?pid=1">More</a></li>
      <li><a>Detail without link target</a></li>
      <li><a href="Detail.aspx?pid=2">Road closure announcement</a></li>
    </ul>
    """
    items = scraper.extract(html)

    assert len(items) == 1
    assert items[0].link == "https://www.example.gov.tw/Pages/Detail.aspx?pid=2"


def test_duplicates_removed_preserving_first_seen_order(scraper):
    html = """
    <ul>
      <li><a href="/Pages/Detail.aspx?pid=2">Second notice title</a></li>
      <li><a href="/Pages/Detail.aspx?pid=1">First notice title</a></li>
      <li><a href="/Pages/Detail.aspx?pid=2">Second notice title</a></li>
    </ul>
    """
    items = scraper.extract(html)

    assert [item.title for item in items] == ["Second notice title", "First notice title"]


def test_date_found_up_to_three_levels_up(scraper):
    html = """
    <table><tr>
      <td><div class="publish-Date">2026/10/05</div></td>
      <td><div class="cell"><div class="inner">
        <a href="/Pages/Detail.aspx?pid=9">Deep nested announcement</a>
      </div></div></td>
    </tr>
    <tr><td><div><span class="date">2026/10/06</span><p><a href="/Pages/Detail.aspx?pid=10">Shallow announcement</a></p></div></td></tr>
    </table>
    """
    items = {item.title: item for item in scraper.extract(html)}

    assert items["Shallow announcement"].date == "2026/10/06"
    # The td holding the date is a sibling four levels up, out of reach
    assert items["Deep nested announcement"].date is None


def test_no_matches_yields_empty_list(scraper):
    assert scraper.extract("<html><body><p>Maintenance</p></body></html>") == []
    assert scraper.extract("") == []


async def no_answer(hostname):
    return None


def mocked_scraper(crawler_config, response):
    crawler_config.use_resolved_ip = False
    transport = httpx.MockTransport(lambda request: response)
    return NoticeBoardScraper(HTTPClient(crawler_config, resolver=HostResolver(strategies=[("none", no_answer)]),
                                         transport=transport))


@pytest.mark.asyncio
async def test_crawl_returns_extracted_items(crawler_config, listing_html):
    scraper = mocked_scraper(crawler_config, httpx.Response(200, text=listing_html))

    result = await scraper.crawl()
    await scraper.http_client.close()

    assert result.success
    assert len(result.items) == 3
    assert result.errors == []


@pytest.mark.asyncio
async def test_crawl_reports_failed_fetch(crawler_config):
    crawler_config.max_retries = 1
    scraper = mocked_scraper(crawler_config, httpx.Response(503, text="unavailable"))

    result = await scraper.crawl()
    await scraper.http_client.close()

    assert result.success is False
    assert result.items == []
    assert result.errors[0].startswith("Failed to fetch page content:")


def test_title_keeps_spacing_around_nested_markup(scraper):
    html = """
    <ul><li>
      <a href="/Pages/Detail.aspx?pid=1"><span>[Notice]</span> Road closure <b>update</b></a>
    </li></ul>
    """
    items = scraper.extract(html)

    assert items[0].title == "[Notice] Road closure update"
    assert items[0].id == item_id("[Notice] Road closure update", items[0].link)
