"""
Tests for CrawlOrchestrator.

The orchestrator runs against FakeSessions (one listing FakePage serving a
dict of listing URLs, a fresh FakePage per entity) and FakePipeline, which
succeeds for every URL not marked as failing. Sleeps are no-ops.
"""

from __future__ import annotations

import random
from typing import Any, Dict, List

import pytest

from listing_scraper.crawler import CrawlOrchestrator, CrawlState
from listing_scraper.data_models.models import ExtractionResult, TerminationReason
from listing_scraper.errors import ConsecutiveFailureLimitExceeded, NavigationError, SelectorTimeoutError
from listing_scraper.extractors.extraction import ExtractionPipeline
from tests.fakes import FakeElement, FakePage, FakePipeline, FakeSessions, make_config, no_sleep

START = "https://x.test/list"


def dr(name: str) -> str:
    return f"https://x.test/dr/{name}"


def listing_site(*pages: List[str]) -> Dict[str, Dict[str, Any]]:
    """Query-paginated listing: first entry at START, the rest at ?page=N"""
    site = {}
    for number, names in enumerate(pages, start=1):
        url = START if number == 1 else f"{START}?page={number}"
        site[url] = {"links": [dr(n) for n in names], "title": f"Doctors page {number}"}
    return site


def orchestrate(site, pipeline=None, persist=None, **config_kwargs):
    records: List[ExtractionResult] = []
    sessions = FakeSessions(FakePage(site=site))
    orchestrator = CrawlOrchestrator(
        make_config(**config_kwargs),
        persist if persist is not None else records.append,
        sessions=sessions,
        pipeline=pipeline or FakePipeline(),
        sleep=no_sleep,
    )
    return orchestrator, sessions, records


# ---------------------------------------------------------------------------
# Page walking and termination
# ---------------------------------------------------------------------------


class TestPageWalk:
    async def test_stops_when_a_later_page_has_no_links(self) -> None:
        pipeline = FakePipeline()
        orchestrator, sessions, records = orchestrate(listing_site(["a", "b"], ["c", "d"], []), pipeline)

        summary = await orchestrator.run()

        assert summary.total_pages_processed == 2
        assert summary.total_records_extracted == 4
        assert summary.termination_reason == TerminationReason.NO_ENTITY_LINKS
        assert [r.url for r in records] == [dr("a"), dr("b"), dr("c"), dr("d")]
        assert [r.source_page for r in records] == [1, 1, 2, 2]
        assert orchestrator.state == CrawlState.TERMINAL
        assert sessions.started and sessions.stopped and sessions.listing_closed

    async def test_entities_are_visited_once(self) -> None:
        pipeline = FakePipeline()
        site = listing_site(["a", "b"], ["b", "c", "a"], [])
        site[f"{START}?page=2"]["links"].append("https://X.test/dr/a/")
        orchestrator, _, _ = orchestrate(site, pipeline)

        summary = await orchestrator.run()

        assert pipeline.calls == [dr("a"), dr("b"), dr("c")]
        assert summary.total_records_extracted == 3

    async def test_excluded_entity_links_are_skipped(self) -> None:
        pipeline = FakePipeline()
        orchestrator, _, _ = orchestrate(listing_site(["a", "b"], []), pipeline,
                                         excluded_url_patterns=["*/dr/b"])

        await orchestrator.run()

        assert pipeline.calls == [dr("a")]

    async def test_max_pages(self) -> None:
        orchestrator, _, _ = orchestrate(listing_site(["a"], ["b"], ["c"]),
                                         pagination={"type": "query", "max_pages": 2})

        summary = await orchestrator.run()

        assert summary.total_pages_processed == 2
        assert summary.termination_reason == TerminationReason.MAX_PAGES

    async def test_max_pages_counts_from_a_mid_pagination_start(self) -> None:
        site = {
            f"{START}?page={n}": {"links": [dr(f"p{n}")], "title": f"Doctors page {n}"}
            for n in range(3, 7)
        }
        orchestrator, _, records = orchestrate(site, start_url=f"{START}?page=3",
                                               pagination={"type": "query", "max_pages": 2})

        summary = await orchestrator.run()

        assert summary.total_pages_processed == 2
        assert summary.termination_reason == TerminationReason.MAX_PAGES
        assert [r.source_page for r in records] == [3, 4]

    async def test_request_gaps_are_randomized(self) -> None:
        delays: List[float] = []

        async def record_sleep(seconds: float) -> None:
            delays.append(seconds)

        orchestrator = CrawlOrchestrator(
            make_config(timing={"entity_interval_ms": 3000}),
            lambda record: None,
            sessions=FakeSessions(FakePage(site=listing_site(["a", "b", "c", "d", "e", "f"]))),
            pipeline=FakePipeline(),
            sleep=record_sleep,
            rng=random.Random(3),
        )

        await orchestrator.run()

        assert len(delays) == 5
        assert len(set(delays)) > 1
        # 3s +-25%, plus the occasional long pause of up to 7s
        assert all(2.25 <= d <= 10.75 for d in delays)

    async def test_max_entities(self) -> None:
        orchestrator, _, records = orchestrate(listing_site(["a", "b"], ["c", "d"]),
                                               crawler={"max_entities": 3})

        summary = await orchestrator.run()

        assert len(records) == 3
        assert summary.termination_reason == TerminationReason.MAX_ENTITIES

    async def test_next_page_outside_patterns(self) -> None:
        orchestrator, _, _ = orchestrate(listing_site(["a"], ["b"]),
                                         excluded_url_patterns=[f"{START}?page=*"])

        summary = await orchestrator.run()

        assert summary.total_pages_processed == 1
        assert summary.termination_reason == TerminationReason.URL_FILTERED

    async def test_disabled_next_control(self) -> None:
        site = listing_site(["a"], ["b"])
        site[START]["elements"] = {"a.next": FakeElement("Next", disabled=True)}
        orchestrator, _, _ = orchestrate(site, selectors={"next_button": "a.next"})

        summary = await orchestrator.run()

        assert summary.termination_reason == TerminationReason.NO_NEXT_PAGE
        assert summary.total_pages_processed == 1

    async def test_last_page_marker(self) -> None:
        site = listing_site(["a"], ["b"])
        site[START]["html"] = "<html><body><p>End of results</p></body></html>"
        orchestrator, _, _ = orchestrate(site, pagination={"type": "query", "last_page_markers": ["end of results"]})

        summary = await orchestrator.run()

        assert summary.termination_reason == TerminationReason.LAST_PAGE_MARKER

    async def test_later_listing_navigation_failure_ends_crawl(self) -> None:
        orchestrator, sessions, records = orchestrate(listing_site(["a"], ["b"]))
        sessions.navigation_failures.add(f"{START}?page=2")

        summary = await orchestrator.run()

        assert len(records) == 1
        assert summary.termination_reason == TerminationReason.NAVIGATION_ERROR
        assert summary.failure_counts == {"navigation": 1}

    async def test_async_persist_is_awaited(self) -> None:
        saved = []

        async def persist(result: ExtractionResult) -> None:
            saved.append(result.url)

        orchestrator, _, _ = orchestrate(listing_site(["a", "b"], []), persist=persist)
        await orchestrator.run()

        assert saved == [dr("a"), dr("b")]


# ---------------------------------------------------------------------------
# AJAX listings
# ---------------------------------------------------------------------------


class TestAjaxWalk:
    async def test_walks_until_listing_stops_changing(self) -> None:
        site = listing_site(["a", "b"])
        listing = FakePage(site=site)

        def load_second_batch() -> None:
            listing.links = [dr("c"), dr("d")]

        site[START]["elements"] = {"a.next": FakeElement("Next", on_click=load_second_batch)}
        records: List[ExtractionResult] = []
        orchestrator = CrawlOrchestrator(
            make_config(pagination={"type": "ajax"}, selectors={"next_button": "a.next"}),
            records.append,
            sessions=FakeSessions(listing),
            pipeline=FakePipeline(),
            sleep=no_sleep,
        )

        summary = await orchestrator.run()

        assert [r.url for r in records] == [dr("a"), dr("b"), dr("c"), dr("d")]
        assert [r.source_page for r in records] == [1, 1, 2, 2]
        assert listing.goto_calls == [START]
        assert summary.total_pages_processed == 2
        assert summary.termination_reason == TerminationReason.CONTENT_UNCHANGED


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_consecutive_failures_abort_the_run(self) -> None:
        names = ["a", "b", "c", "d", "e", "f"]
        pipeline = FakePipeline(fail_all=True)
        orchestrator, sessions, records = orchestrate(listing_site(names), pipeline)

        with pytest.raises(ConsecutiveFailureLimitExceeded) as exc_info:
            await orchestrator.run()

        assert records == []
        assert pipeline.calls == [dr(n) for n in names[:5]]
        summary = exc_info.value.summary
        assert summary.termination_reason == TerminationReason.CONSECUTIVE_FAILURES
        assert summary.failure_counts == {"validation": 5, "consecutive_failures": 1}
        assert sessions.stopped

    async def test_success_resets_the_failure_count(self) -> None:
        names = ["a", "b", "c", "d", "ok", "e", "f", "g", "h"]
        pipeline = FakePipeline(failing={dr(n) for n in names if n != "ok"})
        orchestrator, _, records = orchestrate(listing_site(names, []), pipeline)

        summary = await orchestrator.run()

        assert [r.url for r in records] == [dr("ok")]
        assert summary.failure_counts == {"validation": 8}
        assert summary.termination_reason == TerminationReason.NO_ENTITY_LINKS

    async def test_entity_navigation_failure_is_counted(self) -> None:
        orchestrator, sessions, records = orchestrate(listing_site(["a", "b"], []))
        sessions.navigation_failures.add(dr("a"))

        summary = await orchestrator.run()

        assert [r.url for r in records] == [dr("b")]
        assert summary.failure_counts == {"navigation": 1}
        assert sessions.entity_pages_opened == sessions.entity_pages_closed == 2

    async def test_empty_first_page_is_fatal(self) -> None:
        orchestrator, sessions, _ = orchestrate(listing_site([]))

        with pytest.raises(SelectorTimeoutError) as exc_info:
            await orchestrator.run()

        assert exc_info.value.summary.termination_reason == TerminationReason.SELECTOR_TIMEOUT
        assert exc_info.value.selector == "a.profile"
        assert sessions.stopped

    async def test_missing_listing_selector_is_fatal(self) -> None:
        listing = FakePage(site=listing_site(["a"]))
        listing.missing_selectors.add("a.profile")
        orchestrator = CrawlOrchestrator(make_config(), lambda r: None, sessions=FakeSessions(listing),
                                         pipeline=FakePipeline(), sleep=no_sleep)

        with pytest.raises(SelectorTimeoutError):
            await orchestrator.run()

    async def test_first_listing_navigation_failure_is_fatal(self) -> None:
        orchestrator, sessions, _ = orchestrate(listing_site(["a"]))
        sessions.navigation_failures.add(START)

        with pytest.raises(NavigationError) as exc_info:
            await orchestrator.run()

        assert exc_info.value.summary.termination_reason == TerminationReason.NAVIGATION_ERROR
        assert exc_info.value.summary.failure_counts == {"navigation": 1}

    async def test_bot_indicators_are_reported_and_extraction_continues(self) -> None:
        pipeline = FakePipeline()
        orchestrator, sessions, records = orchestrate(
            listing_site(["a"], []), pipeline,
            crawler={"detect_bot_protection": True, "simulate_human": True},
        )
        sessions.entity_site = {dr("a"): {"html": "<html><body>Access denied</body></html>", "title": "Blocked"}}

        summary = await orchestrator.run()

        assert summary.failure_counts == {"bot_detected": 1}
        assert [r.url for r in records] == [dr("a")]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_cancel_stops_at_next_entity(self) -> None:
        holder = {}

        def persist(result: ExtractionResult) -> None:
            holder["saved"] = holder.get("saved", 0) + 1
            holder["orchestrator"].request_cancel()

        orchestrator, sessions, _ = orchestrate(listing_site(["a", "b", "c"]), persist=persist)
        holder["orchestrator"] = orchestrator

        summary = await orchestrator.run()

        assert holder["saved"] == 1
        assert orchestrator.cancelled
        assert summary.termination_reason == TerminationReason.CANCELLED
        assert sessions.stopped

    async def test_cancel_before_start(self) -> None:
        orchestrator, _, records = orchestrate(listing_site(["a"]))
        orchestrator.request_cancel()

        summary = await orchestrator.run()

        assert records == []
        assert summary.termination_reason == TerminationReason.CANCELLED


# ---------------------------------------------------------------------------
# Scraper-only mode
# ---------------------------------------------------------------------------


class TestScrapeUrls:
    async def test_cards_from_each_page(self) -> None:
        config = make_config(selectors={"cards": {"card": ".card"}})
        staff = "https://x.test/staff"
        sessions = FakeSessions(FakePage(), entity_site={
            staff: {"html": '<div class="card"><h3>Dr. Tan Ah Kow</h3></div>'
                            '<div class="card"><h3>Mdm Lee Siew Ling</h3></div>'},
        })
        sessions.navigation_failures.add("https://x.test/broken")
        records: List[ExtractionResult] = []
        orchestrator = CrawlOrchestrator(config, records.append, sessions=sessions,
                                         pipeline=ExtractionPipeline(config, sleep=no_sleep), sleep=no_sleep)

        summary = await orchestrator.scrape_urls(["https://x.test/broken", staff])

        assert [r.fields["name"] for r in records] == ["Dr. Tan Ah Kow", "Mdm Lee Siew Ling"]
        assert all(r.source_page == 2 for r in records)
        assert summary.total_pages_processed == 1
        assert summary.failure_counts == {"navigation": 1}
        assert summary.termination_reason == TerminationReason.COMPLETED
        assert sessions.stopped
