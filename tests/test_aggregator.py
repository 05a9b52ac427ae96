import threading
from datetime import datetime, timedelta, timezone

import pytest

from rss_ingest import aggregator as aggregator_module
from rss_ingest.aggregator import Aggregator, AggregatorConfig
from rss_ingest.fetcher import FeedFetcher
from rss_ingest.models import CycleReport, FeedState
from rss_ingest.persistence import StorageError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
FEED_URL = "https://example.com/feed.xml"


class Clock:
    def __init__(self, start):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def cancel_event():
    return threading.Event()


@pytest.fixture
def build(registry, session_factory, http, fetch_config, clock, cancel_event):
    def factory(concurrency=4):
        fetcher = FeedFetcher(
            fetch_config, session=http, sleep=lambda _: None, cancel_event=cancel_event
        )
        return Aggregator(
            registry,
            fetcher,
            session_factory,
            AggregatorConfig(concurrency=concurrency, default_interval_hours=1),
            cancel_event=cancel_event,
            clock=clock,
        )

    return factory


def _two_items(feed_xml):
    return feed_xml.rss(
        feed_xml.item(guid="g1", link="https://example.com/1", title="One"),
        feed_xml.item(guid="g2", link="https://example.com/2", title="Two"),
    )


def test_refetching_unchanged_feed_skips_entries(
    build, registry, http, make_response, feed_xml, clock
):
    feed_id = registry.register(FEED_URL)
    http.add(FEED_URL, make_response(200, _two_items(feed_xml)))
    aggregator = build()

    first = aggregator.run_cycle()
    clock.advance(hours=2)
    second = aggregator.run_cycle()

    assert (first.inserted, first.updated, first.skipped) == (2, 0, 0)
    assert (second.inserted, second.updated, second.skipped) == (0, 0, 2)
    assert registry.entry_count(feed_id) == 2
    assert first.attempted == first.succeeded == 1


def test_not_modified_keeps_entries_and_validators(
    build, registry, http, make_response, feed_xml, clock
):
    feed_id = registry.register(FEED_URL)
    http.add(
        FEED_URL,
        make_response(200, _two_items(feed_xml), headers={"ETag": '"v1"'}),
        make_response(304),
    )
    aggregator = build()
    aggregator.run_cycle()
    clock.advance(hours=2)

    report = aggregator.run_cycle()

    assert report.not_modified == 1
    assert report.succeeded == 1
    assert registry.entry_count(feed_id) == 2
    assert http.calls[-1].headers.get("If-None-Match") == '"v1"'
    feed = registry.get(feed_id)
    assert feed.etag == '"v1"'
    assert feed.last_successful_fetch == clock.current
    assert feed.error_count == 0


def test_feed_not_due_is_not_fetched(build, registry, http, clock):
    feed_id = registry.register(FEED_URL)
    registry.record_success(feed_id, None, None, NOW - timedelta(minutes=5))

    report = build().run_cycle()

    assert report == CycleReport()
    assert http.calls == []


def test_one_failing_feed_does_not_affect_others(
    build, registry, http, make_response, feed_xml
):
    good = registry.register(FEED_URL)
    bad = registry.register("https://broken.example.org/feed")
    http.add(FEED_URL, make_response(200, _two_items(feed_xml)))
    http.add("https://broken.example.org/feed", make_response(500))

    report = build().run_cycle()

    assert report.attempted == 2
    assert report.succeeded == 1
    assert report.failed == 1
    assert report.inserted == 2
    assert registry.get(good).error_count == 0
    broken = registry.get(bad)
    assert broken.error_count == 1
    assert broken.last_error.startswith("http_status")
    assert broken.last_successful_fetch is None


def test_parse_failure_is_recorded(build, registry, http, make_response):
    feed_id = registry.register(FEED_URL)
    http.add(FEED_URL, make_response(200, b"<html><body>moved</body></html>"))

    report = build().run_cycle()

    assert report.failed == 1
    assert registry.get(feed_id).last_error.startswith("invalid_format")


def test_storage_failure_fails_the_feed(
    build, registry, http, make_response, feed_xml, monkeypatch
):
    feed_id = registry.register(FEED_URL)
    http.add(FEED_URL, make_response(200, _two_items(feed_xml), headers={"ETag": '"v1"'}))

    def broken_upsert(*args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(aggregator_module, "upsert_entries", broken_upsert)

    report = build().run_cycle()

    assert report.failed == 1
    feed = registry.get(feed_id)
    assert feed.error_count == 1
    assert feed.etag is None
    assert feed.last_error == "disk full"


def test_unexpected_errors_are_contained(build, registry, http):
    feed_id = registry.register(FEED_URL)
    http.add(FEED_URL, RuntimeError("boom"))

    report = build().run_cycle()

    assert report.failed == 1
    assert registry.get(feed_id).last_error == "unexpected error: boom"


def test_feed_metadata_is_filled_from_document(build, registry, http, make_response, feed_xml):
    feed_id = registry.register(FEED_URL)
    http.add(FEED_URL, make_response(200, feed_xml.rss(title="Discovered title")))

    build().run_cycle()

    feed = registry.get(feed_id)
    assert feed.title == "Discovered title"
    assert feed.description == "An example feed"


def test_feeds_are_processed_concurrently(build, registry, http, make_response, feed_xml):
    urls = [f"https://site{n}.example.com/feed" for n in range(3)]
    barrier = threading.Barrier(len(urls), timeout=10)

    def respond(url, headers):
        barrier.wait()
        return make_response(
            200, feed_xml.rss(feed_xml.item(guid=url, link=f"{url}/post", title="Post"))
        )

    for url in urls:
        registry.register(url)
        http.add(url, respond)

    report = build(concurrency=3).run_cycle()

    assert report.succeeded == 3
    assert report.inserted == 3


def test_cancel_stops_cycle_without_recording(
    build, registry, http, make_response, feed_xml
):
    urls = [f"https://site{n}.example.com/feed" for n in range(3)]
    for url in urls:
        registry.register(url)
    aggregator = build(concurrency=1)

    def cancel_then_respond(url, headers):
        aggregator.cancel()
        return make_response(200, _two_items(feed_xml))

    for url in urls:
        http.add(url, cancel_then_respond)

    report = aggregator.run_cycle()

    assert report.cancelled is True
    assert report.attempted == 0
    assert len(http.calls) == 1
    for feed in registry.list_feeds():
        assert feed.last_fetch_time is None
        assert registry.entry_count(feed.id) == 0


def test_process_feed_reports_final_state(build, registry, http, make_response, feed_xml):
    feed_id = registry.register(FEED_URL)
    http.add(FEED_URL, make_response(200, _two_items(feed_xml)))

    result = build().process_feed(registry.get(feed_id))

    assert result.state == FeedState.DONE
    assert result.report.inserted == 2
    assert result.error is None


def test_concurrency_must_be_positive(registry, session_factory):
    with pytest.raises(ValueError):
        Aggregator(registry, FeedFetcher(), session_factory, AggregatorConfig(concurrency=0))
