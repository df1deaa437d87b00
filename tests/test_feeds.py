import json

import httpx
import pytest
from tenacity import wait_none

from catalog_etl import feeds
from catalog_etl.errors import FeedDownloadError, FeedFormatError
from catalog_etl.feeds import download_feed, load_feed_file, parse_feed_document, to_candidate, to_candidates
from catalog_etl.models import RetailerRole


def test_bare_array_feed():
    document = parse_feed_document([{"title": "Serum", "price": 99, "url": "https://a/serum"}, "junk"])
    assert len(document.items) == 1
    assert document.site_name is None
    assert document.role is None


def test_object_feed_with_site_header():
    document = parse_feed_document(
        {
            "siteName": "Plugin Boutique",
            "siteUrl": "https://www.pluginboutique.com",
            "siteLogo": "https://cdn/pb.png",
            "role": "spoke",
            "products": [{"title": "Serum", "price": 99, "url": "https://a/serum"}],
        }
    )
    assert document.site_name == "Plugin Boutique"
    assert document.site_url == "https://www.pluginboutique.com"
    assert document.role == RetailerRole.SPOKE
    assert len(document.items) == 1


@pytest.mark.parametrize("data", ["text", 42, {"products": "nope"}, {"role": "OWNER", "products": []}])
def test_unsupported_shapes(data):
    with pytest.raises(FeedFormatError):
        parse_feed_document(data)


def test_field_aliases():
    record = to_candidate(
        {
            "name": "Pro-Q 3",
            "link": "https://shop/pro-q-3",
            "sale_price": "$149.00",
            "msrp": "179",
            "image_url": "https://shop/pro-q-3.png",
            "developer": "FabFilter",
            "type": "EQ",
            "description": "Equalizer",
        }
    )
    assert record.title == "Pro-Q 3"
    assert record.url == "https://shop/pro-q-3"
    assert record.price == 149.0
    assert record.original_price == 179.0
    assert record.image == "https://shop/pro-q-3.png"
    assert record.brand == "FabFilter"
    assert record.category == "EQ"
    assert record.description == "Equalizer"


def test_primary_keys_take_precedence_over_aliases():
    record = to_candidate(
        {"title": "A", "name": "B", "url": "https://a", "link": "https://b", "price": 10, "sale_price": 5}
    )
    assert (record.title, record.url, record.price) == ("A", "https://a", 10.0)


def test_defaults_and_clamping():
    record = to_candidate({"title": "Serum", "url": "https://a/serum", "price": "99", "originalPrice": 50})
    assert record.original_price == 99.0
    assert record.brand == "Unknown"
    assert record.category == "Plugin"
    assert record.image is None


@pytest.mark.parametrize(
    "stock, expected",
    [
        ("false", False),
        ("False", False),
        ("0", False),
        ("no", False),
        ("Out of Stock", False),
        ("https://schema.org/OutOfStock", False),
        (False, False),
        (0, False),
        ("true", True),
        ("yes", True),
        ("InStock", True),
        (True, True),
        (1, True),
    ],
)
def test_stock_flag_strings(stock, expected):
    record = to_candidate({"title": "Serum", "url": "https://a/serum", "price": 99, "inStock": stock})
    assert record.in_stock is expected


def test_stock_flag_aliases_and_default():
    base = {"title": "Serum", "url": "https://a/serum", "price": 99}
    assert to_candidate(base).in_stock is True
    assert to_candidate({**base, "in_stock": "false"}).in_stock is False
    assert to_candidate({**base, "availability": "sold out"}).in_stock is False


@pytest.mark.parametrize(
    "item",
    [
        {"url": "https://a/x", "price": 10},
        {"title": "X", "price": 10},
        {"title": "X", "url": "https://a/x", "price": "call us"},
    ],
)
def test_unusable_items_skipped(item):
    assert to_candidate(item) is None


def test_to_candidates_drops_unusable():
    document = parse_feed_document(
        [{"title": "A", "url": "https://a", "price": 1}, {"title": "B", "price": 2}]
    )
    assert [c.title for c in to_candidates(document)] == ["A"]


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_download_feed_parses_json():
    payload = {"products": [{"title": "Serum", "price": 99, "url": "https://a/serum"}]}

    def handler(request):
        assert request.url == "https://feeds.example/pb.json"
        return httpx.Response(200, json=payload)

    document = download_feed("https://feeds.example/pb.json", client=_client(handler))
    assert len(document.items) == 1


def test_download_feed_http_error():
    with pytest.raises(FeedDownloadError):
        download_feed("https://feeds.example/x.json", client=_client(lambda r: httpx.Response(503)))


def test_download_feed_retries_transport_errors(monkeypatch):
    monkeypatch.setattr(feeds._get.retry, "wait", wait_none())
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=[])

    document = download_feed("https://feeds.example/flaky.json", client=_client(handler))
    assert document.items == []
    assert len(calls) == 3


def test_download_feed_invalid_json():
    with pytest.raises(FeedFormatError):
        download_feed(
            "https://feeds.example/x.json",
            client=_client(lambda r: httpx.Response(200, text="<html>maintenance</html>")),
        )


def test_load_feed_file(tmp_path):
    path = tmp_path / "feed.json"
    path.write_text(json.dumps({"siteName": "JRR", "role": "MASTER", "products": []}), encoding="utf-8")
    document = load_feed_file(path)
    assert document.site_name == "JRR"
    assert document.role == RetailerRole.MASTER

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(FeedFormatError):
        load_feed_file(broken)
