import json
import logging

import pytest

from catalog_etl.config import load_retailer_table
from catalog_etl.extraction import ExtractionEngine, RetailerStrategy


@pytest.fixture(scope="module")
def engine():
    return ExtractionEngine.from_table(load_retailer_table())


def _json_ld(data):
    return f'<script type="application/ld+json">{json.dumps(data)}</script>'


def test_structured_data_first(engine):
    html = (
        "<html><head>"
        + _json_ld(
            {
                "@context": "https://schema.org",
                "@graph": [
                    {"@type": "BreadcrumbList"},
                    {
                        "@type": "Product",
                        "name": "Pro-Q 3",
                        "image": ["/img/pro-q-3.png"],
                        "brand": {"@type": "Brand", "name": "FabFilter"},
                        "offers": {
                            "@type": "Offer",
                            "price": "149.00",
                            "priceCurrency": "EUR",
                            "availability": "https://schema.org/InStock",
                        },
                    },
                ],
            }
        )
        + '<meta property="og:title" content="Something else">'
        + '<meta property="product:price:amount" content="999">'
        + "</head><body></body></html>"
    )
    record = engine.extract(html, "https://www.example-shop.com/p/pro-q-3")

    assert record.title == "Pro-Q 3"
    assert record.price == 149.0
    assert record.original_price == 149.0
    assert record.currency == "EUR"
    assert record.in_stock is True
    assert record.brand == "FabFilter"
    assert record.image == "https://www.example-shop.com/img/pro-q-3.png"
    assert record.category == "Plugin"


def test_meta_tags_fill_missing_fields(engine):
    html = """
    <html><head>
      <meta property="og:title" content="Valhalla VintageVerb">
      <meta property="og:image" content="https://cdn.example.com/vv.jpg">
      <meta name="twitter:data1" content="$50.00">
      <meta property="product:original_price:amount" content="70">
    </head><body><h1>Ignored heading</h1></body></html>
    """
    record = engine.extract(html, "https://www.sweetwater.com/store/detail/VintageVerb")

    assert record.title == "Valhalla VintageVerb"
    assert record.price == 50.0
    assert record.original_price == 70.0
    assert record.image == "https://cdn.example.com/vv.jpg"


def test_selectors_as_last_resort(engine):
    html = """
    <html><body>
      <h1 data-testid="product-name-123">Kontakt 7</h1>
      <span class="text-right text-gray-900 text-base font-semibold">$1,234.50 (20% off)</span>
      <span class="line-through">$1,500.00</span>
      <ul class="breadcrumb"><li>Home</li><li>Products</li><li>Sampler</li></ul>
    </body></html>
    """
    record = engine.extract(html, "https://www.pluginboutique.com/product/kontakt-7")

    assert record.title == "Kontakt 7"
    assert record.price == pytest.approx(1234.50)
    assert record.original_price == pytest.approx(1500.0)
    assert record.category == "Sampler"


def test_original_price_below_sale_is_clamped(engine):
    html = """
    <html><head>
      <meta property="og:title" content="Ozone 11">
      <meta property="product:price:amount" content="249">
      <meta property="product:original_price:amount" content="199">
    </head></html>
    """
    record = engine.extract(html, "https://example.org/ozone")
    assert record.original_price == 249.0


def test_title_by_brand_split(engine):
    html = """
    <html><body>
      <h1 class="product_title">Serum by Xfer Records</h1>
      <div class="productpricecustom">
        <del><span class="woocommerce-Price-amount">$189.00</span></del>
        <ins><span class="woocommerce-Price-amount">$99.00</span></ins>
      </div>
      <div class="woocommerce-product-details__short-description"><p>Wavetable synth.</p></div>
    </body></html>
    """
    record = engine.extract(html, "https://audioplugin.deals/product/serum/")

    assert record.title == "Serum"
    assert record.brand == "Xfer Records"
    assert record.price == 99.0
    assert record.original_price == 189.0
    assert record.description == "Wavetable synth."


def test_miss_returns_none_and_logs_snippet(engine, caplog):
    caplog.set_level(logging.INFO)
    html = "<html><head><title>Out of stock</title></head><body>" + "x" * 1000 + "</body></html>"

    assert engine.extract(html, "https://example.org/empty") is None
    assert "Failed to parse product from https://example.org/empty" in caplog.text
    snippet_line = next(r.getMessage() for r in caplog.records if r.getMessage().startswith("HTML snippet"))
    assert len(snippet_line) <= len("HTML snippet: ...") + 500


def test_zero_price_is_a_miss(engine):
    html = '<html><head><meta property="og:title" content="Free Thing"></head><body><span class="price">Free</span></body></html>'
    assert engine.extract(html, "https://example.org/free") is None


def test_malformed_json_ld_falls_through(engine):
    html = (
        '<html><head><script type="application/ld+json">{not json</script>'
        '<meta property="og:title" content="Decapitator">'
        '<meta property="product:price:amount" content="29.99">'
        "</head></html>"
    )
    record = engine.extract(html, "https://example.org/decapitator")
    assert record.title == "Decapitator"
    assert record.price == pytest.approx(29.99)


def test_unknown_strategy_rejected():
    with pytest.raises(ValueError):
        RetailerStrategy.from_entry("example.org", {"strategies": ["xpath"]}, {})


def test_strategy_lookup_by_domain(engine):
    assert engine.strategy_for("https://www.audioplugin.deals/x").split_brand_from_title is True
    assert engine.strategy_for("https://nowhere.example/").domain == "*"
