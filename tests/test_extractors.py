import pytest
from bs4 import BeautifulSoup

from listings_etl.extractors import detail, search
from listings_etl.models import CoordinateSource


def test_search_card_fields(search_doc):
    card = search.listing_cards(search_doc)[0]

    assert search.extract_address(search_doc, card) == "世田谷区桜新町1丁目"
    assert search.extract_price_text(search_doc, card) == "4,980万円"
    assert search.extract_layout(search_doc, card) == "3LDK"
    assert search.extract_land_area_text(search_doc, card) == "120.50㎡"
    assert search.extract_build_area_text(search_doc, card) == "98.12㎡"
    assert search.extract_build_date(search_doc, card) == "2005年3月"
    assert search.extract_tags(search_doc, card) == ["駐車場", "南向き"]
    assert search.extract_listing_url(search_doc, card) == "https://www.shiawasehome-reuse.com/bukken/1234/"
    assert search.extract_recommend_text(search_doc, card) == ["駅まで徒歩5分"]
    assert search.extract_is_sold(search_doc, card) is False


def test_search_card_fallbacks(search_doc):
    card = search.listing_cards(search_doc)[1]

    assert search.extract_address(search_doc, card) == "目黒区中町2丁目"
    assert search.extract_price_text(search_doc, card) == "1億2000万円"
    assert search.extract_layout(search_doc, card) == "4SLDK"
    assert search.extract_land_area_text(search_doc, card) == "1,127.42㎡"
    assert search.extract_build_area_text(search_doc, card) is None
    assert search.extract_build_date(search_doc, card) is None
    assert search.extract_tags(search_doc, card) == []
    assert search.extract_recommend_text(search_doc, card) == []
    assert search.extract_is_sold(search_doc, card) is True


def test_extract_last_page(search_doc):
    assert search.extract_last_page(search_doc) == 7
    assert search.extract_last_page(BeautifulSoup("<p>none</p>", "html.parser")) == 1


def test_detail_fields(detail_doc):
    assert detail.extract_detail_tags(detail_doc) == [
        "リフォーム済",
        "駐車場2台",
        "中古戸建",
        "世田谷区",
        "南向き",
    ]
    assert detail.extract_listing_images(detail_doc) == [
        "https://img.example/1.jpg",
        "https://img.example/2.jpg",
    ]
    assert detail.extract_recommended_text(detail_doc) == ["陽当たり良好", "閑静な住宅街"]
    assert detail.extract_about_property(detail_doc) == "所在地 世田谷区"
    assert detail.extract_detail_is_sold(detail_doc) is False


def test_detail_coordinates_from_iframe(detail_doc):
    assert detail.extract_latitude(detail_doc) == pytest.approx(35.6329)
    assert detail.extract_longitude(detail_doc) == pytest.approx(139.6503)
    assert detail.extract_lat_long_string(detail_doc) == "35.6329,139.6503"
    assert detail.find_coordinates(detail_doc).source is CoordinateSource.DOM


@pytest.mark.parametrize(
    "html",
    [
        '<a href="https://maps.google.com/maps?ll=35.1,139.2&z=15">地図</a>',
        "<script>var ju = '35.1,139.2';</script>",
        '<div data-lat="35.1" data-lng="139.2"></div>',
        '<meta name="geo.position" content="35.1;139.2">',
    ],
)
def test_coordinate_fallback_strategies(html):
    coords = detail.find_coordinates(BeautifulSoup(html, "html.parser"))
    assert (coords.lat, coords.long) == (pytest.approx(35.1), pytest.approx(139.2))


def test_coordinates_reject_invalid_values():
    doc = BeautifulSoup(
        '<div data-lat="0" data-lng="0"></div><meta name="geo.position" content="95.0;10.0">',
        "html.parser",
    )
    assert detail.find_coordinates(doc) is None
    assert detail.extract_lat_long_string(doc) is None


def test_detail_extractors_tolerate_empty_page():
    doc = BeautifulSoup("<html></html>", "html.parser")
    assert detail.extract_detail_tags(doc) == []
    assert detail.extract_listing_images(doc) == []
    assert detail.extract_recommended_text(doc) == []
    assert detail.extract_about_property(doc) is None
    assert detail.extract_latitude(doc) is None
