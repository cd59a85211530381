"""
Тесты парсера страницы со списком кладовок.
"""

import pytest
import requests

from kladovkin_bot.errors import FetchError, ParseError
from kladovkin_bot.source import KladovkinSource
from kladovkin_bot.source.kladovkin import parse_price

PAGE = """
<html><body>
<h2 class="city">Москва</h2>
<div class="storage">
  <h3 class="storage-name">Кладовкин на Ленинском</h3>
  <table class="units">
    <tr class="unit" data-available="true">
      <td class="size">S</td><td class="dimension">1x1x2</td>
      <td class="price">3&nbsp;500 ₽</td><td class="description">Тёплый бокс</td>
    </tr>
    <tr class="unit" data-available="false">
      <td class="size">M</td><td class="dimension">2x1x2</td>
      <td class="price">5 200,50 руб.</td><td class="description"></td>
    </tr>
    <tr class="unit sold-out">
      <td class="size">L</td><td class="price">8 000 ₽</td>
    </tr>
    <tr class="unit">
      <td class="size">XL</td><td class="price">по запросу</td>
    </tr>
  </table>
</div>
<div class="storage" data-city="Санкт-Петербург">
  <h3 class="storage-name">Кладовкин на Невском</h3>
  <table class="units">
    <tr class="unit"><td class="size">S</td><td class="price">2 900 ₽</td></tr>
    <tr class="unit"><td class="price">1 000 ₽</td></tr>
  </table>
</div>
</body></html>
"""


class StubResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class StubSession:
    def __init__(self, response=None, error=None):
        self.headers = {}
        self.response = response
        self.error = error
        self.calls = []
        self.closed = False

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        if self.error:
            raise self.error
        return self.response

    def close(self):
        self.closed = True


@pytest.fixture
def source():
    return KladovkinSource("https://example.test/", session=StubSession())


def test_parse_units(source):
    records = source.parse(PAGE)

    assert [(r.city, r.storage_name, r.size) for r in records] == [
        ("Москва", "Кладовкин на Ленинском", "S"),
        ("Москва", "Кладовкин на Ленинском", "M"),
        ("Москва", "Кладовкин на Ленинском", "L"),
        ("Санкт-Петербург", "Кладовкин на Невском", "S"),
    ]
    small = records[0]
    assert small.dimension == "1x1x2"
    assert small.price == 3500.0
    assert small.description == "Тёплый бокс"


def test_parse_availability(source):
    available = {r.size: r.available for r in source.parse(PAGE) if r.city == "Москва"}

    assert available == {"S": True, "M": False, "L": False}


def test_parse_without_storages_fails(source):
    with pytest.raises(ParseError):
        source.parse("<html><body><p>Технические работы</p></body></html>")


@pytest.mark.parametrize("text, expected", [
    ("3 500 ₽", 3500.0),
    ("3\xa0500 ₽", 3500.0),
    ("5 200,50 руб.", 5200.5),
    ("1.200.000,00", 1200000.0),
    ("990", 990.0),
    ("12.500 ₽", 12500.0),
    ("1.200.000 руб.", 1200000.0),
    ("12.50 ₽", 12.5),
    ("1500.5", 1500.5),
])
def test_parse_price(text, expected):
    assert parse_price(text) == expected


def test_parse_price_rejects_empty():
    with pytest.raises(ValueError):
        parse_price("по запросу")


def test_fetch_returns_body():
    session = StubSession(StubResponse(200, PAGE))
    source = KladovkinSource("https://example.test/", timeout=7.5, session=session)

    assert source.fetch() == PAGE
    assert session.calls == [("https://example.test/", 7.5)]
    assert session.headers["User-Agent"] == KladovkinSource.DEFAULT_USER_AGENT


def test_fetch_non_2xx_fails():
    source = KladovkinSource("https://example.test/", session=StubSession(StubResponse(503)))

    with pytest.raises(FetchError):
        source.fetch()


def test_fetch_network_error_fails():
    session = StubSession(error=requests.ConnectionError("connection refused"))
    source = KladovkinSource("https://example.test/", session=session)

    with pytest.raises(FetchError):
        source.fetch()


def test_close_closes_session():
    session = StubSession()
    KladovkinSource("https://example.test/", session=session).close()

    assert session.closed
