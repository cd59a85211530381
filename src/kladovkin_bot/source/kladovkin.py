import logging
import re
from typing import List, Optional

import requests
from bs4 import BeautifulSoup, Tag

from ..errors import FetchError, ParseError
from ..models import UnitRecord
from .base import BaseSource

logger = logging.getLogger(__name__)

_PRICE_JUNK = re.compile(r"[^\d,.]")
_THOUSANDS_DOTS = re.compile(r"\d{1,3}(\.\d{3})+")
_FALSE_VALUES = {"0", "false", "no", "нет"}


def parse_price(text: str) -> float:
    """Normalize '3 500,50 ₽' style prices to float"""
    raw = _PRICE_JUNK.sub("", text.replace("\xa0", "")).strip(".,")
    if not raw:
        raise ValueError(f"no price in {text!r}")
    # Dots before groups of exactly three digits separate thousands: "12.500"
    if "," not in raw and _THOUSANDS_DOTS.fullmatch(raw):
        raw = raw.replace(".", "")
    cleaned = raw.replace(",", ".")
    # Thousands separators as dots: keep only the last one as decimal point
    if cleaned.count(".") > 1:
        head, _, tail = cleaned.rpartition(".")
        cleaned = head.replace(".", "") + "." + tail
    return float(cleaned)


def _cell_text(row: Tag, css_class: str) -> str:
    cell = row.find(class_=css_class)
    return cell.get_text(" ", strip=True) if cell else ""


class KladovkinSource(BaseSource):
    """Storage rental listing page source"""

    DEFAULT_USER_AGENT = "KladovkinBot/1.0"

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": self.DEFAULT_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml",
            "Accept-Language": "ru-RU,ru;q=0.9",
        })

    def get_source_name(self) -> str:
        return "Kladovkin HTML"

    def fetch(self) -> str:
        """Fetch the listing page via HTTP"""
        try:
            response = self.session.get(self.url, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(f"GET {self.url} failed: {e}") from e
        if not 200 <= response.status_code < 300:
            raise FetchError(f"GET {self.url} returned HTTP {response.status_code}")
        return response.text

    def parse(self, document: str) -> List[UnitRecord]:
        """Parse the listing page.

        Each storage is a ``div.storage`` block with the city in ``data-city``
        (or the nearest preceding ``h2.city``), the name in ``.storage-name``
        and one ``tr.unit`` per unit size. Broken unit rows are skipped.
        """
        soup = BeautifulSoup(document, "html.parser")
        storages = soup.select("div.storage")
        if not storages:
            raise ParseError("no storage blocks found on the page")

        records: List[UnitRecord] = []
        for storage in storages:
            city = self._storage_city(storage)
            name_tag = storage.find(class_="storage-name")
            storage_name = name_tag.get_text(" ", strip=True) if name_tag else ""
            if not city or not storage_name:
                logger.warning(f"⚠️ Skipping storage block without city or name: city={city!r} name={storage_name!r}")
                continue

            for row in storage.select("tr.unit"):
                try:
                    records.append(self._parse_unit(row, city, storage_name))
                except ValueError as e:
                    logger.warning(f"⚠️ Skipping unit row in {city}/{storage_name}: {e}")

        return records

    def _storage_city(self, storage: Tag) -> str:
        city = storage.get("data-city")
        if city:
            return city.strip()
        heading = storage.find_previous("h2", class_="city")
        return heading.get_text(" ", strip=True) if heading else ""

    def _parse_unit(self, row: Tag, city: str, storage_name: str) -> UnitRecord:
        size = _cell_text(row, "size")
        if not size:
            raise ValueError("unit row without size")
        return UnitRecord(
            city=city,
            storage_name=storage_name,
            size=size,
            dimension=_cell_text(row, "dimension"),
            price=parse_price(_cell_text(row, "price")),
            available=self._parse_available(row),
            description=_cell_text(row, "description"),
        )

    def _parse_available(self, row: Tag) -> bool:
        flag = row.get("data-available")
        if flag is not None:
            return flag.strip().lower() not in _FALSE_VALUES
        return "sold-out" not in (row.get("class") or [])

    def close(self) -> None:
        self.session.close()
