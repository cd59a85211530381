import asyncio
import logging
from dataclasses import dataclass

from .errors import ParseError, ScrapeError
from .source import BaseSource
from .store import UnitCatalog

logger = logging.getLogger(__name__)


@dataclass
class ScrapeResult:
    """Counters of one scrape cycle"""
    total: int = 0
    saved: int = 0
    failed: int = 0


class Scraper:
    """Refreshes the unit catalog from the listing source"""

    def __init__(self, source: BaseSource, catalog: UnitCatalog):
        self.source = source
        self.catalog = catalog

    def scrape(self) -> ScrapeResult:
        """Fetch, parse and upsert one listing snapshot (blocking).

        Raises ScrapeError when the page cannot be fetched or parsed. A unit
        that fails to save is logged and the remaining units are still saved.
        """
        document = self.source.fetch()
        try:
            records = self.source.parse(document)
        except ScrapeError:
            raise
        except Exception as e:
            raise ParseError(f"cannot parse listing page: {e}") from e

        result = ScrapeResult(total=len(records))
        for record in records:
            try:
                self.catalog.upsert_unit(record)
                result.saved += 1
            except Exception as e:
                result.failed += 1
                logger.error(
                    f"❌ Failed to save unit {record.city}/{record.storage_name}/{record.size}: {e}"
                )
        return result

    async def run_cycle(self) -> ScrapeResult:
        """Run one scrape cycle without blocking the event loop"""
        logger.info(f"📡 Scraping units ({self.source.get_source_name()})...")
        loop = asyncio.get_running_loop()
        # requests and sqlite are blocking, run them in the thread pool
        result = await loop.run_in_executor(None, self.scrape)
        logger.info(
            f"✅ Scrape done: {result.total} units, saved {result.saved}, failed {result.failed}"
        )
        return result
