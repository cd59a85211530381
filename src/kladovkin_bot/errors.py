class KladovkinError(Exception):
    """Base error for the bot"""


class ConfigError(KladovkinError):
    """Configuration is missing or invalid"""


class StoreError(KladovkinError):
    """Persistence operation failed"""


class ScrapeError(KladovkinError):
    """Whole scrape cycle failed"""


class FetchError(ScrapeError):
    """Listing page could not be downloaded"""


class ParseError(ScrapeError):
    """Listing page could not be parsed"""
