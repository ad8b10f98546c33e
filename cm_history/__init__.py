"""Windowed historical candle retrieval."""

from .base import ProviderQuery
from .client import ProviderRestClient
from .paginator import HistoricalPaginator, PageWindow, WindowBatch, paginate_by_time

__all__ = [
    "HistoricalPaginator",
    "PageWindow",
    "ProviderQuery",
    "ProviderRestClient",
    "WindowBatch",
    "paginate_by_time",
]
