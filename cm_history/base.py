from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, Optional, Set

from cm_core.types import CandleType, HistoricRange


class ProviderQuery(ABC):
    """Provider-agnostic historical candle interface."""

    @abstractmethod
    def assets(self) -> Set[str]:
        """Return the asset symbols the provider tracks."""

    @abstractmethod
    def historic_range(self, candle_type: CandleType) -> Optional[HistoricRange]:
        """Return the first/last bucket starts available, or None if empty."""

    @abstractmethod
    def historic_window(
        self,
        candle_type: CandleType,
        asset: Optional[str],
        start_s: int,
        end_s: int,
        resolution: str,
    ) -> Iterable[Mapping[str, Any]]:
        """Return raw candles with start_s <= bucket start < end_s, ascending.

        ``asset=None`` asks for every asset in one query.
        """

    def supports_all_assets(self) -> bool:
        """Whether ``historic_window`` accepts ``asset=None``."""
        return False
