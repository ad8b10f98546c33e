from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

import requests

from cm_core.errors import BackfillError, ProviderConnectionError
from cm_core.types import CandleType, HistoricRange
from cm_history.base import ProviderQuery

_ASSETS_PATH = "/v1/assets"
_RANGE_PATH = "/v1/{type}/range"
_CANDLES_PATH = "/v1/{type}/candles"


class ProviderRestClient(ProviderQuery):
    name = "rest"

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_s: float = 30.0,
        all_assets: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = float(timeout_s)
        self.all_assets = bool(all_assets)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None, allow_missing: bool = False) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.get(url, params=params, headers=self._headers(), timeout=self.timeout_s)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise ProviderConnectionError(f"provider unreachable at {url}: {exc}") from exc
        if allow_missing and resp.status_code in (204, 404):
            return None
        try:
            resp.raise_for_status()
            if allow_missing and not resp.content:
                return None
            return resp.json()
        except (requests.HTTPError, ValueError) as exc:
            raise BackfillError(f"GET {url} failed: {exc}") from exc

    def supports_all_assets(self) -> bool:
        return self.all_assets

    def assets(self) -> Set[str]:
        payload = self._get(_ASSETS_PATH)
        if isinstance(payload, Mapping):
            payload = payload.get("assets", [])
        return {str(a) for a in payload or []}

    def historic_range(self, candle_type: CandleType) -> Optional[HistoricRange]:
        payload = self._get(_RANGE_PATH.format(type=candle_type.value), allow_missing=True)
        if not payload or payload.get("first") is None or payload.get("last") is None:
            return None
        return HistoricRange(first=int(payload["first"]), last=int(payload["last"]))

    def historic_window(
        self,
        candle_type: CandleType,
        asset: Optional[str],
        start_s: int,
        end_s: int,
        resolution: str,
    ) -> Iterable[Mapping[str, Any]]:
        params: Dict[str, Any] = {
            "from": int(start_s),
            "to": int(end_s),
            "resolution": resolution,
        }
        if asset is not None:
            params["asset"] = asset
        payload = self._get(_CANDLES_PATH.format(type=candle_type.value), params=params)
        if isinstance(payload, Mapping):
            payload = payload.get("candles", [])
        candles: List[Mapping[str, Any]] = [row for row in payload or [] if isinstance(row, Mapping)]
        return candles
