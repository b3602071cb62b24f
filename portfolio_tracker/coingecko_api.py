from dataclasses import dataclass, field
from dacite import from_dict
from typing import Optional, Dict, List, Any

import logging
import requests
import pandas as pd

logger = logging.getLogger(__name__)

@dataclass
class CoinGeckoEndpoint:
    api: str
    endpoint: str

@dataclass
class CoinGeckoQueryState:
    api: Optional[str]
    asset_ids: List[str] = field(default_factory=list)
    days: Optional[int] = None
    query: Optional[str] = None

@dataclass
class SimplePriceParameters:
    vs_currency: str
    include_24hr_change: str

@dataclass
class MarketChartParameters:
    vs_currency: str
    interval: str
    default_days: int

@dataclass
class APIBaseParameters:
    simpleprice: SimplePriceParameters
    marketchart: MarketChartParameters

@dataclass
class CoinGeckoSecrets:
    base_url: str
    parameters: APIBaseParameters
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0

class CoinGeckoAPI:

    API_KEY_SIMPLE_PRICE = "simpleprice"
    API_KEY_MARKET_CHART = "marketchart"
    API_KEY_SEARCH = "search"

    API_KEY_HEADER = "x-cg-demo-api-key"

    API_ENDPOINTS: dict[str, CoinGeckoEndpoint] = {
        API_KEY_SIMPLE_PRICE: CoinGeckoEndpoint(API_KEY_SIMPLE_PRICE, "simple/price"),
        API_KEY_MARKET_CHART: CoinGeckoEndpoint(API_KEY_MARKET_CHART, "market_chart"),
        API_KEY_SEARCH: CoinGeckoEndpoint(API_KEY_SEARCH, "search")
    }

    def __init__(self, state: dict, secrets: dict) -> None:
        self.parse_request(state, secrets)

    def parse_request(self, state: dict, secrets: dict):
        self.original_state: CoinGeckoQueryState = from_dict(data_class=CoinGeckoQueryState, data=state)
        self.secrets: CoinGeckoSecrets = from_dict(data_class=CoinGeckoSecrets, data=secrets)

    @property
    def api(self) -> CoinGeckoEndpoint:
        if self.original_state.api is None:
            return self.API_ENDPOINTS[self.API_KEY_SIMPLE_PRICE]
        return self.API_ENDPOINTS[self.original_state.api]

    def build_api(self) -> str:
        api = self.api

        if api.api == self.API_KEY_SIMPLE_PRICE:
            ids = ",".join(self.original_state.asset_ids)
            api_endpoint = (f"{self.secrets.base_url}"
                            f"simple/price?ids={ids}"
                            f"&vs_currencies={self.secrets.parameters.simpleprice.vs_currency}"
                            f"&include_24hr_change={self.secrets.parameters.simpleprice.include_24hr_change}"
                            )

        elif api.api == self.API_KEY_MARKET_CHART:
            self.current_asset_id = self.original_state.asset_ids[0]
            days = self.original_state.days or self.secrets.parameters.marketchart.default_days

            api_endpoint = (f"{self.secrets.base_url}"
                            f"coins/{self.current_asset_id}/market_chart"
                            f"?vs_currency={self.secrets.parameters.marketchart.vs_currency}"
                            f"&days={days}"
                            f"&interval={self.secrets.parameters.marketchart.interval}"
                            )

        elif api.api == self.API_KEY_SEARCH:
            query = requests.utils.quote(self.original_state.query or "")
            api_endpoint = f"{self.secrets.base_url}search?query={query}"

        return api_endpoint

    def make_request(self, endpoint: str) -> Optional[requests.Response]:
        """Send the request; a connection failure or timeout is logged and yields None."""
        headers = {"accept": "application/json"}
        if self.secrets.api_key:
            headers[self.API_KEY_HEADER] = self.secrets.api_key

        try:
            return requests.get(endpoint, headers=headers, timeout=self.secrets.timeout_seconds)
        except requests.RequestException as e:
            logger.error(f"CoinGecko request to {self.api.endpoint} failed: {e}")
            return None

    def build_response(self, response: Optional[requests.Response]) -> Optional[Dict[str, Any]]:
        """
        Parse a response into {"type": <api>, ...}, or None when unusable.

        simpleprice → {"type": "simpleprice", "quotes": {asset_id: {"price", "change_24h_percent"}}}
        marketchart → {"type": "marketchart", "asset_id": ..., "history": [{"date", "price"}, ...]}
        search      → {"type": "search", "coins": [{"id", "name", "symbol", "thumb", "market_cap_rank"}, ...]}
        """
        if response is None:
            return None

        if response.status_code != 200:
            logger.error(f"CoinGecko request failed with status {response.status_code}")
            return None

        try:
            payload = response.json()
        except ValueError as e:
            logger.error(f"CoinGecko returned invalid JSON: {e}")
            return None

        api = self.api

        if api.api == self.API_KEY_SIMPLE_PRICE:
            return {"type": api.api, "quotes": self._parse_simple_price(payload)}

        if api.api == self.API_KEY_SEARCH:
            return {"type": api.api, "coins": self._parse_search(payload)}

        return {
            "type": api.api,
            "asset_id": self.original_state.asset_ids[0],
            "history": self._parse_market_chart(payload)
        }

    def _parse_simple_price(self, payload: Dict[str, Any]) -> Dict[str, Dict[str, float]]:
        currency = self.secrets.parameters.simpleprice.vs_currency
        quotes = {}

        # Unknown ids are simply absent from the payload
        for asset_id, row in payload.items():
            if not isinstance(row, dict) or row.get(currency) is None:
                logger.warning(f"No {currency} price returned for {asset_id}")
                continue
            quotes[asset_id] = {
                "price": row[currency],
                "change_24h_percent": row.get(f"{currency}_24h_change") or 0.0
            }

        return quotes

    def _parse_market_chart(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        prices = payload.get("prices") or []
        if not prices:
            return []

        df = pd.DataFrame(prices, columns=["timestamp_ms", "price"])
        df["price"] = pd.to_numeric(df["price"], errors="coerce")

        # NaN compares False on both sides, so null prices are dropped too
        usable = df["price"].ge(0) & df["price"].lt(float("inf"))
        if not usable.all():
            logger.warning(f"Dropped {int((~usable).sum())} unusable price points for {self.original_state.asset_ids[0]}")
            df = df[usable].copy()

        df["date"] = pd.to_datetime(df["timestamp_ms"], unit="ms", utc=True).dt.strftime("%Y-%m-%d")

        return [
            {"date": row.date, "price": float(row.price)}
            for row in df.itertuples(index=False)
        ]

    def _parse_search(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            {
                "id": coin["id"],
                "name": coin.get("name"),
                "symbol": coin.get("symbol"),
                "thumb": coin.get("thumb"),
                "market_cap_rank": coin.get("market_cap_rank")
            }
            for coin in payload.get("coins") or []
            if isinstance(coin, dict) and coin.get("id")
        ]
