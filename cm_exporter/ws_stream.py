import asyncio
import contextlib
import json
import logging
import os
import ssl
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence

from websockets.asyncio.client import connect as ws_connect  # type: ignore
from websockets.exceptions import ConnectionClosed  # type: ignore

from cm_core.errors import ProviderConnectionError, StreamClosedError
from cm_core.types import CandleType


class CandleStream:
    """Websocket subscription that yields raw sentiment candles.

    The stream does not reconnect: when the socket closes or errors,
    ``subscribe()`` raises StreamClosedError and the caller decides what to do.
    """

    def __init__(
        self,
        ws_url: str,
        candle_type: CandleType,
        resolution: str,
        assets: Optional[Sequence[str]] = None,
        token: Optional[str] = None,
        on_status: Optional[Callable[[str, dict], None]] = None,
        insecure_tls: bool = False,
        open_timeout_s: float = 60.0,
        ping_interval_s: int = 20,
        ping_timeout_s: int = 60,
        recv_poll_timeout_s: float = 5.0,
        max_queue: int = 256,
    ):
        self.ws_url = ws_url
        self.candle_type = candle_type
        self.resolution = resolution
        self.assets = list(assets) if assets else []
        self.token = token
        self.on_status_cb = on_status
        self.insecure_tls = insecure_tls

        self.open_timeout_s = max(1.0, float(open_timeout_s))
        self.ping_interval_s = max(0, int(ping_interval_s))
        self.ping_timeout_s = max(1, int(ping_timeout_s))
        self.recv_poll_timeout_s = max(0.01, float(recv_poll_timeout_s))
        self.max_queue = max(1, int(max_queue))

        self._ws = None
        self._stop = False
        self._log = logging.getLogger("exporter.websocket")

    def _emit_status(self, typ: str, details: dict) -> None:
        try:
            if self.on_status_cb:
                self.on_status_cb(typ, details)
        except Exception:
            self._log.exception("Status callback error (type=%s)", typ)

    def subscribe_message(self) -> Dict[str, Any]:
        return {
            "op": "subscribe",
            "type": self.candle_type.value,
            "resolution": self.resolution,
            "assets": self.assets,
        }

    def decode(self, msg: Any) -> List[Mapping[str, Any]]:
        """Candles carried by one frame; control frames decode to nothing."""
        try:
            payload = json.loads(msg)
        except (TypeError, ValueError):
            self._log.exception("Failed to parse WS message")
            return []

        if isinstance(payload, list):
            return [c for c in payload if isinstance(c, Mapping)]
        if not isinstance(payload, Mapping):
            return []
        if isinstance(payload.get("candle"), Mapping):
            return [payload["candle"]]
        if isinstance(payload.get("candles"), list):
            return [c for c in payload["candles"] if isinstance(c, Mapping)]
        if "asset" in payload:
            return [payload]
        if payload.get("error"):
            self._emit_status("ws_server_error", {"error": payload.get("error")})
        return []

    async def _ping_loop(self) -> None:
        if self.ping_interval_s <= 0 or self._ws is None:
            return
        while not self._stop:
            await asyncio.sleep(self.ping_interval_s)
            if self._stop or self._ws is None:
                return
            try:
                payload = os.urandom(4)
                pong_waiter = await self._ws.ping(payload)
                await asyncio.wait_for(pong_waiter, timeout=self.ping_timeout_s)
            except Exception as exc:
                self._emit_status("ws_ping_timeout", {"error": str(exc)})
                with contextlib.suppress(Exception):
                    await self._ws.close()
                return

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.insecure_tls:
            return None
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def _connect(self):
        connect_kwargs: Dict[str, Any] = {
            "ping_interval": None,
            "ping_timeout": None,
            "close_timeout": 5,
            "max_queue": self.max_queue,
            "open_timeout": self.open_timeout_s,
        }
        ssl_ctx = self._ssl_context()
        if ssl_ctx is not None:
            connect_kwargs["ssl"] = ssl_ctx
        if self.token:
            connect_kwargs["additional_headers"] = {"Authorization": f"Bearer {self.token}"}
        try:
            return await ws_connect(self.ws_url, **connect_kwargs)
        except Exception as exc:
            self._emit_status("ws_connect_failed", {"error": str(exc)})
            raise ProviderConnectionError(f"could not open stream {self.ws_url}: {exc}") from exc

    async def subscribe(self) -> AsyncIterator[Mapping[str, Any]]:
        """Yield candles until close() is called; raise if the stream dies first."""
        self._stop = False
        ws = await self._connect()
        self._ws = ws
        self._emit_status("ws_connect", {"url": self.ws_url})
        ping_task = asyncio.create_task(self._ping_loop())
        try:
            await ws.send(json.dumps(self.subscribe_message()))
            while not self._stop:
                try:
                    msg = await asyncio.wait_for(ws.recv(), timeout=self.recv_poll_timeout_s)
                except asyncio.TimeoutError:
                    continue
                except ConnectionClosed as exc:
                    if self._stop:
                        return
                    self._emit_status("ws_close", {"code": getattr(exc, "code", None), "msg": str(exc)})
                    raise StreamClosedError(f"live stream closed: {exc}") from exc
                except Exception as exc:
                    if self._stop:
                        return
                    self._emit_status("ws_error", {"error": str(exc)})
                    raise StreamClosedError(f"live stream failed: {exc}") from exc

                if msg is None:
                    raise StreamClosedError("live stream returned no data")

                for candle in self.decode(msg):
                    yield candle
        finally:
            ping_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await ping_task
            self._ws = None
            with contextlib.suppress(Exception):
                await ws.close()

    def close(self) -> None:
        self._stop = True
