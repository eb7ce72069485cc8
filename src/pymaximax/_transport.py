"""HTTP and push-connection transports."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol, cast
from urllib.parse import unquote, urlsplit

import aiohttp
import paho.mqtt.client as mqtt

from pymaximax.config import MaximaxConfig
from pymaximax.exceptions import MaximaxChannelError, MaximaxConfigError, MaximaxTransportError

_logger = logging.getLogger(__name__)

USER_AGENT = "pymaximax"


# ----------------------------------------------------------------------
# REST
# ----------------------------------------------------------------------


class Transport(Protocol):
    """Structural transport interface used by the service adapters.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`HttpTransport`) concrete.
    """

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
    ) -> dict[str, Any]: ...


class HttpTransport:
    """JSON-over-HTTP transport for the MaxiMax REST services."""

    def __init__(self, config: MaximaxConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON object body."""
        url = f"{self._config.base_url.rstrip('/')}{endpoint}"
        headers = {
            "accept": "application/json",
            "user-agent": USER_AGENT,
            "x-request-id": secrets.token_hex(8),
        }
        query = {k: str(v) for k, v in (params or {}).items() if v is not None}

        _logger.debug("%s %s params=%s", method, url, query)

        try:
            async with self._http.request(
                method,
                url,
                params=query or None,
                json=json_body,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                status = resp.status
        except aiohttp.ClientError as exc:
            raise MaximaxTransportError(f"Request to {endpoint} failed: {exc}", endpoint=endpoint) from exc

        try:
            body = json.loads(text) if text else {}
        except json.JSONDecodeError as exc:
            raise MaximaxTransportError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            ) from exc

        if status >= 400:
            # Services report business failures as {success: false, error}
            # with a 4xx status; keep those as a normal payload.
            if isinstance(body, dict) and body.get("success") is False:
                return body
            raise MaximaxTransportError(
                f"HTTP {status} from {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            )

        if not isinstance(body, dict):
            raise MaximaxTransportError(f"Response from {endpoint} is not a JSON object", endpoint=endpoint)
        return body


# ----------------------------------------------------------------------
# Push connections
# ----------------------------------------------------------------------


class PushConnection(Protocol):
    """One live connection to the push-update source.

    Iterating yields inbound text frames until the connection ends.
    """

    async def send_text(self, text: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str]: ...


class WebSocketConnection:
    """aiohttp WebSocket wrapped as a :class:`PushConnection`."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws

    async def send_text(self, text: str) -> None:
        if self._ws.closed:
            raise MaximaxChannelError("WebSocket is closed")
        await self._ws.send_str(text)

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()

    def __aiter__(self) -> AsyncIterator[str]:
        return self._frames()

    async def _frames(self) -> AsyncIterator[str]:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                yield msg.data.decode("utf-8", errors="replace")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise MaximaxChannelError(f"WebSocket error: {self._ws.exception()}")
            else:
                break


async def open_websocket(
    url: str,
    http_session: aiohttp.ClientSession,
    *,
    heartbeat: float | None = None,
) -> WebSocketConnection:
    try:
        ws = await http_session.ws_connect(url, heartbeat=heartbeat, headers={"user-agent": USER_AGENT})
    except (aiohttp.ClientError, OSError) as exc:
        raise MaximaxChannelError(f"WebSocket connect to {url} failed: {exc}") from exc
    _logger.debug("WebSocket connected url=%s", url)
    return WebSocketConnection(ws)


class MqttConnection:
    """Threaded paho-mqtt client exposed as a :class:`PushConnection`.

    paho runs its network loop on its own thread; inbound payloads are
    handed to the asyncio loop with ``call_soon_threadsafe``. Messages
    are published on the subscribed topic with MQTT v5 ``noLocal`` so the
    connection never receives its own sends. paho's built-in reconnect is
    not used: when the broker drops the connection iteration ends and
    the owning channel decides when to retry.
    """

    _CLOSED = object()

    def __init__(
        self,
        client: mqtt.Client,
        *,
        loop: asyncio.AbstractEventLoop,
        topic: str,
    ) -> None:
        self._client = client
        self._loop = loop
        self._topic = topic
        self._inbox: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    def _push(self, item: object) -> None:
        self._inbox.put_nowait(item)

    def _on_message(self, _c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            text = msg.payload.decode("utf-8", errors="replace")
        except Exception:
            _logger.debug("MQTT payload decode failure", exc_info=True)
            return
        self._loop.call_soon_threadsafe(self._push, text)

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        _logger.debug("MQTT disconnected: %s", reason_code)
        self._loop.call_soon_threadsafe(self._push, self._CLOSED)

    async def send_text(self, text: str) -> None:
        if self._closed:
            raise MaximaxChannelError("MQTT connection is closed")
        info = self._client.publish(self._topic, text, qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MaximaxChannelError(f"MQTT publish failed rc={info.rc}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._push(self._CLOSED)
        client = self._client

        def _stop() -> None:
            try:
                client.disconnect()
            finally:
                client.loop_stop()

        await self._loop.run_in_executor(None, _stop)
        _logger.debug("MQTT network loop stopped")

    def __aiter__(self) -> AsyncIterator[str]:
        return self._frames()

    async def _frames(self) -> AsyncIterator[str]:
        while True:
            item = await self._inbox.get()
            if item is self._CLOSED:
                return
            yield cast(str, item)


async def open_mqtt(
    url: str,
    *,
    keepalive: float | None = None,
    connect_timeout: float = 15.0,
) -> MqttConnection:
    """Connect to ``mqtt[s]://[user[:password]@]host[:port]/topic``."""
    parts = urlsplit(url)
    topic = unquote(parts.path.lstrip("/"))
    if not parts.hostname or not topic:
        raise MaximaxConfigError(f"MQTT push URL needs a host and a topic: {url}")
    use_tls = parts.scheme == "mqtts"
    port = parts.port or (8883 if use_tls else 1883)

    loop = asyncio.get_running_loop()
    client = mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=f"pymaximax_{secrets.token_hex(6)}",
        protocol=mqtt.MQTTv5,
    )
    client.enable_logger(_logger)
    if parts.username:
        client.username_pw_set(unquote(parts.username), unquote(parts.password or "") or None)
    if use_tls:
        client.tls_set()

    connection = MqttConnection(client, loop=loop, topic=topic)
    connected: asyncio.Future[None] = loop.create_future()

    def _resolve(reason: Any) -> None:
        if connected.done():
            return
        if reason is None:
            connected.set_result(None)
        else:
            connected.set_exception(MaximaxChannelError(f"MQTT connect refused: {reason}"))

    def on_connect(
        c: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.is_failure:
            loop.call_soon_threadsafe(_resolve, reason_code)
            return
        c.subscribe(topic, options=mqtt.SubscribeOptions(qos=0, noLocal=True))
        loop.call_soon_threadsafe(_resolve, None)

    client.on_connect = on_connect
    client.on_message = connection._on_message
    client.on_disconnect = connection._on_disconnect

    def _start() -> None:
        client.connect(parts.hostname or "", port, keepalive=int(keepalive or 60))
        client.loop_start()

    try:
        await loop.run_in_executor(None, _start)
        await asyncio.wait_for(connected, connect_timeout)
    except Exception as exc:
        await loop.run_in_executor(None, client.loop_stop)
        if isinstance(exc, MaximaxChannelError):
            raise
        raise MaximaxChannelError(f"MQTT connect to {parts.hostname}:{port} failed: {exc}") from exc

    _logger.debug("MQTT connected host=%s port=%s topic=%s", parts.hostname, port, topic)
    return connection


async def open_push_connection(
    url: str,
    *,
    http_session: aiohttp.ClientSession,
    heartbeat: float | None = None,
) -> PushConnection:
    """Open a push connection, picking the transport from the URL scheme."""
    scheme = urlsplit(url).scheme.lower()
    if scheme in {"ws", "wss"}:
        return await open_websocket(url, http_session, heartbeat=heartbeat)
    if scheme in {"mqtt", "mqtts"}:
        return await open_mqtt(url, keepalive=heartbeat)
    raise MaximaxConfigError(f"Unsupported push URL scheme {scheme!r} in {url}")
