import asyncio
import json
import logging
from typing import List, Optional, Tuple

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response

from config import Config
from errors import ServerError, UpstreamUnavailable
from middleware import AuthContext

logger = logging.getLogger(__name__)

USER_AGENT = "oauth-gateway/1.0.0"

# Request headers never forwarded upstream
EXCLUDED_REQUEST_HEADERS = {
    "host",
    "content-length",
    "transfer-encoding",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "upgrade",
    "authorization",
    "accept-encoding",
}

# Response headers copied back to the caller
ALLOWED_RESPONSE_HEADERS = {
    "content-type",
    "cache-control",
    "expires",
    "pragma",
    "last-modified",
    "etag",
    "vary",
    "access-control-allow-origin",
    "access-control-allow-credentials",
    "access-control-allow-methods",
    "access-control-allow-headers",
    "access-control-expose-headers",
    "access-control-max-age",
}

DISCONNECT_POLL_INTERVAL = 0.5


def _reject_constant(name: str):
    raise ValueError(f"Non-standard JSON constant: {name}")


class ClientDisconnected(Exception):
    """The caller went away before the upstream answered"""


class ReverseProxy:
    """Relays authenticated requests to the upstream API"""

    def __init__(self, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.client = httpx.AsyncClient(
            timeout=config.proxy_timeout,
            follow_redirects=True,
            max_redirects=config.proxy_max_redirects,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    def build_url(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.config.upstream_base_url}/{path}" if path else self.config.upstream_base_url

    def build_headers(self, request: Request) -> List[Tuple[str, str]]:
        """Copy inbound headers minus hop-by-hop ones and the local credentials"""
        connection_tokens = {
            h.strip().lower() for h in request.headers.get("connection", "").split(",") if h.strip()
        }
        headers = [
            (name, value)
            for name, value in request.headers.items()
            if name.lower() not in EXCLUDED_REQUEST_HEADERS
            and name.lower() not in connection_tokens
            and name.lower() not in ("user-agent", "x-forwarded-for", "x-original-host")
        ]

        client_host = request.client.host if request.client else None
        forwarded_for = request.headers.get("x-forwarded-for")
        if client_host:
            forwarded_for = f"{forwarded_for}, {client_host}" if forwarded_for else client_host

        headers.append(("User-Agent", USER_AGENT))
        if forwarded_for:
            headers.append(("X-Forwarded-For", forwarded_for))
        if request.headers.get("host"):
            headers.append(("X-Original-Host", request.headers["host"]))
        return headers

    def build_params(self, request: Request):
        # The local bearer token must not leak upstream through the query string
        if "access_token" not in request.query_params:
            return request.url.query or None
        return [(k, v) for k, v in request.query_params.multi_items() if k != "access_token"]

    async def forward(self, request: Request, path: str, auth: AuthContext) -> Response:
        """Send one upstream request for an authenticated caller and relay the answer"""
        url = self.build_url(path)
        try:
            upstream_request = self.client.build_request(
                request.method,
                url,
                params=self.build_params(request),
                headers=self.build_headers(request),
                content=await request.body(),
            )
        except (httpx.InvalidURL, ValueError, TypeError) as e:
            logger.error(f"Failed to build upstream request for {url}: {e}")
            raise ServerError(f"Failed to build upstream request: {e}")

        logger.info(f"Proxying {request.method} {request.url.path} -> {url} for client {auth.client_id}")

        try:
            upstream_response = await self._send(request, upstream_request)
        except ClientDisconnected:
            logger.warning(f"Client disconnected, abandoned upstream call to {url}")
            return Response(status_code=499)
        except httpx.UnsupportedProtocol as e:
            logger.error(f"Invalid upstream URL {url}: {e}")
            raise ServerError(f"Invalid upstream URL: {e}")
        except httpx.TimeoutException:
            logger.error(f"Upstream timeout: {url}")
            raise UpstreamUnavailable("Upstream API did not respond in time")
        except httpx.TooManyRedirects:
            logger.error(f"Upstream redirect limit exceeded: {url}")
            raise UpstreamUnavailable("Upstream API exceeded the redirect limit")
        except httpx.TransportError as e:
            logger.error(f"Upstream unreachable {url}: {e}")
            raise UpstreamUnavailable("Unable to reach upstream API")

        logger.info(f"Upstream responded {upstream_response.status_code} for {url}")
        return self.build_response(upstream_response)

    async def _send(self, request: Request, upstream_request: httpx.Request) -> httpx.Response:
        send_task = asyncio.ensure_future(self.client.send(upstream_request))
        watch_task = asyncio.ensure_future(self._wait_for_disconnect(request))
        try:
            await asyncio.wait({send_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            send_task.cancel()
            raise
        finally:
            watch_task.cancel()

        if send_task.done():
            return send_task.result()

        watch_error = watch_task.exception()
        if watch_error is not None:
            # Disconnect detection broke, not the caller: let the upstream call finish
            logger.warning(f"Disconnect watch failed: {watch_error!r}")
            try:
                return await send_task
            except asyncio.CancelledError:
                send_task.cancel()
                raise

        send_task.cancel()
        raise ClientDisconnected()

    @staticmethod
    async def _wait_for_disconnect(request: Request):
        while not await request.is_disconnected():
            await asyncio.sleep(DISCONNECT_POLL_INTERVAL)

    def build_response(self, upstream: httpx.Response) -> Response:
        """Relay status and body, keeping only the allow-listed headers"""
        headers = {
            name: value
            for name, value in upstream.headers.items()
            if name.lower() in ALLOWED_RESPONSE_HEADERS
        }

        content_type = upstream.headers.get("content-type", "")
        if upstream.content and "json" in content_type.lower():
            # NaN and Infinity are not valid JSON and cannot be rendered back
            try:
                data = json.loads(upstream.content, parse_constant=_reject_constant)
                return JSONResponse(content=data, status_code=upstream.status_code, headers=headers)
            except ValueError:
                logger.debug("Upstream body is not standard JSON, relaying it unchanged")

        return Response(content=upstream.content, status_code=upstream.status_code, headers=headers)
