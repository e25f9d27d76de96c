import asyncio
from typing import Optional, Dict

import httpx

from duck.duck_datatypes import DuckRuntimeError, ErrorKind


async def http_request(method: str, url: str, *, config: Optional[Dict] = None, data: Optional[str] = None) -> str:
    """
    Core HTTP helper: returns the response body as text.

    Transport failures are retried with exponential backoff; a non-2xx
    status or a final transport failure raises a NETWORK_ERROR.
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 5.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    headers = dict(cfg.pop('headers', {}))

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        last_exc = None
        for attempt in range(retries + 1):
            try:
                body = data.encode('utf-8') if data is not None else None
                if body is not None:
                    headers = {**headers}
                    headers.setdefault("Content-Type", "text/plain; charset=utf-8")
                resp = await client.request(
                    method.upper(),
                    url,
                    headers=headers,
                    content=body,
                )
            except httpx.InvalidURL as e:
                # A malformed URL will not get better on retry
                raise DuckRuntimeError(f"{method.upper()} {url} failed: {e}", kind=ErrorKind.NETWORK_ERROR) from e
            except httpx.HTTPError as e:
                last_exc = e
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise DuckRuntimeError(f"{method.upper()} {url} failed: {e}", kind=ErrorKind.NETWORK_ERROR) from last_exc
            if 200 <= resp.status_code < 300:
                return resp.text
            # Non-2xx is an answer, not a transport failure: no retry
            preview = (resp.text or "")[:200]
            raise DuckRuntimeError(f"HTTP {resp.status_code} for {url}: {preview}", kind=ErrorKind.NETWORK_ERROR)


async def http_get(url: str, config: Optional[Dict] = None) -> str:
    return await http_request('GET', url, config=config)


async def http_post(url: str, data: str, config: Optional[Dict] = None) -> str:
    return await http_request('POST', url, config=config, data=data)
