"""eCFR API client.

Fetches the three feeds the refresh pipeline needs (no API key required):

    GET /api/versioner/v1/titles.json              -> list of Title
    GET /api/admin/v1/agencies.json                -> nested Agency tree
    GET /api/versioner/v1/full/{date}/title-{n}.xml -> full title XML

Title XML can run to hundreds of megabytes, so it is never buffered: the
``open_title_xml`` context manager yields an async iterator of body chunks
that the snapshot store compresses straight to disk.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from cfr_metrics.config import base_url
from cfr_metrics.errors import ParseError, TransientFetchError
from cfr_metrics.schemas.models import Agency, Title
from cfr_metrics.sources.base import BaseClient

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class ECFRClient(BaseClient):
    """Client for the public eCFR versioner and admin APIs."""

    def __init__(self, config: dict | None = None, **kwargs):
        super().__init__("ecfr", config=config, **kwargs)
        self.base_url = base_url(config or {})

    async def list_titles(self, session: aiohttp.ClientSession) -> list[Title]:
        """Fetch every CFR title with its current as-of date."""
        data = await self._get_json(session, f"{self.base_url}/api/versioner/v1/titles.json")
        titles = self._validate(data, "titles", Title)
        logger.info("eCFR: fetched %d titles", len(titles))
        return titles

    async def list_agencies(self, session: aiohttp.ClientSession) -> list[Agency]:
        """Fetch the top-level agency tree (children nested)."""
        data = await self._get_json(session, f"{self.base_url}/api/admin/v1/agencies.json")
        agencies = self._validate(data, "agencies", Agency)
        logger.info("eCFR: fetched %d top-level agencies", len(agencies))
        return agencies

    def title_xml_url(self, issue_date: str, title: int) -> str:
        return f"{self.base_url}/api/versioner/v1/full/{quote(issue_date)}/title-{title}.xml"

    @contextlib.asynccontextmanager
    async def open_title_xml(
        self, session: aiohttp.ClientSession, issue_date: str, title: int,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open the full XML for one title at one date as a chunk stream.

        Usage::

            async with client.open_title_xml(session, "2025-01-02", 7) as chunks:
                await store.save(7, "2025-01-02", chunks)
        """
        url = self.title_xml_url(issue_date, title)
        resp = await self._open_with_retry(session, url, accept="application/xml")
        try:
            yield _iter_body(resp, url)
        finally:
            resp.release()

    async def _get_json(self, session: aiohttp.ClientSession, url: str) -> dict:
        resp = await self._open_with_retry(session, url)
        try:
            raw = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientFetchError(f"GET {url}: body read failed: {e!r}", url=url) from e
        finally:
            resp.release()
        try:
            return json.loads(raw)
        except ValueError as e:
            raise ParseError(f"GET {url}: invalid JSON: {e}") from e

    def _validate(self, data: dict, key: str, model):
        if not isinstance(data, dict) or not isinstance(data.get(key), list):
            raise ParseError(f"eCFR response missing '{key}' list")
        try:
            return [model.model_validate(item) for item in data[key]]
        except ValidationError as e:
            raise ParseError(f"eCFR '{key}' entry failed validation: {e}") from e


async def _iter_body(resp: aiohttp.ClientResponse, url: str) -> AsyncIterator[bytes]:
    """Yield body chunks, reclassifying mid-stream network failures as transient."""
    try:
        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
            yield chunk
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransientFetchError(f"GET {url}: stream interrupted: {e!r}", url=url) from e
