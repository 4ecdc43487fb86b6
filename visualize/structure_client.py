import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from config import VIZ_FETCH_TIMEOUT_SECONDS, VIZ_PUBCHEM_BASE_URL, VIZ_RCSB_BASE_URL, VIZ_USER_AGENT
from visualize.failures import PayloadResolutionFailed, RemoteFetchError
from visualize.models import IdentifierKind, PayloadFormat


@dataclass
class StructureResult:
    body: str
    format: PayloadFormat
    url: str
    duration_ms: int


class StructureClient:
    def __init__(
        self,
        pubchem_base_url: Optional[str] = None,
        rcsb_base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._pubchem_base_url = self._normalize_base_url(pubchem_base_url or VIZ_PUBCHEM_BASE_URL)
        self._rcsb_base_url = self._normalize_base_url(rcsb_base_url or VIZ_RCSB_BASE_URL)
        self._timeout = float(timeout or VIZ_FETCH_TIMEOUT_SECONDS)
        self._transport = transport

    @staticmethod
    def _normalize_base_url(base_url: str) -> str:
        return (base_url or "").strip().rstrip("/")

    def build_url(self, kind: IdentifierKind, identifier: str) -> tuple[str, PayloadFormat]:
        if kind == IdentifierKind.PDB:
            return f"{self._rcsb_base_url}/{quote(identifier.upper(), safe='')}.pdb", PayloadFormat.PDB
        if kind in {IdentifierKind.CID, IdentifierKind.NAME, IdentifierKind.INCHIKEY}:
            namespace = kind.value
            return (
                f"{self._pubchem_base_url}/{namespace}/{quote(identifier, safe='')}/SDF",
                PayloadFormat.SDF,
            )
        raise PayloadResolutionFailed(f"identifier kind {kind.value} has no remote repository")

    async def fetch(self, kind: IdentifierKind, identifier: str) -> StructureResult:
        url, fmt = self.build_url(kind, identifier)
        start = time.time()
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"User-Agent": VIZ_USER_AGENT},
                follow_redirects=True,
            ) as client:
                response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise PayloadResolutionFailed(f"structure fetch timed out: {url}") from exc
        except httpx.HTTPError as exc:
            raise PayloadResolutionFailed(f"structure fetch failed: {exc}") from exc
        if not response.is_success:
            raise RemoteFetchError(response.status_code, url)
        body = response.text
        if not body.strip():
            raise PayloadResolutionFailed(f"structure repository returned an empty body: {url}")
        duration_ms = int((time.time() - start) * 1000)
        return StructureResult(body=body, format=fmt, url=url, duration_ms=duration_ms)
