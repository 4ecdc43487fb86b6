"""Identifier -> style-independent structure payload.

Results are cached by ``(kind, identifier)`` only, so requests that differ
just in styling share one fetch or conversion. Concurrent resolutions of the
same pair await a single shared task.
"""

import asyncio
import logging
import re
import time
from typing import Any, Dict, Optional

from config import VIZ_CONVERSION_TOOLKIT, VIZ_SMILES_EMBED_3D
from observability import get_logger, log_event
from runtime_metrics import record_counter_metric, record_timing_metric
from visualize.engines import ConversionToolkit
from visualize.failures import InvalidIdentifier, PayloadResolutionFailed, VisualFailure
from visualize.fingerprint import payload_key
from visualize.loader import DependencyLoader, get_dependency_loader, retrieve_task_exception
from visualize.models import (
    LOCAL_KINDS,
    IdentifierKind,
    PayloadCacheEntry,
    PayloadFormat,
    ResolvedPayload,
)
from visualize.store import PayloadCache, get_payload_cache
from visualize.structure_client import StructureClient

_LOGGER = get_logger("molviz.visualize.resolver")

_CID_RE = re.compile(r"^\d+$")
_PDB_RE = re.compile(r"^[A-Za-z0-9]{4}$")
_INCHIKEY_RE = re.compile(r"^[A-Z]{14}-[A-Z]{10}-[A-Z]$")


def normalize_identifier(kind: IdentifierKind, identifier: Any) -> str:
    text = str(identifier or "").strip()
    if not text:
        raise InvalidIdentifier(text, "identifier is empty")
    if kind == IdentifierKind.CID and not _CID_RE.match(text):
        raise InvalidIdentifier(text, "cid must be numeric")
    if kind == IdentifierKind.PDB:
        if not _PDB_RE.match(text):
            raise InvalidIdentifier(text, "pdb accession must be 4 alphanumeric characters")
        return text.upper()
    if kind == IdentifierKind.INCHIKEY and not _INCHIKEY_RE.match(text):
        raise InvalidIdentifier(text, "malformed InChIKey")
    if kind == IdentifierKind.INCHI and not text.startswith("InChI="):
        raise InvalidIdentifier(text, "InChI must start with 'InChI='")
    return text


def _convert(toolkit: ConversionToolkit, kind: IdentifierKind, identifier: str, embed_3d: bool) -> str:
    mol = None
    try:
        mol = toolkit.parse(kind, identifier)
        if mol is None:
            raise InvalidIdentifier(identifier, f"{kind.value} could not be parsed")
        return toolkit.to_molblock(mol, embed_3d)
    finally:
        if mol is not None:
            toolkit.release(mol)


class PayloadResolver:
    def __init__(
        self,
        loader: Optional[DependencyLoader] = None,
        client: Optional[StructureClient] = None,
        cache: Optional[PayloadCache] = None,
        conversion_dependency: str = VIZ_CONVERSION_TOOLKIT,
        embed_3d: bool = VIZ_SMILES_EMBED_3D,
    ) -> None:
        self.loader = loader or get_dependency_loader()
        self.client = client or StructureClient()
        self.cache = cache if cache is not None else get_payload_cache()
        self.conversion_dependency = conversion_dependency
        self.embed_3d = embed_3d
        self._inflight: Dict[str, "asyncio.Task[ResolvedPayload]"] = {}

    def in_flight(self, kind: IdentifierKind, identifier: str) -> bool:
        return payload_key(kind, normalize_identifier(kind, identifier)) in self._inflight

    def invalidate(self, kind: IdentifierKind, identifier: str) -> bool:
        try:
            normalized = normalize_identifier(kind, identifier)
        except InvalidIdentifier:
            return False
        return self.cache.invalidate(kind, normalized)

    async def resolve(self, kind: IdentifierKind, identifier: str) -> ResolvedPayload:
        normalized = normalize_identifier(kind, identifier)
        key = payload_key(kind, normalized)
        cached = self.cache.load_payload(kind, normalized)
        if cached is not None:
            record_counter_metric(name="visualize.payload_cache.hit")
            log_event(_LOGGER, logging.DEBUG, "payload.cache_hit", payload_key=key)
            return cached.payload
        task = self._inflight.get(key)
        if task is None:
            record_counter_metric(name="visualize.payload_cache.miss")
            log_event(_LOGGER, logging.DEBUG, "payload.cache_miss", payload_key=key)
            task = asyncio.get_running_loop().create_task(self._resolve_uncached(kind, normalized))
            task.add_done_callback(retrieve_task_exception)
            self._inflight[key] = task
        return await asyncio.shield(task)

    async def _resolve_uncached(self, kind: IdentifierKind, identifier: str) -> ResolvedPayload:
        key = payload_key(kind, identifier)
        started = time.perf_counter()
        try:
            if kind in LOCAL_KINDS:
                payload = await self._convert_local(kind, identifier)
            else:
                payload = await self._fetch_remote(kind, identifier)
            # Another resolution may have stored this key while we were suspended.
            existing = self.cache.load_payload(kind, identifier)
            if existing is not None:
                return existing.payload
            self.cache.save_payload(kind, identifier, PayloadCacheEntry(payload=payload))
            duration_ms = (time.perf_counter() - started) * 1000
            record_timing_metric(name="visualize.payload.resolve_ms", duration_ms=duration_ms)
            log_event(
                _LOGGER,
                logging.INFO,
                "payload.resolved",
                payload_key=key,
                payload_format=payload.format.value,
                size=len(payload.data),
                duration_ms=int(duration_ms),
            )
            return payload
        except VisualFailure as exc:
            log_event(
                _LOGGER,
                logging.WARNING,
                "payload.failed",
                payload_key=key,
                error_code=exc.code,
                error=exc.message,
            )
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(_LOGGER, logging.ERROR, "payload.failed", payload_key=key, error=str(exc))
            raise PayloadResolutionFailed(f"unexpected resolution error: {exc}") from exc
        finally:
            self._inflight.pop(key, None)

    async def _convert_local(self, kind: IdentifierKind, identifier: str) -> ResolvedPayload:
        toolkit = await self.loader.ensure_loaded(self.conversion_dependency)
        molblock = await asyncio.to_thread(_convert, toolkit, kind, identifier, self.embed_3d)
        if not str(molblock or "").strip():
            raise PayloadResolutionFailed(f"conversion produced no structure for {identifier!r}")
        return ResolvedPayload(data=molblock, format=PayloadFormat.SDF)

    async def _fetch_remote(self, kind: IdentifierKind, identifier: str) -> ResolvedPayload:
        record_counter_metric(name="visualize.remote_fetch.total")
        result = await self.client.fetch(kind, identifier)
        log_event(
            _LOGGER,
            logging.DEBUG,
            "payload.fetched",
            url=result.url,
            duration_ms=result.duration_ms,
        )
        return ResolvedPayload(data=result.body, format=result.format)
