from __future__ import annotations

import asyncio

import httpx
import pytest

from visualize.failures import PayloadResolutionFailed, RemoteFetchError
from visualize.models import IdentifierKind, PayloadFormat
from visualize.structure_client import StructureClient


def _client(handler) -> StructureClient:
    return StructureClient(
        pubchem_base_url="https://pubchem.test/rest/pug/compound/",
        rcsb_base_url="https://rcsb.test/download",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def test_build_url_per_kind() -> None:
    client = _client(lambda request: httpx.Response(200))
    assert client.build_url(IdentifierKind.CID, "2244") == (
        "https://pubchem.test/rest/pug/compound/cid/2244/SDF",
        PayloadFormat.SDF,
    )
    assert client.build_url(IdentifierKind.NAME, "acetic acid")[0] == (
        "https://pubchem.test/rest/pug/compound/name/acetic%20acid/SDF"
    )
    assert client.build_url(IdentifierKind.PDB, "1crn") == ("https://rcsb.test/download/1CRN.pdb", PayloadFormat.PDB)
    with pytest.raises(PayloadResolutionFailed):
        client.build_url(IdentifierKind.SMILES, "CCO")


def test_fetch_returns_body_and_sends_user_agent() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="HEADER    PLANT PROTEIN\nEND\n")

    result = asyncio.run(_client(_handler).fetch(IdentifierKind.PDB, "1CRN"))

    assert result.format == PayloadFormat.PDB
    assert result.body.startswith("HEADER")
    assert str(seen[0].url) == "https://rcsb.test/download/1CRN.pdb"
    assert seen[0].headers.get("User-Agent")


def test_non_success_status_is_remote_fetch_error() -> None:
    client = _client(lambda request: httpx.Response(404, text="PUGREST.NotFound"))
    with pytest.raises(RemoteFetchError) as exc:
        asyncio.run(client.fetch(IdentifierKind.CID, "999999999"))
    assert exc.value.status == 404
    assert exc.value.code == "REMOTE_FETCH_ERROR"


def test_empty_body_and_transport_errors_are_resolution_failures() -> None:
    empty = _client(lambda request: httpx.Response(200, text="  \n"))
    with pytest.raises(PayloadResolutionFailed):
        asyncio.run(empty.fetch(IdentifierKind.CID, "2244"))

    def _unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PayloadResolutionFailed):
        asyncio.run(_client(_unreachable).fetch(IdentifierKind.CID, "2244"))
