from __future__ import annotations

import asyncio

from visual_fakes import FakeEngine, RecordingSurface, StubStructureClient, build_pipeline
from visualize.failures import RemoteFetchError
from visualize.fingerprint import compute_fingerprint
from visualize.instance import VisualizationInstance
from visualize.models import (
    IdentifierKind,
    InstanceStatus,
    StyleOptions,
    VisualizationRequest,
)


def _request(identifier: str = "2244", representation: str = "stick", **style: object) -> VisualizationRequest:
    return VisualizationRequest(
        kind=IdentifierKind.CID,
        identifier=identifier,
        style=StyleOptions.build(representation=representation, **style),
    )


def test_scenario_first_render_populates_both_caches() -> None:
    async def _run() -> None:
        client = StubStructureClient()
        pipeline, factories = build_pipeline(client=client)
        instance = VisualizationInstance(RecordingSurface(), pipeline=pipeline)
        seen: list[InstanceStatus] = []
        instance.subscribe(lambda state: seen.append(state.status))

        state = await instance.update(_request())

        assert state.status == InstanceStatus.SUCCESS
        assert seen == [
            InstanceStatus.IDLE,
            InstanceStatus.LOADING_DEPENDENCIES,
            InstanceStatus.RESOLVING_PAYLOAD,
            InstanceStatus.RENDERING,
            InstanceStatus.SUCCESS,
        ]
        assert factories["py3Dmol"].calls == 1
        assert client.calls == [(IdentifierKind.CID, "2244")]
        assert pipeline.payload_cache.keys() == ["cid:2244"]
        assert instance.fingerprint is not None
        assert instance.fingerprint.startswith("cid:2244:stick:element:[]:false:")
        assert pipeline.render_cache.has_render(instance.fingerprint)
        assert instance.cache_hit is False

    asyncio.run(_run())


def test_scenario_style_change_reuses_payload_but_renders_again() -> None:
    async def _run() -> None:
        client = StubStructureClient()
        engine = FakeEngine()
        pipeline, _ = build_pipeline(engine=engine, client=client)

        await VisualizationInstance(RecordingSurface(), pipeline=pipeline).update(_request())
        sphere = VisualizationInstance(RecordingSurface(), pipeline=pipeline)
        state = await sphere.update(_request(representation="sphere"))

        assert state.status == InstanceStatus.SUCCESS
        assert len(client.calls) == 1
        assert len(engine.viewers) == 2
        assert sphere.cache_hit is False
        assert len(pipeline.render_cache) == 2

    asyncio.run(_run())


def test_scenario_simultaneous_instances_share_work() -> None:
    async def _run() -> None:
        client = StubStructureClient()
        client.gate = asyncio.Event()
        engine = FakeEngine()
        pipeline, factories = build_pipeline(engine=engine, client=client)
        left_surface, right_surface = RecordingSurface(), RecordingSurface()
        left = VisualizationInstance(left_surface, pipeline=pipeline)
        right = VisualizationInstance(right_surface, pipeline=pipeline)

        pending = asyncio.gather(left.update(_request()), right.update(_request()))
        await asyncio.sleep(0.01)
        client.gate.set()
        left_state, right_state = await pending

        assert left_state.status == right_state.status == InstanceStatus.SUCCESS
        assert factories["py3Dmol"].calls == 1
        assert len(client.calls) == 1
        assert left_surface.viewer is not None and right_surface.viewer is not None
        assert left_surface.viewer is not right_surface.viewer
        assert left_surface.viewer.calls == right_surface.viewer.calls

    asyncio.run(_run())


def test_cached_fingerprint_skips_load_and_resolve() -> None:
    async def _run() -> None:
        client = StubStructureClient()
        pipeline, factories = build_pipeline(client=client)
        await VisualizationInstance(RecordingSurface(), pipeline=pipeline).update(_request())

        later = VisualizationInstance(RecordingSurface(), pipeline=pipeline)
        seen: list[InstanceStatus] = []
        later.subscribe(lambda state: seen.append(state.status))
        state = await later.update(_request())

        assert state.status == InstanceStatus.SUCCESS
        assert later.cache_hit is True
        assert seen == [InstanceStatus.IDLE, InstanceStatus.RENDERING, InstanceStatus.SUCCESS]
        assert len(client.calls) == 1
        assert factories["py3Dmol"].calls == 1
        assert later.surface.viewer is not None

    asyncio.run(_run())


def test_unchanged_fingerprint_never_starts_second_run() -> None:
    async def _run() -> None:
        client = StubStructureClient()
        client.gate = asyncio.Event()
        engine = FakeEngine()
        pipeline, _ = build_pipeline(engine=engine, client=client)
        instance = VisualizationInstance(RecordingSurface(), pipeline=pipeline)

        first = asyncio.create_task(instance.update(_request()))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(instance.update(_request()))
        await asyncio.sleep(0.01)
        client.gate.set()
        await asyncio.gather(first, second)
        await instance.update(_request())

        assert instance.state.status == InstanceStatus.SUCCESS
        assert len(engine.viewers) == 1
        assert len(client.calls) == 1

    asyncio.run(_run())


def test_error_then_retry_runs_fresh_pipeline() -> None:
    async def _run() -> None:
        client = StubStructureClient(error=RemoteFetchError(503, "stub://cid/2244"))
        pipeline, _ = build_pipeline(client=client)
        instance = VisualizationInstance(RecordingSurface(), pipeline=pipeline)

        state = await instance.update(_request())
        assert state.status == InstanceStatus.ERROR
        assert state.reason == "REMOTE_FETCH_ERROR"
        assert not pipeline.render_cache.has_render(instance.fingerprint or "")

        # Re-invoking with the same fingerprint does not rerun a failed pipeline.
        assert (await instance.update(_request())).status == InstanceStatus.ERROR
        assert len(client.calls) == 1

        client.error = None
        seen: list[InstanceStatus] = []
        instance.subscribe(lambda item: seen.append(item.status))
        state = await instance.retry()

        assert state.status == InstanceStatus.SUCCESS
        assert seen[:2] == [InstanceStatus.IDLE, InstanceStatus.LOADING_DEPENDENCIES]
        assert len(client.calls) == 2

    asyncio.run(_run())


def test_retry_evicts_render_entry_and_optionally_payload() -> None:
    async def _run() -> None:
        client = StubStructureClient()
        engine = FakeEngine(fail_on={"flush"})
        pipeline, _ = build_pipeline(engine=engine, client=client)
        instance = VisualizationInstance(RecordingSurface(), pipeline=pipeline)

        state = await instance.update(_request())
        assert state.status == InstanceStatus.ERROR
        assert state.reason == "RENDER_FAILED"
        assert pipeline.payload_cache.keys() == ["cid:2244"]

        engine.fail_on.clear()
        state = await instance.retry(evict_payload=True)

        assert state.status == InstanceStatus.SUCCESS
        assert len(client.calls) == 2
        assert pipeline.render_cache.has_render(instance.fingerprint or "")

    asyncio.run(_run())


def test_retry_outside_error_is_a_no_op() -> None:
    async def _run() -> None:
        pipeline, factories = build_pipeline()
        instance = VisualizationInstance(RecordingSurface(), pipeline=pipeline)
        assert (await instance.retry()).status == InstanceStatus.IDLE
        await instance.update(_request())
        assert (await instance.retry()).status == InstanceStatus.SUCCESS
        assert factories["py3Dmol"].calls == 1

    asyncio.run(_run())


def test_dependency_failure_surfaces_and_recovers_on_retry() -> None:
    async def _run() -> None:
        pipeline, factories = build_pipeline()
        factories["py3Dmol"].error = ImportError("py3Dmol missing")
        instance = VisualizationInstance(RecordingSurface(), pipeline=pipeline)

        state = await instance.update(_request())
        assert state.status == InstanceStatus.ERROR
        assert state.reason == "DEPENDENCY_LOAD_FAILED"

        factories["py3Dmol"].error = None
        assert (await instance.retry()).status == InstanceStatus.SUCCESS
        assert factories["py3Dmol"].calls == 2

    asyncio.run(_run())


def test_unmount_mid_resolution_stops_state_but_fills_payload_cache() -> None:
    async def _run() -> None:
        client = StubStructureClient()
        client.gate = asyncio.Event()
        engine = FakeEngine()
        pipeline, _ = build_pipeline(engine=engine, client=client)
        surface = RecordingSurface()
        instance = VisualizationInstance(surface, pipeline=pipeline)
        seen: list[InstanceStatus] = []
        instance.subscribe(lambda state: seen.append(state.status))

        running = asyncio.create_task(instance.update(_request()))
        await asyncio.sleep(0.01)
        assert instance.state.status == InstanceStatus.RESOLVING_PAYLOAD

        instance.unmount()
        client.gate.set()
        state = await running

        assert state.status == InstanceStatus.RESOLVING_PAYLOAD
        assert seen[-1] == InstanceStatus.RESOLVING_PAYLOAD
        assert pipeline.payload_cache.keys() == ["cid:2244"]
        assert engine.viewers == []
        assert surface.clears == 0
        assert len(pipeline.render_cache) == 0

    asyncio.run(_run())


def test_fingerprint_change_supersedes_in_flight_run() -> None:
    async def _run() -> None:
        client = StubStructureClient()
        client.gate = asyncio.Event()
        pipeline, _ = build_pipeline(client=client)
        instance = VisualizationInstance(RecordingSurface(), pipeline=pipeline)

        stale = asyncio.create_task(instance.update(_request()))
        await asyncio.sleep(0.01)
        fresh = asyncio.create_task(instance.update(_request(representation="line")))
        await asyncio.sleep(0.01)
        client.gate.set()
        await asyncio.gather(stale, fresh)

        assert instance.state.status == InstanceStatus.SUCCESS
        assert instance.fingerprint == compute_fingerprint(_request(representation="line"))
        assert len(client.calls) == 1
        assert list(pipeline.render_cache.keys()) == [instance.fingerprint]

    asyncio.run(_run())


def test_override_ordering_last_write_wins() -> None:
    async def _run() -> None:
        engine = FakeEngine()
        pipeline, _ = build_pipeline(engine=engine)
        instance = VisualizationInstance(RecordingSurface(), pipeline=pipeline)
        request = _request(
            overrides=[{"region": "chain A", "style": "sphere"}, {"region": "chain A", "style": "stick"}]
        )

        await instance.update(request)

        final_for_a = [style for selection, style in engine.viewers[0].styles() if selection == {"chain": "A"}][-1]
        assert "stick" in final_for_a and "sphere" not in final_for_a

    asyncio.run(_run())


def test_cached_entry_that_fails_to_redraw_is_evicted() -> None:
    async def _run() -> None:
        engine = FakeEngine()
        pipeline, _ = build_pipeline(engine=engine)
        await VisualizationInstance(RecordingSurface(), pipeline=pipeline).update(_request())
        fingerprint = compute_fingerprint(_request())

        engine.fail_on.add("load_model")
        state = await VisualizationInstance(RecordingSurface(), pipeline=pipeline).update(_request())

        assert state.status == InstanceStatus.ERROR
        assert state.reason == "RENDER_FAILED"
        assert not pipeline.render_cache.has_render(fingerprint)

    asyncio.run(_run())
