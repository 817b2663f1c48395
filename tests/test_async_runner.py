"""
Tests for queue-based pipeline orchestration.
"""
import asyncio

import pytest

from flowrunner.exceptions import OrchestrationError
from flowrunner.services.execution import (
    AsyncRunner,
    InMemoryStore,
    JobStatus,
    JobWorker,
    PipelineRequest,
    PipelineStatus,
    RedisStore,
    create_pipeline,
)

from helpers import build_graph, chain_graph, edge, gateway_graph, node


def independent_graph(count=5, type_id="echo"):
    return build_graph([node(f"j{i}", type_id) for i in range(count)])


async def pipeline_of(store, response):
    return await store.load_pipeline(response.execution_id)


class TestOrchestrate:
    """Pipeline creation and first dispatch."""

    async def test_dispatch_respects_max_concurrent_jobs(self, runner, store):
        response = await runner.orchestrate(PipelineRequest(
            graph=independent_graph(5), max_concurrent_jobs=2))

        pipeline = await pipeline_of(store, response)
        counts = pipeline.job_counts()
        assert counts["running"] == 2
        assert counts["pending"] == 3
        assert response.status == PipelineStatus.RUNNING
        assert response.metadata["jobs_dispatched"] == 2
        assert store.queue_size() == 2

    async def test_events_emitted(self, runner, sink):
        response = await runner.orchestrate(PipelineRequest(graph=chain_graph(2)))
        types = sink.types()
        assert types[:4] == ["pipeline.created", "job.created", "job.created", "pipeline.started"]
        assert types[-1] == "job.started"
        assert all(e["pipeline_id"] == response.execution_id for e in sink.events())

    async def test_compile_error_wrapped(self, runner):
        graph = build_graph([node("a", "echo"), node("b", "echo")],
                            [edge("a", "b"), edge("b", "a")])
        with pytest.raises(OrchestrationError) as exc_info:
            await runner.orchestrate(PipelineRequest(graph=graph, pipeline_id="p-cycle"))
        assert exc_info.value.pipeline_id == "p-cycle"
        assert "cycle" in str(exc_info.value)

    async def test_request_needs_graph_or_plan(self, runner):
        with pytest.raises(OrchestrationError):
            await runner.orchestrate(PipelineRequest())

    async def test_accepts_compiled_plan(self, runner, compiler, worker, store):
        plan = compiler.compile(chain_graph(2))
        response = await runner.orchestrate(PipelineRequest(plan=plan, input_data={"v": 1}))
        await worker.run_until_empty()
        pipeline = await pipeline_of(store, response)
        assert pipeline.status == PipelineStatus.COMPLETED
        assert pipeline.output_data["n1"] == {"v": 1}

    async def test_store_failure_leaves_pipeline_failed(self, runner, store, monkeypatch):
        async def broken_enqueue(job_id):
            raise RuntimeError("queue unavailable")

        monkeypatch.setattr(store, "enqueue", broken_enqueue)
        with pytest.raises(OrchestrationError):
            await runner.orchestrate(PipelineRequest(graph=chain_graph(2), pipeline_id="p-broken"))
        pipeline = await store.load_pipeline("p-broken")
        assert pipeline.status == PipelineStatus.FAILED
        assert "queue unavailable" in pipeline.error_message


class TestExecution:
    """Worker-driven execution end to end."""

    async def test_linear_chain_sequential(self, runner, worker, store, sink):
        response = await runner.orchestrate(PipelineRequest(
            graph=chain_graph(3), max_concurrent_jobs=1, input_data={"v": 1}))

        await worker.run_until_empty()

        pipeline = await pipeline_of(store, response)
        assert pipeline.status == PipelineStatus.COMPLETED
        assert all(job.status == JobStatus.COMPLETED for job in pipeline.jobs)
        pipeline_events = [t for t in sink.types() if t.startswith("pipeline.")]
        assert pipeline_events == ["pipeline.created", "pipeline.started", "pipeline.completed"]
        started = [e["node_id"] for e in sink.events("job.started")]
        assert started == ["n0", "n1", "n2"]

    async def test_port_data_flows_between_jobs(self, runner, worker, store):
        graph = build_graph(
            [node("in", "textInput"), node("up", "upper"), node("out", "textOutput")],
            [edge("in", "up", source_port="text", target_port="text"),
             edge("up", "out", source_port="text", target_port="final")],
        )
        response = await runner.orchestrate(PipelineRequest(graph=graph,
                                                            input_data={"text": "hi"}))
        await worker.run_until_empty()
        pipeline = await pipeline_of(store, response)
        assert pipeline.output_data["out"]["final"] == "HI"

    async def test_priority_order_with_single_slot(self, runner, worker, sink):
        graph = build_graph(
            [node("r", "manualTrigger"), node("x", "echo"), node("out", "textOutput"),
             node("z", "echo")],
            [edge("r", "x"), edge("r", "out"), edge("r", "z")],
        )
        await runner.orchestrate(PipelineRequest(graph=graph, max_concurrent_jobs=1))
        await worker.run_until_empty()
        assert [e["node_id"] for e in sink.events("job.started")] == ["r", "x", "z", "out"]

    async def test_fifo_strategy_uses_creation_order(self, runner, worker, sink):
        graph = build_graph(
            [node("r", "manualTrigger"), node("out", "textOutput"), node("x", "echo")],
            [edge("r", "out"), edge("r", "x")],
        )
        await runner.orchestrate(PipelineRequest(graph=graph, max_concurrent_jobs=1,
                                                 job_priority_strategy="fifo"))
        await worker.run_until_empty()
        assert [e["node_id"] for e in sink.events("job.started")] == ["r", "out", "x"]

    async def test_gateway_skips_inactive_branch(self, runner, worker, store, sink):
        response = await runner.orchestrate(PipelineRequest(graph=gateway_graph("x")))
        await worker.run_until_empty()

        pipeline = await pipeline_of(store, response)
        assert pipeline.status == PipelineStatus.COMPLETED
        assert set(pipeline.output_data) == {"A", "G", "B"}
        assert pipeline.get_job_by_node("C").status == JobStatus.PENDING
        skipped = sink.events("job.skipped")
        assert [e["node_id"] for e in skipped] == ["C"]
        assert skipped[0]["reason"] == "branch_not_active"

    async def test_peak_concurrency_never_exceeds_limit(self, runner, store, gauge):
        graph = build_graph([node(f"g{i}", "gauge", delay=0.02) for i in range(6)])
        response = await runner.orchestrate(PipelineRequest(graph=graph, max_concurrent_jobs=2))

        worker_pool = [JobWorker(store, runner.runtime, runner, poll_interval=0.01)
                       for _ in range(4)]
        for w in worker_pool:
            await w.start(concurrency=1)
        try:
            for _ in range(300):
                pipeline = await pipeline_of(store, response)
                if pipeline.is_terminal:
                    break
                await asyncio.sleep(0.01)
        finally:
            for w in worker_pool:
                await w.stop()

        assert pipeline.status == PipelineStatus.COMPLETED
        assert gauge.peak <= 2


class TestRetries:
    """Retry policy under both strategies."""

    async def test_flaky_job_recovers(self, runner, worker, store, sink):
        graph = build_graph([node("f", "flaky", failures=2, key="f")])
        response = await runner.orchestrate(PipelineRequest(graph=graph))
        await worker.run_until_empty()

        pipeline = await pipeline_of(store, response)
        job = pipeline.get_job_by_node("f")
        assert pipeline.status == PipelineStatus.COMPLETED
        assert job.retry_count == 2
        assert job.output_data == {"attempts": 3}
        failures = sink.events("job.failed")
        assert [e["will_retry"] for e in failures] == [True, True]

    async def test_individual_exhausted_failure_isolated(self, runner, worker, store):
        graph = build_graph([
            node("ok1", "echo"),
            node("bad", "fail", max_retries=2),
            node("ok2", "echo"),
        ])
        response = await runner.orchestrate(PipelineRequest(graph=graph))
        await worker.run_until_empty()

        pipeline = await pipeline_of(store, response)
        bad = pipeline.get_job_by_node("bad")
        assert pipeline.status == PipelineStatus.COMPLETED
        assert bad.status == JobStatus.FAILED
        assert bad.retry_count == 2
        assert pipeline.get_job_by_node("ok1").status == JobStatus.COMPLETED
        assert pipeline.get_job_by_node("ok2").status == JobStatus.COMPLETED

    async def test_individual_failure_blocking_dependents_fails_pipeline(
            self, runner, worker, store):
        graph = build_graph(
            [node("a", "fail", max_retries=0), node("b", "echo"), node("c", "echo")],
            [edge("a", "b")],
        )
        response = await runner.orchestrate(PipelineRequest(graph=graph))
        await worker.run_until_empty()

        pipeline = await pipeline_of(store, response)
        assert pipeline.status == PipelineStatus.FAILED
        assert "blocked" in pipeline.error_message
        assert pipeline.get_job_by_node("b").status == JobStatus.PENDING
        assert pipeline.get_job_by_node("c").status == JobStatus.COMPLETED

    async def test_stop_on_failure(self, runner, worker, store, sink):
        graph = build_graph([node("bad", "fail", max_retries=1, message="nope"),
                             node("slow", "slow", delay=0.01)])
        response = await runner.orchestrate(PipelineRequest(
            graph=graph, retry_strategy="stop_on_failure", max_concurrent_jobs=1))
        await worker.run_until_empty()

        pipeline = await pipeline_of(store, response)
        assert pipeline.status == PipelineStatus.FAILED
        assert "stop_on_failure" in pipeline.error_message
        assert pipeline.get_job_by_node("bad").retry_count == 1
        assert sink.events("pipeline.failed")

    async def test_dataflow_error_not_retried(self, runner, worker, store):
        graph = build_graph([node("v", "echo", input_schema={
            "title": {"type": "string", "required": True}})])
        response = await runner.orchestrate(PipelineRequest(graph=graph))
        await worker.run_until_empty()

        job = (await pipeline_of(store, response)).get_job_by_node("v")
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 0

    async def test_exhausted_job_goes_to_dlq(self, runner, worker, store):
        graph = build_graph([node("bad", "fail", max_retries=0)])
        response = await runner.orchestrate(PipelineRequest(graph=graph))
        await worker.run_until_empty()

        entries = await runner.dlq.list_entries()
        assert len(entries) == 1
        assert entries[0].pipeline_id == response.execution_id
        assert entries[0].node_id == "bad"


class TestOperatorControls:
    """Pause, resume, cancel and status."""

    async def test_pause_stops_dispatch_and_resume_restarts(self, runner, worker, store):
        response = await runner.orchestrate(PipelineRequest(
            graph=chain_graph(3), max_concurrent_jobs=1))
        pipeline_id = response.execution_id

        await runner.pause(pipeline_id)
        await worker.run_until_empty()
        pipeline = await store.load_pipeline(pipeline_id)
        assert pipeline.status == PipelineStatus.PAUSED
        assert pipeline.get_job_by_node("n0").status == JobStatus.COMPLETED
        assert pipeline.get_job_by_node("n1").status == JobStatus.PENDING

        await runner.resume(pipeline_id)
        await worker.run_until_empty()
        pipeline = await store.load_pipeline(pipeline_id)
        assert pipeline.status == PipelineStatus.COMPLETED

    async def test_cancel_discards_late_results(self, runner, worker, store, sink):
        response = await runner.orchestrate(PipelineRequest(
            graph=chain_graph(3), max_concurrent_jobs=1))
        pipeline_id = response.execution_id

        await runner.cancel(pipeline_id)
        await worker.run_until_empty()

        pipeline = await store.load_pipeline(pipeline_id)
        assert pipeline.status == PipelineStatus.CANCELLED
        assert pipeline.get_job_by_node("n1").status == JobStatus.CANCELLED
        assert pipeline.get_job_by_node("n2").status == JobStatus.CANCELLED
        assert not sink.events("job.completed")
        assert not sink.events("pipeline.completed")

    async def test_invalid_operator_transition(self, runner, worker):
        response = await runner.orchestrate(PipelineRequest(graph=chain_graph(1)))
        await worker.run_until_empty()
        with pytest.raises(OrchestrationError):
            await runner.pause(response.execution_id)
        with pytest.raises(OrchestrationError):
            await runner.resume(response.execution_id)

    async def test_unknown_pipeline(self, runner):
        with pytest.raises(OrchestrationError) as exc_info:
            await runner.get_status("missing")
        assert exc_info.value.pipeline_id == "missing"

    async def test_get_status(self, runner, worker):
        response = await runner.orchestrate(PipelineRequest(graph=chain_graph(2)))
        await worker.run_until_empty()
        status = await runner.get_status(response.execution_id)
        assert status["status"] == "completed"
        assert status["job_counts"]["completed"] == 2
        assert [j["node_id"] for j in status["jobs"]] == ["n0", "n1"]
        assert status["all_jobs_finished"] is True

    async def test_stale_report_is_ignored(self, runner, worker, store):
        response = await runner.orchestrate(PipelineRequest(graph=chain_graph(1)))
        await worker.run_until_empty()
        pipeline = await store.load_pipeline(response.execution_id)
        job = pipeline.jobs[0]

        again = await runner.handle_job_completion(pipeline.id, job.id, {"late": True})
        assert again.get_job(job.id).output_data != {"late": True}


@pytest.fixture(params=["memory", "redis"])
def shared_store(request, fake_redis, monkeypatch):
    """Store whose pipeline loads yield to the event loop."""
    if request.param == "memory":
        shared = InMemoryStore()
    else:
        shared = RedisStore(fake_redis, prefix="test", lock_poll_interval=0.001)
    original = shared.load_pipeline

    async def slow_load(pipeline_id):
        await asyncio.sleep(0.001)
        return await original(pipeline_id)

    monkeypatch.setattr(shared, "load_pipeline", slow_load)
    return shared


class TestPipelineLocking:
    """Pipeline mutations are serialized through the store."""

    async def test_runners_sharing_a_store_do_not_lose_updates(
            self, compiler, shared_store, runtime, resolver, evaluator, sink, settings):
        first, second = [
            AsyncRunner(compiler, shared_store, runtime, resolver, evaluator,
                        event_sink=sink, settings=settings)
            for _ in range(2)
        ]
        response = await first.orchestrate(PipelineRequest(
            graph=build_graph([node("a", "echo"), node("b", "echo")])))
        pipeline = await shared_store.load_pipeline(response.execution_id)
        a_id = pipeline.get_job_by_node("a").id
        b_id = pipeline.get_job_by_node("b").id

        await asyncio.gather(
            first.handle_job_completion(pipeline.id, a_id, {"from": "a"}),
            second.handle_job_completion(pipeline.id, b_id, {"from": "b"}),
        )

        final = await shared_store.load_pipeline(pipeline.id)
        assert final.get_job(a_id).status == JobStatus.COMPLETED
        assert final.get_job(b_id).status == JobStatus.COMPLETED
        assert final.status == PipelineStatus.COMPLETED
        assert len(sink.events("pipeline.completed")) == 1

    async def test_redis_lock_released_after_update(
            self, compiler, runtime, resolver, evaluator, sink, settings, fake_redis):
        store = RedisStore(fake_redis, prefix="test")
        runner = AsyncRunner(compiler, store, runtime, resolver, evaluator,
                             event_sink=sink, settings=settings)
        response = await runner.orchestrate(PipelineRequest(graph=chain_graph(1)))

        assert f"test:lock:pipeline:{response.execution_id}" not in fake_redis.strings

    async def test_finished_pipelines_leave_no_locks(self, runner, worker, store):
        responses = [
            await runner.orchestrate(PipelineRequest(graph=build_graph([node("a", "echo")])))
            for _ in range(20)
        ]
        await worker.run_until_empty()

        for response in responses:
            pipeline = await store.load_pipeline(response.execution_id)
            assert pipeline.status == PipelineStatus.COMPLETED
        assert store.lock_count() == 0


class TestDrain:
    """Inline drain variant with the iteration cap."""

    async def test_drain_completes_pipeline(self, compiler, store, runtime, resolver,
                                            evaluator, sink, settings):
        runner = AsyncRunner(compiler, store, runtime, resolver, evaluator,
                             event_sink=sink, settings=settings)
        plan = compiler.compile(chain_graph(3))
        pipeline = create_pipeline(plan, {"v": 2})
        await store.save_pipeline(pipeline)

        response = await runner.execute_pipeline(pipeline.id)
        assert response.status == PipelineStatus.COMPLETED
        assert response.metadata["iterations"] == 3

    async def test_iteration_cap_pauses(self, compiler, store, runner, worker, sink):
        pipeline = create_pipeline(compiler.compile(chain_graph(5)))
        await store.save_pipeline(pipeline)

        response = await runner.execute_pipeline(pipeline.id, max_iterations=2)
        assert response.status == PipelineStatus.PAUSED
        assert "Maximum iterations (2)" in response.metadata["error_message"]
        paused = sink.events("pipeline.paused")
        assert paused and paused[0]["iterations"] == 2

        await runner.resume(pipeline.id)
        await worker.run_until_empty()
        final = await store.load_pipeline(pipeline.id)
        assert final.status == PipelineStatus.COMPLETED

    async def test_drain_retries_inline(self, compiler, store, runner):
        pipeline = create_pipeline(compiler.compile(
            build_graph([node("f", "flaky", failures=1, key="drain")])))
        await store.save_pipeline(pipeline)

        response = await runner.execute_pipeline(pipeline.id)
        assert response.status == PipelineStatus.COMPLETED
        loaded = await store.load_pipeline(pipeline.id)
        assert loaded.get_job_by_node("f").retry_count == 1
