"""GenerationSessionController tests: end-to-end sessions over the fakes."""

import asyncio
from datetime import datetime

import pytest

from wardrobe_ai.db.models import OutfitItem, UserSettings
from wardrobe_ai.jobs.client import JobClient
from wardrobe_ai.jobs.errors import SessionAlreadyActive
from wardrobe_ai.jobs.models import Job, JobStatus, JobType
from wardrobe_ai.jobs.polling import PollingEngine
from wardrobe_ai.pipeline.base import PipelineContext
from wardrobe_ai.pipeline.outfit import OutfitRenderPipeline
from wardrobe_ai.pipeline.try_on import TryOnPipeline
from wardrobe_ai.sessions.controller import (
    GenerationSessionController,
    SessionListener,
    SessionStatus,
)
from wardrobe_ai.sessions.state import Failed, FailureKind, Succeeded, TimedOut

from conftest import FakeAssetStore, FakeJobStore

RUNNING = JobStatus.RUNNING
SUCCEEDED = JobStatus.SUCCEEDED
FAILED = JobStatus.FAILED


class RecordingListener(SessionListener):
    def __init__(self):
        self.progress = []
        self.events = []

    def on_progress(self, session, message):
        self.progress.append((session.phase, session.progress_percent, message))

    def on_succeeded(self, session, result):
        self.events.append(("succeeded", session, result))

    def on_failed(self, session, result):
        self.events.append(("failed", session, result))

    def on_policy_blocked(self, session, result):
        self.events.append(("policy_blocked", session, result))

    def on_timed_out(self, session, result):
        self.events.append(("timed_out", session, result))

    def on_cancelled(self, session, result):
        self.events.append(("cancelled", session, result))


class GatedAssetStore(FakeAssetStore):
    """Downloads wait until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def download(self, url):
        await self.gate.wait()
        return await super().download(url)


class SlowRunnerStore(FakeJobStore):
    """The runner holds the trigger request open until the job is done."""

    def __init__(self):
        super().__init__()
        self.answered = asyncio.Event()

    async def trigger(self, job_id):
        self.triggered.append(job_id)
        await self.answered.wait()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def controller(client, engine, listener):
    return GenerationSessionController(client, engine, listener)


@pytest.fixture
def pipeline(client, repository, assets, items, cache):
    return OutfitRenderPipeline(client, repository, assets, items, categories=repository.categories, cache=cache)


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_render_succeeds_on_fifth_attempt(self, controller, listener, store, pipeline):
        store.script(JobType.OUTFIT_RENDER, [RUNNING] * 4 + [SUCCEEDED])
        ctx = PipelineContext(owner_id="user-1")

        result = await controller.generate("selection-1", pipeline, ctx)

        assert result.status == SessionStatus.SUCCEEDED
        assert result.ok
        assert result.result == {"image_id": "img-generated", "outfit_id": ctx.draft_id}
        assert store.reads[result.job_id] == 5
        kind, session, _ = listener.events[-1]
        assert kind == "succeeded"
        assert isinstance(session.state, Succeeded)
        assert session.progress_percent == 100
        percents = [p for _, p, _ in listener.progress]
        assert percents == sorted(percents)
        # follow-up refetched the saved outfit
        assert ctx.values["entity"].id == ctx.draft_id
        assert ctx.job is None
        assert not controller.is_generating("selection-1")

    @pytest.mark.asyncio
    async def test_missing_prerequisite_fails_without_job(self, controller, listener, store, repository, pipeline):
        repository.user_settings["user-1"] = UserSettings(user_id="user-1")

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        assert result.status == SessionStatus.FAILED
        assert not result.retryable
        assert result.job_id is None
        assert store.created == []
        _, session, _ = listener.events[-1]
        assert session.state.kind == FailureKind.PREREQUISITE

    @pytest.mark.asyncio
    async def test_phase_failure_is_retryable(self, controller, assets, store, pipeline):
        assets.failing.add("https://cdn.test/media/user-1/item-1.jpg")

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        assert result.status == SessionStatus.FAILED
        assert result.retryable
        assert result.phase == "acquire_assets"
        assert store.created == []

    @pytest.mark.asyncio
    async def test_timeout_releases_guard_and_keeps_job(self, controller, listener, store, sleeper, pipeline):
        store.script(JobType.OUTFIT_RENDER, [RUNNING])
        ctx = PipelineContext(owner_id="user-1")

        result = await controller.generate("selection-1", pipeline, ctx)

        assert result.status == SessionStatus.TIMED_OUT
        assert "still in progress" in result.message
        assert result.job_id == ctx.job.id
        assert not controller.is_generating("selection-1")
        assert store.reads[result.job_id] == 61
        assert sleeper.total <= 60 * 2.0
        _, session, _ = listener.events[-1]
        assert isinstance(session.state, TimedOut)

        # Same context later: watches the same job instead of submitting again.
        store.script(JobType.OUTFIT_RENDER, [SUCCEEDED])
        again = await controller.generate("selection-1", pipeline, ctx)

        assert again.status == SessionStatus.SUCCEEDED
        assert again.job_id == result.job_id
        assert len(store.created) == 1

    @pytest.mark.asyncio
    async def test_policy_block_message(self, controller, listener, store, pipeline):
        store.script(JobType.OUTFIT_RENDER, [RUNNING, FAILED], error="Generation blocked by provider safety filter")

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        assert result.status == SessionStatus.POLICY_BLOCKED
        assert "No credits were charged" in result.message
        assert "this outfit" in result.message
        assert not result.retryable
        kind, session, _ = listener.events[-1]
        assert kind == "policy_blocked"
        assert session.state.kind == FailureKind.POLICY_BLOCKED

    @pytest.mark.asyncio
    async def test_job_failure_uses_backend_message(self, controller, listener, store, pipeline):
        store.script(JobType.OUTFIT_RENDER, [FAILED], error="Worker crashed: out of memory")

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        assert result.status == SessionStatus.FAILED
        assert result.message == "Worker crashed: out of memory"
        assert result.retryable
        assert isinstance(listener.events[-1][1].state, Failed)

    @pytest.mark.asyncio
    async def test_job_failure_without_error_text(self, controller, store, pipeline):
        store.script(JobType.OUTFIT_RENDER, [FAILED])

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        assert result.message == "Generation failed. Please try again later."

    @pytest.mark.asyncio
    async def test_trigger_failure_still_polls_to_success(self, controller, store, pipeline):
        store.trigger_error = ConnectionError("network unreachable")
        store.script(JobType.OUTFIT_RENDER, [RUNNING, SUCCEEDED])

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        assert result.status == SessionStatus.SUCCEEDED
        assert store.triggered == [result.job_id]

    @pytest.mark.asyncio
    async def test_polling_does_not_wait_for_runner_answer(self, repository, assets, items, cache, sleeper):
        store = SlowRunnerStore()
        client = JobClient(store)
        controller = GenerationSessionController(client, PollingEngine(client, sleep=sleeper))
        pipeline = OutfitRenderPipeline(client, repository, assets, items, categories=repository.categories, cache=cache)
        store.script(JobType.OUTFIT_RENDER, [SUCCEEDED])

        result = await asyncio.wait_for(
            controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1")), timeout=2
        )

        assert result.ok
        assert store.triggered == [result.job_id]
        assert store.reads[result.job_id] == 1

        store.answered.set()
        await asyncio.gather(*client._pending)

    @pytest.mark.asyncio
    async def test_listener_error_after_success_keeps_outcome(self, client, engine, store, pipeline):
        class BrokenScreen(SessionListener):
            def on_succeeded(self, session, result):
                raise RuntimeError("screen already closed")

        controller = GenerationSessionController(client, engine, BrokenScreen())
        store.script(JobType.OUTFIT_RENDER, [SUCCEEDED])

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        assert result.status == SessionStatus.SUCCEEDED
        assert result.result["image_id"] == "img-generated"
        assert not controller.is_generating("selection-1")


class TestGuard:
    @pytest.mark.asyncio
    async def test_second_request_rejected_then_accepted(self, client, store, pipeline):
        gate = asyncio.Event()

        async def gated_sleep(seconds):
            await gate.wait()

        controller = GenerationSessionController(client, PollingEngine(client, sleep=gated_sleep))
        store.script(JobType.OUTFIT_RENDER, [RUNNING, SUCCEEDED])

        task = asyncio.create_task(controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1")))
        for _ in range(50):
            await asyncio.sleep(0)
            if controller.session("selection-1") and controller.session("selection-1").job_id:
                break
        assert controller.is_generating("selection-1")

        with pytest.raises(SessionAlreadyActive):
            await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        # other entities are not blocked
        assert not controller.is_generating("selection-2")

        gate.set()
        first = await task
        assert first.ok
        assert not controller.is_generating("selection-1")

        second = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))
        assert second.ok

    @pytest.mark.asyncio
    async def test_saved_draft_is_guarded_while_rendering(self, client, store, pipeline):
        gate = asyncio.Event()

        async def gated_sleep(seconds):
            await gate.wait()

        controller = GenerationSessionController(client, PollingEngine(client, sleep=gated_sleep))
        store.script(JobType.OUTFIT_RENDER, [RUNNING, SUCCEEDED])
        ctx = PipelineContext(owner_id="user-1")

        task = asyncio.create_task(controller.generate("selection-1", pipeline, ctx))
        for _ in range(50):
            await asyncio.sleep(0)
            if controller.session("selection-1") and controller.session("selection-1").job_id:
                break
        assert controller.is_generating(ctx.draft_id)

        # The outfit page resumes by outfit id; it must not start a second watcher.
        with pytest.raises(SessionAlreadyActive):
            await controller.resume(ctx.draft_id, "user-1", JobType.OUTFIT_RENDER, "outfit_id")

        gate.set()
        first = await task
        assert first.ok
        assert store.reads[first.job_id] == 2
        assert not controller.is_generating(first.draft_id)

    @pytest.mark.asyncio
    async def test_guard_released_after_unexpected_error(self, client, engine, store, pipeline):
        class ExplodingListener(SessionListener):
            calls = 0

            def on_progress(self, session, message):
                ExplodingListener.calls += 1
                if ExplodingListener.calls == 1:
                    raise RuntimeError("ui went away")

        controller = GenerationSessionController(client, engine, ExplodingListener())
        store.script(JobType.OUTFIT_RENDER, [SUCCEEDED])

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        assert result.status == SessionStatus.FAILED
        assert result.message == "ui went away"
        assert result.retryable
        assert not controller.is_generating("selection-1")

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))
        assert result.ok


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_stops_polling(self, controller, listener, store, sleeper, pipeline):
        store.script(JobType.OUTFIT_RENDER, [RUNNING])
        sleeper.on_sleep = lambda n: controller.cancel("selection-1")

        result = await controller.generate("selection-1", pipeline, PipelineContext(owner_id="user-1"))

        assert result.status == SessionStatus.CANCELLED
        assert listener.events[-1][0] == "cancelled"
        assert store.jobs[result.job_id].status == RUNNING
        assert not controller.is_generating("selection-1")

    @pytest.mark.asyncio
    async def test_cancel_during_preprocessing_submits_nothing(
        self, client, engine, listener, store, repository, items, cache
    ):
        assets = GatedAssetStore()
        pipeline = OutfitRenderPipeline(client, repository, assets, items, categories=repository.categories, cache=cache)
        controller = GenerationSessionController(client, engine, listener)
        ctx = PipelineContext(owner_id="user-1")

        task = asyncio.create_task(controller.generate("selection-1", pipeline, ctx))
        for _ in range(50):
            await asyncio.sleep(0)
            session = controller.session("selection-1")
            if session is not None and session.phase == "acquire_assets":
                break
        assert controller.session("selection-1").phase == "acquire_assets"

        assert controller.cancel("selection-1")
        assets.gate.set()
        result = await task

        assert result.status == SessionStatus.CANCELLED
        assert result.phase == "composite"
        assert result.job_id is None
        assert result.draft_id == ctx.draft_id == "outfit-1"
        assert store.created == []
        assert store.triggered == []
        assert listener.events[-1][0] == "cancelled"
        assert not controller.is_generating("selection-1")
        assert not controller.is_generating("outfit-1")

        # Running the same context again picks up after the downloads.
        store.script(JobType.OUTFIT_RENDER, [SUCCEEDED])
        again = await controller.generate("selection-1", pipeline, ctx)

        assert again.ok
        assert len(store.created) == 1
        assert repository.saved_outfits == ["outfit-1"]

    @pytest.mark.asyncio
    async def test_cancel_during_mannequin_keeps_draft(
        self, client, engine, listener, store, sleeper, repository, saved_outfit
    ):
        saved_outfit.items.append(OutfitItem(wardrobe_item_id="item-3", category_id="cat-shoes", position=2))
        store.script(JobType.OUTFIT_MANNEQUIN, [RUNNING])
        controller = GenerationSessionController(client, engine, listener)
        sleeper.on_sleep = lambda n: controller.cancel(saved_outfit.id)
        pipeline = TryOnPipeline(client, engine, repository, saved_outfit.id)

        result = await controller.generate(saved_outfit.id, pipeline, PipelineContext(owner_id="user-1"))

        assert result.status == SessionStatus.CANCELLED
        assert result.phase == "mannequin"
        assert result.draft_id == "outfit-2"
        assert repository.archived_outfits == []
        assert [j.job_type for j in store.created] == [JobType.OUTFIT_MANNEQUIN]
        assert listener.events[-1][0] == "cancelled"
        assert not controller.is_generating(saved_outfit.id)

    def test_cancel_without_session(self, controller):
        assert controller.cancel("nothing") is False


class TestResume:
    @pytest.mark.asyncio
    async def test_resumes_active_job(self, controller, store):
        store.add_job(Job(id="job-7", owner_user_id="user-1", job_type=JobType.OUTFIT_RENDER,
                          status=RUNNING, input={"outfit_id": "outfit-7"}))
        store.script(JobType.OUTFIT_RENDER, [RUNNING, SUCCEEDED])

        result = await controller.resume("outfit-7", "user-1", JobType.OUTFIT_RENDER, "outfit_id")

        assert result.status == SessionStatus.SUCCEEDED
        assert result.job_id == "job-7"
        assert result.result["outfit_id"] == "outfit-7"
        assert not controller.is_generating("outfit-7")

    @pytest.mark.asyncio
    async def test_reports_recently_finished_job(self, controller, store):
        store.add_job(Job(id="job-8", owner_user_id="user-1", job_type=JobType.HEADSHOT_GENERATE,
                          status=FAILED, error="SAFETY block", updated_at=datetime.utcnow()))

        result = await controller.resume("headshot:user-1", "user-1", JobType.HEADSHOT_GENERATE)

        assert result.status == SessionStatus.POLICY_BLOCKED
        assert "this headshot" in result.message
        assert store.total_reads == 0

    @pytest.mark.asyncio
    async def test_nothing_to_resume(self, controller, store):
        store.add_job(Job(id="job-9", owner_user_id="user-1", job_type=JobType.OUTFIT_RENDER,
                          status=RUNNING, input={"outfit_id": "someone-else"}))

        assert await controller.resume("outfit-7", "user-1", JobType.OUTFIT_RENDER, "outfit_id") is None
        assert not controller.is_generating("outfit-7")
