"""
End-to-end runs: real QueueClient and TunnelRunner against the in-memory
queue server, with real providers talking to mocked local backends.
"""

import asyncio
import base64
import json

import httpx
import pytest

from conftest import COMFY_URL, QUEUE_URL, FakeChannel, FakeQueueServer, channel_factory
from shared.schemas import JobRequest
from tunnel.config import ComfyConfig, RunnerConfig
from tunnel.providers.comfyui import ComfyUIProvider
from tunnel.providers.ollama import OllamaProvider
from tunnel.queue_api import QueueClient
from tunnel.runner import TunnelRunner
from tunnel.workflows.registry import SEED_SPACE

LTX_MODEL = "ltx-video-2b-v0.9.5.safetensors"


def chat_job(request_id="req-text", model="llama3.2:latest", request_type="llm_chat"):
    return {
        "id": request_id,
        "modelId": model,
        "requestType": request_type,
        "payload": {"messages": [{"role": "user", "content": "Say hello"}], "temperature": 0.7},
    }


def video_job(request_id="req-video", seed=-1, **config):
    return {
        "id": request_id,
        "modelId": LTX_MODEL,
        "requestType": "video_generation",
        "payload": {"prompt": "a lighthouse at dusk", "config": {"seed": seed, "numFrames": 17, "fps": 8, **config}},
    }


def ollama_backend(words=("Hello", " there", "!")):
    def handler(request):
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama3.2:latest"}]})
        if request.url.path == "/api/chat":
            lines = [json.dumps({"message": {"content": w}, "done": False}) for w in words]
            lines.append(json.dumps({"message": {"content": ""}, "done": True}))
            return httpx.Response(200, content="\n".join(lines).encode())
        return httpx.Response(404)

    return OllamaProvider("http://ollama.test", transport=httpx.MockTransport(handler))


def comfy_backend(fake_comfy, channel, job_timeout_s=30.0):
    fake_comfy.object_info = {"CheckpointLoaderSimple": [LTX_MODEL]}
    return ComfyUIProvider(
        COMFY_URL,
        transport=fake_comfy.transport(),
        connect=channel_factory(channel),
        settings=ComfyConfig(job_timeout_s=job_timeout_s, poll_interval_s=0.01),
    )


async def run_until_results(runner, fake_queue, count, timeout=5.0):
    """Run the poll loop until ``count`` requests have a result, then stop it."""
    async def watch():
        while len(fake_queue.results) < count:
            await asyncio.sleep(0.01)
        runner.stop()

    watcher = asyncio.create_task(watch())
    await asyncio.wait_for(asyncio.gather(runner.run(), watcher), timeout=timeout)


class TestTextJob:
    @pytest.mark.asyncio
    async def test_progress_then_exactly_one_result(self):
        fake_queue = FakeQueueServer([chat_job()])
        async with QueueClient(QUEUE_URL, "good-key", transport=fake_queue.transport()) as queue:
            runner = TunnelRunner(queue, [ollama_backend()], RunnerConfig(poll_backoff_s=0.01))
            await run_until_results(runner, fake_queue, 1)

        assert fake_queue.synced == [{"name": "llama3.2:latest", "provider": "ollama", "type": "llm_chat"}]
        progress = fake_queue.progress["req-text"]
        assert len(progress) >= 1
        assert progress[-1] == {"type": "chunk", "content": "Hello there!"}

        [result] = fake_queue.results["req-text"]
        assert result["success"] is True
        assert result["result"]["content"] == "Hello there!"
        assert fake_queue.disconnected is True
        assert set(fake_queue.auth_headers) == {"Bearer good-key"}

    @pytest.mark.asyncio
    async def test_failures_still_get_one_result_each(self):
        jobs = [
            chat_job("req-missing", model="no-such-model"),
            chat_job("req-type", request_type="audio_generation"),
            chat_job("req-mismatch", request_type="image_generation"),
        ]
        fake_queue = FakeQueueServer(jobs)
        async with QueueClient(QUEUE_URL, "good-key", transport=fake_queue.transport()) as queue:
            runner = TunnelRunner(queue, [ollama_backend()])
            await run_until_results(runner, fake_queue, 3)

        assert {k: len(v) for k, v in fake_queue.results.items()} == {
            "req-missing": 1, "req-type": 1, "req-mismatch": 1,
        }
        assert fake_queue.results["req-missing"][0] == {
            "success": False,
            "error": "Model no-such-model not found. Is it registered on your local server?",
        }
        assert fake_queue.results["req-type"][0]["error"] == "Unknown request type: audio_generation"
        assert fake_queue.results["req-mismatch"][0]["error"] == "Provider Ollama does not support image generation"
        assert runner.failed == 3

    @pytest.mark.asyncio
    async def test_null_payload_fields_still_produce_one_result(self):
        job = chat_job("req-null")
        job["payload"] = {"messages": None, "config": None}
        malformed = {"id": "req-broken", "requestType": "llm_chat", "payload": None}
        fake_queue = FakeQueueServer([job, malformed])
        async with QueueClient(QUEUE_URL, "good-key", transport=fake_queue.transport()) as queue:
            runner = TunnelRunner(queue, [ollama_backend()], RunnerConfig(poll_backoff_s=0.01))
            await run_until_results(runner, fake_queue, 2)

        [result] = fake_queue.results["req-null"]
        assert result["success"] is True
        assert result["result"]["content"] == "Hello there!"
        [rejected] = fake_queue.results["req-broken"]
        assert rejected["success"] is False
        assert "modelId" in rejected["error"]

    @pytest.mark.asyncio
    async def test_poll_failures_back_off_and_recover(self):
        fake_queue = FakeQueueServer([chat_job()])
        fake_queue.poll_failures = 2
        async with QueueClient(QUEUE_URL, "good-key", transport=fake_queue.transport()) as queue:
            runner = TunnelRunner(queue, [ollama_backend()], RunnerConfig(poll_backoff_s=0.01))
            await run_until_results(runner, fake_queue, 1)

        assert fake_queue.polls >= 3
        assert fake_queue.results["req-text"][0]["success"] is True


class TestVideoJob:
    @pytest.mark.asyncio
    async def test_auto_seed_video(self, fake_comfy):
        channel = FakeChannel([
            {"type": "execution_start", "data": {"prompt_id": "prompt-1"}},
            {"type": "progress", "data": {"value": 5, "max": 20, "prompt_id": "prompt-1"}},
            {"type": "executing", "data": {"node": None, "prompt_id": "prompt-1"}},
        ])
        fake_comfy.outputs = {"8": {"gifs": [{"filename": "ltx_00001.mp4", "subfolder": "", "type": "output"}]}}
        fake_comfy.files = {"ltx_00001.mp4": b"\x00\x00\x00\x18ftypmp42"}
        fake_queue = FakeQueueServer([video_job(seed=-1)])

        async with QueueClient(QUEUE_URL, "good-key", transport=fake_queue.transport()) as queue:
            runner = TunnelRunner(queue, [comfy_backend(fake_comfy, channel)])
            await run_until_results(runner, fake_queue, 1)

        [synced] = fake_queue.synced
        assert (synced["name"], synced["type"]) == (LTX_MODEL, "video_generation")

        [result] = fake_queue.results["req-video"]
        assert result["success"] is True
        video = result["result"]
        assert base64.b64decode(video["videoBase64"]) == fake_comfy.files["ltx_00001.mp4"]
        assert video["mimeType"] == "video/mp4"
        assert video["fps"] == 8
        assert video["duration"] == pytest.approx(17 / 8)

        # The seed reported back is the one that went into the graph
        graph = fake_comfy.submitted[0]["prompt"]
        assert 0 <= video["seed"] < SEED_SPACE
        assert graph["6"]["inputs"]["seed"] == video["seed"]
        assert graph["5"]["inputs"]["length"] == 17

        progress = fake_queue.progress["req-video"]
        assert progress[0] == {"type": "generation", "step": 5, "totalSteps": 20}
        assert progress[-1] == {"type": "generation", "step": 20, "totalSteps": 20}
        assert channel.closed is True
        assert channel.url.startswith("ws://127.0.0.1:8188/ws?clientId=tunnel_")

    @pytest.mark.asyncio
    async def test_silent_backend_times_out(self, fake_comfy):
        channel = FakeChannel([], hang=True)
        fake_queue = FakeQueueServer()

        async with QueueClient(QUEUE_URL, "good-key", transport=fake_queue.transport()) as queue:
            runner = TunnelRunner(queue, [comfy_backend(fake_comfy, channel, job_timeout_s=0.05)])
            assert await runner.start() is True
            result = await runner.process(JobRequest.model_validate(video_job(seed=7)))

        assert result.success is False
        assert result.error_kind == "timeout"
        [posted] = fake_queue.results["req-video"]
        assert posted["success"] is False
        assert posted["error"].startswith("Video generation timed out")
        assert channel.closed is True
        assert "/queue" in fake_comfy.paths

    @pytest.mark.asyncio
    async def test_image_request_for_video_checkpoint_is_refused(self, fake_comfy):
        channel = FakeChannel([], hang=True)
        job = {**video_job(seed=3), "requestType": "image_generation"}
        fake_queue = FakeQueueServer()

        async with QueueClient(QUEUE_URL, "good-key", transport=fake_queue.transport()) as queue:
            runner = TunnelRunner(queue, [comfy_backend(fake_comfy, channel)])
            await runner.start()
            result = await runner.process(JobRequest.model_validate(job))

        assert result.success is False
        [posted] = fake_queue.results["req-video"]
        assert posted["error"] == "Provider ComfyUI does not support image generation"
        assert fake_comfy.submitted == []

    @pytest.mark.asyncio
    async def test_validation_failure_is_reported(self, fake_comfy):
        channel = FakeChannel([], hang=True)
        fake_comfy.node_errors = {
            "6": {"class_type": "KSampler", "errors": [{"message": "Value out of range", "details": "steps"}]},
        }
        fake_queue = FakeQueueServer()

        async with QueueClient(QUEUE_URL, "good-key", transport=fake_queue.transport()) as queue:
            runner = TunnelRunner(queue, [comfy_backend(fake_comfy, channel)])
            await runner.start()
            result = await runner.process(JobRequest.model_validate(video_job(seed=1)))

        assert result.error_kind == "validation_failed"
        [posted] = fake_queue.results["req-video"]
        assert posted["error"].startswith("ComfyUI workflow validation failed:")
        assert "KSampler" in posted["error"]
        assert channel.closed is True
