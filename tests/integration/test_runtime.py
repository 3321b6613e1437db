"""
Integration tests for the JSON-RPC runtime

Exercises request handling, error serialization, stream notifications
(JSON lines and MessagePack frames) and the stdin read loop.
"""

import asyncio
import io
import struct

import msgpack
import orjson
import pytest

from runtime import MSG_TYPE_DONE, MSG_TYPE_TOKEN, RUNTIME_VERSION, RuntimeServer

MESSAGES = [{"role": "user", "content": "print hello"}]


def _lines(output: io.StringIO):
    return [orjson.loads(line) for line in output.getvalue().splitlines() if line]


@pytest.fixture
def server(server_state):
    return RuntimeServer(server_state, output=io.StringIO())


class TestHandleRequest:
    @pytest.mark.asyncio
    async def test_runtime_info(self, server):
        response = await server.handle_request({"jsonrpc": "2.0", "id": 1, "method": "runtime/info"})

        result = response["result"]
        assert response["id"] == 1
        assert result["version"] == RUNTIME_VERSION
        assert result["models"] == ["yi-coder", "deepseek-coder"]
        assert result["loaded_models"] == []

    @pytest.mark.asyncio
    async def test_models_list(self, server):
        response = await server.handle_request({"jsonrpc": "2.0", "id": 2, "method": "models/list"})
        assert [m["id"] for m in response["result"]["data"]] == ["yi-coder", "deepseek-coder"]

    @pytest.mark.asyncio
    async def test_buffered_chat_completion(self, server):
        response = await server.handle_request(
            {
                "jsonrpc": "2.0",
                "id": 3,
                "method": "chat/completions",
                "params": {"model": "yi-coder", "messages": MESSAGES, "max_tokens": 16},
            }
        )

        body = response["result"]
        assert body["object"] == "chat.completion"
        assert body["choices"][0]["message"]["content"] == "hello"
        assert body["choices"][0]["finish_reason"] == "stop"
        orjson.dumps(response)

    @pytest.mark.asyncio
    async def test_validation_error(self, server):
        response = await server.handle_request(
            {
                "jsonrpc": "2.0",
                "id": 4,
                "method": "chat/completions",
                "params": {"model": "yi-coder", "messages": MESSAGES, "temperature": 0},
            }
        )

        assert response["error"]["code"] == -32602
        assert response["error"]["data"]["type"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_unknown_model_error(self, server):
        response = await server.handle_request(
            {"jsonrpc": "2.0", "id": 5, "method": "models/status", "params": {"model_id": "nope"}}
        )

        assert response["error"]["code"] == -32005
        assert response["error"]["data"] == {"type": "UnknownModelError", "model_id": "nope"}

    @pytest.mark.asyncio
    async def test_download_failure_error(self, server, fetcher):
        fetcher.fail_on.add("config.json")
        response = await server.handle_request(
            {"jsonrpc": "2.0", "id": 6, "method": "models/download", "params": {"model_id": "yi-coder"}}
        )

        assert response["error"]["code"] == -32004
        status = await server.handle_request(
            {"jsonrpc": "2.0", "id": 7, "method": "models/status", "params": {"model_id": "yi-coder"}}
        )
        assert status["result"]["state"] == "failed"

    @pytest.mark.asyncio
    async def test_unknown_method(self, server):
        response = await server.handle_request({"jsonrpc": "2.0", "id": 8, "method": "nope"})
        assert response["error"]["code"] == -32602
        assert "Unknown method" in response["error"]["message"]

    @pytest.mark.asyncio
    async def test_notification_gets_no_response(self, server):
        assert await server.handle_request({"jsonrpc": "2.0", "method": "models/list"}) is None
        assert await server.handle_request({"jsonrpc": "2.0", "method": "nope"}) is None

    @pytest.mark.asyncio
    async def test_internal_errors_are_not_leaked(self, server):
        def explode():
            raise RuntimeError("secret detail")

        server.dispatcher.list_models = explode
        response = await server.handle_request({"jsonrpc": "2.0", "id": 9, "method": "models/list"})

        assert response["error"]["code"] == -32603
        assert "secret" not in response["error"]["message"]


class TestStreaming:
    @pytest.mark.asyncio
    async def test_json_notifications(self, server):
        response = await server.handle_request(
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "chat/completions",
                "params": {"model": "yi-coder", "messages": MESSAGES, "stream": True},
            }
        )
        stream_id = response["result"]["stream_id"]
        await server.stream_tasks[stream_id]

        notifications = _lines(server.output)
        methods = [n["method"] for n in notifications]
        assert methods[-1] == "stream.done"
        assert methods.count("stream.chunk") == 6

        chunks = [n["params"] for n in notifications if n["method"] == "stream.chunk"]
        assert all(c["stream_id"] == stream_id for c in chunks)
        assert "".join(c["choices"][0]["delta"].get("content", "") for c in chunks) == "hello"
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
        assert stream_id not in server.stream_tasks

    @pytest.mark.asyncio
    async def test_binary_frames(self, server_state):
        output = io.TextIOWrapper(io.BytesIO(), encoding="utf-8")
        server = RuntimeServer(server_state, output=output)
        server.binary_mode = True

        response = await server.handle_request(
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "chat/completions",
                "params": {"model": "yi-coder", "messages": MESSAGES, "stream": True, "max_tokens": 2},
            }
        )
        await server.stream_tasks[response["result"]["stream_id"]]

        raw = output.buffer.getvalue()
        frames = []
        offset = 0
        while offset < len(raw):
            (length,) = struct.unpack(">I", raw[offset:offset + 4])
            frames.append(msgpack.unpackb(raw[offset + 4:offset + 4 + length], raw=False))
            offset += 4 + length

        assert [f["t"] for f in frames] == [MSG_TYPE_TOKEN, MSG_TYPE_TOKEN, MSG_TYPE_TOKEN, MSG_TYPE_DONE]
        assert frames[0]["p"]["choices"][0]["delta"]["content"] == "h"

    @pytest.mark.asyncio
    async def test_stream_cancel(self, config, fetcher):
        from fakes import FakeLoader, cpu_only_probe
        from server_state import ServerState

        state = ServerState.from_config(
            config,
            fetcher=fetcher,
            loader_fn=FakeLoader(text="x", repeat=True, decode_delay=0.002),
            device_probe=cpu_only_probe,
        )
        server = RuntimeServer(state, output=io.StringIO())
        try:
            response = await server.handle_request(
                {
                    "jsonrpc": "2.0",
                    "id": 1,
                    "method": "chat/completions",
                    "params": {"model": "yi-coder", "messages": MESSAGES, "stream": True, "max_tokens": 4096},
                }
            )
            stream_id = response["result"]["stream_id"]
            await asyncio.sleep(0.05)

            cancelled = await server.handle_request(
                {"jsonrpc": "2.0", "id": 2, "method": "stream/cancel", "params": {"stream_id": stream_id}}
            )
            assert cancelled["result"] == {"cancelled": True}
            await asyncio.wait_for(asyncio.gather(*server.stream_tasks.values()), timeout=5.0)
            assert "stream.done" not in [n["method"] for n in _lines(server.output)]
        finally:
            state.close()


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_reads_requests_until_shutdown(self, server):
        requests = [
            {"jsonrpc": "2.0", "id": 1, "method": "runtime/info"},
            {"jsonrpc": "2.0", "id": 2, "method": "shutdown"},
            {"jsonrpc": "2.0", "id": 3, "method": "runtime/info"},
        ]
        stdin = io.StringIO("".join(orjson.dumps(r).decode() + "\n" for r in requests))

        await server.run(stdin)

        responses = _lines(server.output)
        assert [r["id"] for r in responses] == [1, 2]
        assert responses[1]["result"] == {"success": True}
        assert server.shutdown_requested

    @pytest.mark.asyncio
    async def test_slow_load_does_not_block_other_requests(self, config, fetcher):
        from fakes import FakeLoader, cpu_only_probe
        from server_state import ServerState

        state = ServerState.from_config(
            config, fetcher=fetcher, loader_fn=FakeLoader(delay=0.3), device_probe=cpu_only_probe
        )
        server = RuntimeServer(state, output=io.StringIO())
        requests = [
            {"jsonrpc": "2.0", "id": 1, "method": "models/load", "params": {"model_id": "yi-coder"}},
            {"jsonrpc": "2.0", "id": 2, "method": "runtime/info"},
            {"jsonrpc": "2.0", "id": 3, "method": "models/status", "params": {"model_id": "deepseek-coder"}},
        ]
        stdin = io.StringIO("".join(orjson.dumps(r).decode() + "\n" for r in requests))

        await server.run(stdin)

        responses = _lines(server.output)
        assert [r["id"] for r in responses] == [2, 3, 1]
        assert responses[0]["result"]["loaded_models"] == []
        assert responses[2]["result"]["id"] == "yi-coder"
        assert not server.request_tasks

    @pytest.mark.asyncio
    async def test_invalid_request(self, server):
        stdin = io.StringIO("[1, 2]\n")
        await server.run(stdin)

        responses = _lines(server.output)
        assert responses[0]["error"]["code"] == -32600
