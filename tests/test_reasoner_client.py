import json

import pytest
import respx
from httpx import Response

from plancore.config import EndpointConfig
from plancore.errors import ReasonerError
from plancore.llm import ReasonerClient


URL = "http://reasoner.test/v1/chat/completions"


def make_client(api_key=None, max_output_tokens=None) -> ReasonerClient:
    endpoint = EndpointConfig(base_url="http://reasoner.test/v1/", model_id="test-model", api_key=api_key)
    return ReasonerClient(endpoint, max_output_tokens=max_output_tokens)


@pytest.mark.asyncio
async def test_structured_chat_payload_and_parsing():
    client = make_client(api_key="sk-test", max_output_tokens=500)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                content = 'Result:\n```json\n{"decision": "retry"}\n```'
                return Response(200, json={"choices": [{"message": {"content": content}}]})

            respx_mock.post(URL).mock(side_effect=handler)
            data = await client.chat(
                [{"role": "system", "content": "sys"}, {"role": "user", "content": "go"}],
                temperature=0.1,
                max_tokens=2000,
                structured=True,
            )
        assert data == {"decision": "retry"}
        assert captured["json"]["model"] == "test-model"
        assert captured["json"]["max_tokens"] == 500
        assert captured["json"]["temperature"] == 0.1
        assert captured["json"]["response_format"] == {"type": "json_object"}
        assert captured["json"]["stream"] is False
        assert captured["headers"]["Authorization"] == "Bearer sk-test"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_plain_chat_uses_reasoning_content_when_content_empty():
    client = make_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(
                return_value=Response(200, json={"choices": [{"message": {"content": "", "reasoning_content": "thinking out loud"}}]})
            )
            text = await client.chat([{"role": "user", "content": "hi"}])
        assert text == "thinking out loud"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_structured_chat_returns_empty_dict_for_prose():
    client = make_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(200, json={"choices": [{"message": {"content": "no idea"}}]}))
            data = await client.chat([{"role": "user", "content": "hi"}], structured=True)
        assert data == {}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_http_error_raises_reasoner_error():
    client = make_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(500, json={"error": "boom"}))
            with pytest.raises(ReasonerError):
                await client.chat([{"role": "user", "content": "hi"}])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_non_json_body_raises_reasoner_error():
    client = make_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(200, text="<html>gateway</html>"))
            with pytest.raises(ReasonerError):
                await client.chat([{"role": "user", "content": "hi"}], structured=True)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_list_body_raises_reasoner_error():
    client = make_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(URL).mock(return_value=Response(200, json=[{"content": "hi"}]))
            with pytest.raises(ReasonerError):
                await client.chat([{"role": "user", "content": "hi"}])
    finally:
        await client.close()
