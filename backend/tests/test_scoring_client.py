import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import asyncio
import json

import httpx
import pytest

from observa.core.errors import ScoringServiceError
from observa.services.scoring_client import ScoringClient


def client_for(handler):
    return ScoringClient("http://scoring.local/", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_posts_context_to_layer_endpoint():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"faithfulness_score": 0.9})

    client = client_for(handler)
    result = asyncio.run(client.analyze("layer4", {"query": "q", "response": "r"}))

    assert result == {"faithfulness_score": 0.9}
    assert seen["url"] == "http://scoring.local/analyze/layer4"
    assert seen["body"] == {"query": "q", "response": "r"}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="unavailable"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=["not", "an", "object"]),
    ],
)
def test_bad_responses_raise_scoring_errors(response):
    client = client_for(lambda request: response)

    with pytest.raises(ScoringServiceError):
        asyncio.run(client.analyze("layer3", {}))


def test_transport_failures_raise_scoring_errors():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ScoringServiceError) as excinfo:
        asyncio.run(client_for(handler).analyze("layer4", {}))
    assert "timed out" in excinfo.value.message


def test_status_code_is_reported():
    client = client_for(lambda request: httpx.Response(500))

    with pytest.raises(ScoringServiceError) as excinfo:
        asyncio.run(client.analyze("layer4", {}))
    assert excinfo.value.details == {"layer": "layer4", "status_code": 500}
