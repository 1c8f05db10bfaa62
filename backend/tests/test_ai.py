"""Tests for the AI relay client."""
import base64
from unittest.mock import MagicMock

import pytest
import requests

from pixellite.errors import AIServiceError
from pixellite.processing.ai import AIClient


def _client(status=200, payload=None, text=""):
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    response = MagicMock()
    response.status_code = status
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    session.post.return_value = response
    return AIClient(base_url="https://relay.example.com/", api_key="k", session=session), session


def test_generated_image_is_decoded():
    client, session = _client(payload={"image": base64.b64encode(b"img").decode(), "mimeType": "image/webp", "text": "ok"})
    result = client.generate_enhanced_image("data:image/jpeg;base64,AAAA", "prompt", "img-model")
    assert (result.image, result.mime_type, result.text) == (b"img", "image/webp", "ok")
    url = session.post.call_args[0][0]
    assert url == "https://relay.example.com/api/enhance"


def test_markdown_image_in_text():
    encoded = base64.b64encode(b"png-bytes").decode()
    client, _ = _client(payload={"text": f"Here it is ![result](data:image/png;base64,{encoded})"})
    result = client.generate_enhanced_image("data:,", "p", "m")
    assert result.image == b"png-bytes"
    assert result.text == "Here it is"


def test_text_only_reply():
    client, _ = _client(payload={"text": "Sorry, I can only describe images."})
    result = client.generate_enhanced_image("data:,", "p", "m")
    assert result.image is None
    assert result.text.startswith("Sorry")


def test_relay_error_status():
    client, _ = _client(status=500, payload={"error": "quota exceeded"})
    with pytest.raises(AIServiceError, match="quota exceeded"):
        client.analyze_image("data:,")


def test_connection_error():
    client, session = _client()
    session.post.side_effect = requests.ConnectionError("down")
    with pytest.raises(AIServiceError, match="Connection error"):
        client.analyze_image("data:,")


def test_analysis_fallback_to_text():
    client, _ = _client(payload={"text": "x" * 150})
    analysis = client.analyze_image("data:,")
    assert len(analysis.description) == 100
    assert analysis.tags == []


def test_unconfigured_relay():
    with pytest.raises(AIServiceError):
        AIClient(base_url="", session=MagicMock(spec=requests.Session, headers={})).analyze_image("data:,")
