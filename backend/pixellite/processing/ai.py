"""Client for the AI relay: image analysis and image regeneration."""
import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

import requests

from pixellite.config import AI_ANALYSIS_MODEL, AI_RELAY_URL, AI_TIMEOUT, GEMINI_API_KEY
from pixellite.errors import AIServiceError
from pixellite.processing.models import AIAnalysis

logger = logging.getLogger("pixellite.ai")

_MARKDOWN_IMAGE = re.compile(r"!\[.*?\]\(data:(.*?);base64,(.*?)\)")


@dataclass
class AIResult:
    image: Optional[bytes]
    mime_type: str = "image/png"
    text: Optional[str] = None


class AIClient:
    """Posts image + prompt to the relay's /api/enhance and /api/analyze endpoints."""

    def __init__(self, base_url: str = AI_RELAY_URL, api_key: str = GEMINI_API_KEY, model_base_url: str = "", session: Optional[requests.Session] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.model_base_url = model_base_url
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})

    def _post(self, endpoint: str, payload: dict) -> dict:
        if not self.base_url:
            raise AIServiceError("AI relay URL is not configured")
        if self.api_key:
            payload["apiKey"] = self.api_key
        if self.model_base_url:
            payload["baseUrl"] = self.model_base_url
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.post(url, data=json.dumps(payload), timeout=AI_TIMEOUT)
        except requests.RequestException as e:
            raise AIServiceError(f"Connection error: {e}") from e
        try:
            data = response.json()
        except ValueError:
            data = {"error": response.text[:200]}
        if response.status_code >= 400:
            raise AIServiceError(f"AI relay returned {response.status_code}: {data.get('error', 'Unknown error')}")
        return data

    def analyze_image(self, image_data_url: str, model: str = AI_ANALYSIS_MODEL) -> AIAnalysis:
        data = self._post("/api/analyze", {"image": image_data_url, "model": model})
        if "description" not in data:
            text = str(data.get("text") or "")
            return AIAnalysis(description=text[:100], tags=[])
        return AIAnalysis.from_dict(data)

    def generate_enhanced_image(self, image_data_url: str, prompt: str, model: str) -> AIResult:
        data = self._post("/api/enhance", {"image": image_data_url, "prompt": prompt, "model": model})
        text = (data.get("text") or "").strip() or None
        encoded = data.get("image")
        mime = data.get("mimeType") or "image/png"
        if not encoded and text:
            match = _MARKDOWN_IMAGE.search(text)
            if match:
                mime, encoded = match.group(1), match.group(2)
                text = text.replace(match.group(0), "").strip() or None
        if not encoded:
            return AIResult(image=None, mime_type=mime, text=text)
        try:
            image = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise AIServiceError(f"AI relay returned malformed image data: {e}") from e
        return AIResult(image=image, mime_type=mime, text=text)
