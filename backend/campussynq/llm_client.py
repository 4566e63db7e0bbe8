from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import NotConfigured, UpstreamFailure
from .settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
	"""One OpenAI-compatible chat-completions target."""
	name: str
	url: str
	api_key: str
	model: str
	temperature: Optional[float] = None
	extra_headers: Dict[str, str] = field(default_factory=dict)

	def headers(self) -> Dict[str, str]:
		headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
		headers.update({k: v for k, v in self.extra_headers.items() if v})
		return headers

	def body(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
		body: Dict[str, Any] = {
			"model": self.model,
			"messages": messages,
			"response_format": {"type": "json_object"},
		}
		if self.temperature is not None:
			body["temperature"] = self.temperature
		return body


def openrouter_endpoint() -> Optional[Endpoint]:
	if not settings.openrouter_api_key:
		return None
	return Endpoint(
		name="OpenRouter",
		url=settings.openrouter_base_url,
		api_key=settings.openrouter_api_key,
		model=settings.openrouter_model,
		extra_headers={"HTTP-Referer": settings.openrouter_referer, "X-Title": settings.openrouter_title},
	)


class ChatClient:
	"""Chat-completions client that asks for a strict JSON object back.

	Endpoints are tried in order: the configured provider first, then
	OpenRouter when an OpenRouter key is set. No retries beyond that and no
	caching.
	"""

	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		api_key = api_key or settings.llm_api_key
		if not api_key:
			raise NotConfigured("LLM_API_KEY is not configured")
		self.endpoints: List[Endpoint] = [Endpoint(
			name="primary",
			url=base_url or settings.llm_base_url,
			api_key=api_key,
			model=model or settings.llm_model,
			temperature=settings.llm_temperature,
		)]
		fallback = openrouter_endpoint()
		if fallback is not None:
			self.endpoints.append(fallback)
		self._http = httpx.AsyncClient(timeout=settings.llm_timeout_seconds, transport=transport)

	async def complete_json(self, prompt: str, *, system: Optional[str] = None) -> Dict[str, Any]:
		messages = [{"role": "user", "content": prompt}]
		if system:
			messages.insert(0, {"role": "system", "content": system})

		failures: List[UpstreamFailure] = []
		for endpoint in self.endpoints:
			if failures:
				logger.warning("Primary LLM call failed (%s); trying %s", failures[-1].message, endpoint.name)
			try:
				content = await self._send(endpoint, messages)
			except UpstreamFailure as err:
				failures.append(err)
				continue
			return self._parse(content)

		if len(failures) == 1:
			raise failures[0]
		raise UpstreamFailure(
			f"{failures[0].message}; fallback via {self.endpoints[-1].name} also failed",
			upstream_status=failures[-1].upstream_status,
		)

	async def _send(self, endpoint: Endpoint, messages: List[Dict[str, str]]) -> str:
		try:
			r = await self._http.post(endpoint.url, headers=endpoint.headers(), json=endpoint.body(messages))
		except httpx.RequestError as net_err:
			logger.error("LLM request to %s failed: %s", endpoint.name, net_err)
			raise UpstreamFailure(f"AI API unreachable: {net_err}") from net_err
		if r.status_code >= 400:
			logger.error("AI API error from %s: %s %s", endpoint.name, r.status_code, r.text[:500])
			raise UpstreamFailure(f"AI API error: {r.status_code}", upstream_status=r.status_code)
		try:
			return r.json()["choices"][0]["message"]["content"]
		except (ValueError, KeyError, IndexError, TypeError) as err:
			raise UpstreamFailure(f"Unexpected AI API response: {r.text[:200]}") from err

	@staticmethod
	def _parse(content: str) -> Dict[str, Any]:
		text = (content or "").strip()
		# Some models wrap JSON in a markdown fence despite response_format
		if text.startswith("```"):
			text = text.strip("`")
			if text.lower().startswith("json"):
				text = text[4:]
		try:
			data = json.loads(text)
		except ValueError as err:
			raise UpstreamFailure("AI API returned malformed JSON") from err
		if not isinstance(data, dict):
			raise UpstreamFailure("AI API returned a non-object JSON payload")
		return data

	async def aclose(self) -> None:
		await self._http.aclose()
