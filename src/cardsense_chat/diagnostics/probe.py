"""
Connectivity diagnostics for the knowledge backend.

'DiagnosticsProbe.test_connection_detailed' tells apart the three ways the
primary provider can be unreachable:

    - no network at all (a known-good host cannot be reached)
    - the request is rejected by a cross-origin policy before reaching the server
    - the server answers, but with an error status or an unexpected body

The probe always returns a 'ConnectionReport'; it never raises.
"""

from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel

from cardsense_chat.errors import CorsError, ProviderError
from cardsense_chat.llms.base import translate_transport_errors
from cardsense_chat.llms.knowledge import KnowledgeClient
from cardsense_chat.utils.logging import preview
from cardsense_chat.utils.time import Stopwatch

NETWORK_CHECK_URL = "https://www.google.com"
NETWORK_CHECK_TIMEOUT = 5.0
DIAGNOSTIC_QUESTION = "Connection test"
CORS_ERROR_MESSAGE = "CORS error detected. The knowledge API server needs to allow cross-origin requests."


class ConnectionReport(BaseModel):
    success: bool = False
    response_time_ms: int = 0
    endpoint: str
    api_version: str
    network_test_passed: bool = False
    cors_test_passed: bool = False
    error: str | None = None
    sample_response: str | None = None


class DiagnosticsProbe:
    def __init__(
        self,
        client: KnowledgeClient,
        network_check_url: str = NETWORK_CHECK_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client = client
        self.network_check_url = network_check_url
        self._http = http_client or httpx.AsyncClient()

    async def check_network(self) -> bool:
        """GET a known-good host; True only on a 200 within 'NETWORK_CHECK_TIMEOUT'."""
        try:
            response = await self._http.get(
                self.network_check_url,
                headers={"User-Agent": "CardSense-AI-Test"},
                timeout=NETWORK_CHECK_TIMEOUT,
            )
        except httpx.HTTPError as exc:
            logger.debug(f"Network check against {self.network_check_url} failed: {exc}")
            return False
        return response.status_code == 200

    def _read_sample(self, body: Any) -> str | None:
        field = self.client.wire_format.content_field
        if isinstance(body, dict) and field in body:
            return str(body[field])
        return None

    async def test_connection_detailed(self) -> ConnectionReport:
        report = ConnectionReport(
            endpoint=self.client.endpoint,
            api_version=self.client.wire_format.api_version,
        )
        stopwatch = Stopwatch()
        report.network_test_passed = await self.check_network()

        payload = self.client.build_payload(DIAGNOSTIC_QUESTION, [])
        logger.debug(f"Testing knowledge API with payload: {payload}")
        try:
            with translate_transport_errors(self.client.name, self.client.timeout):
                response = await self.client.within_deadline(
                    self._http.post(
                        self.client.endpoint,
                        json=payload,
                        headers={"Content-Type": "application/json", "Accept": "application/json"},
                        timeout=self.client.timeout,
                    )
                )
        except CorsError as exc:
            report.response_time_ms = stopwatch.elapsed_ms
            report.error = CORS_ERROR_MESSAGE
            logger.error(f"Detailed knowledge API connection test failed: {exc}")
            return report
        except ProviderError as exc:
            report.response_time_ms = stopwatch.elapsed_ms
            report.error = str(exc)
            logger.error(f"Detailed knowledge API connection test failed: {exc}")
            return report

        report.response_time_ms = stopwatch.elapsed_ms
        # Any reply means the request got past cross-origin checks.
        report.cors_test_passed = True
        logger.debug(f"Knowledge API test response {response.status_code}: {preview(response.text, 500)}")

        if response.status_code != 200:
            report.error = f"HTTP {response.status_code}: {response.text}"
            return report
        try:
            body = response.json()
        except ValueError:
            body = None
        sample = self._read_sample(body)
        if sample is None:
            report.error = f"Response format unexpected: {response.text}"
            return report

        report.success = True
        report.sample_response = sample
        logger.info(f"Knowledge API reachable in {report.response_time_ms}ms")
        return report

    async def aclose(self) -> None:
        await self._http.aclose()
