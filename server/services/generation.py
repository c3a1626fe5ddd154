"""Client for the external message generation service used by SMS_AI nodes."""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import aiohttp

from core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class GenerationResult:
    """Result of a generation request. ``tier`` names which fallback answered."""
    success: bool
    text: Optional[str] = None
    tier: str = "unknown"
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationResult":
        return cls(
            success=bool(data.get("success")),
            text=data.get("text") or None,
            tier=data.get("tier") or "unknown",
            error=data.get("error"),
        )


class GenerationService(Protocol):
    """Produces outbound message text for a lead."""

    async def generate(self, org_id: str, lead_id: str, conversation_id: Optional[str],
                       hints: Dict[str, Any]) -> GenerationResult:
        ...


class HttpGenerationService:
    """Async HTTP client for the generation service."""

    def __init__(self, base_url: str, timeout: int = 30):
        """Initialize client with base URL and timeout.

        Args:
            base_url: Base URL of the generation service (e.g., http://127.0.0.1:8010)
            timeout: Request timeout in seconds
        """
        self._base_url = base_url.rstrip('/')
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def generate(self, org_id: str, lead_id: str, conversation_id: Optional[str],
                       hints: Dict[str, Any]) -> GenerationResult:
        """Request message text for a lead.

        Transport and server errors are returned as a failed result rather than
        raised, so a generation outage never fails the workflow node.

        Returns:
            GenerationResult with success, text and tier
        """
        payload = {
            "org_id": org_id,
            "lead_id": lead_id,
            "conversation_id": conversation_id,
            "workflow_hints": hints,
        }

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(f"{self._base_url}/generate", json=payload) as response:
                    if response.status >= 400:
                        body = await response.text()
                        logger.warning("Generation service error",
                                       status=response.status, body=body[:500], lead_id=lead_id)
                        return GenerationResult(success=False, tier="error",
                                                error=f"HTTP {response.status}")
                    try:
                        data = await response.json(content_type=None)
                    except ValueError as e:
                        logger.warning("Generation service returned invalid JSON", error=str(e), lead_id=lead_id)
                        return GenerationResult(success=False, tier="error", error="invalid JSON response")
                    if not isinstance(data, dict):
                        logger.warning("Generation service returned unexpected payload",
                                       payload_type=type(data).__name__, lead_id=lead_id)
                        return GenerationResult(success=False, tier="error", error="unexpected response payload")
                    return GenerationResult.from_dict(data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Generation service unreachable", error=str(e), lead_id=lead_id)
            return GenerationResult(success=False, tier="error", error=str(e))
